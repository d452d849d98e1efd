from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from docsync.models.workato import WorkatoRecipe


@dataclass
class SemanticChangeResult:
    has_meaningful_change: bool
    change_summary: str
    change_type: Optional[str] = None  # "logic" | "config" | "metadata"


@dataclass
class DocumentationResult:
    markdown: str
    html: Optional[str] = None


@dataclass
class QualityResult:
    score: float  # 1-5, 5 is excellent
    issues: List[str] = field(default_factory=list)
    suggested_improvements: Optional[List[str]] = None


@dataclass
class RunSummaryInput:
    tenants_processed: int
    recipes_fetched: int
    recipes_changed: int
    # Projects documented (documentation is generated per project).
    recipes_documented: int
    errors: List[str] = field(default_factory=list)


@dataclass
class LookupTableContext:
    """Schema and sample data of a lookup table referenced by recipe code."""

    id: int
    name: str
    columns: List[str] = field(default_factory=list)
    sample_rows: List[Dict[str, Any]] = field(default_factory=list)


class AIClient(Protocol):
    async def analyze_semantic_change(
        self,
        old_recipe: WorkatoRecipe,
        new_recipe: WorkatoRecipe,
    ) -> SemanticChangeResult:
        ...

    async def generate_documentation(
        self,
        tenant_id: str,
        recipe: WorkatoRecipe,
        lookup_tables: Optional[Sequence[LookupTableContext]] = None,
    ) -> DocumentationResult:
        ...

    async def generate_project_documentation(
        self,
        tenant_id: str,
        project_name: str,
        project_description: Optional[str],
        recipes: Sequence[WorkatoRecipe],
        lookup_tables: Optional[Sequence[LookupTableContext]] = None,
    ) -> DocumentationResult:
        ...

    async def assess_quality(self, doc: DocumentationResult, subject_name: str) -> QualityResult:
        ...

    async def generate_run_summary(self, summary_input: RunSummaryInput) -> str:
        ...
