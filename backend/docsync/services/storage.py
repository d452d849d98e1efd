"""Catalog and snapshot persistence backed by SQLAlchemy.

Writes commit immediately so the catalog stays current even if a later step
of the run fails; a failed commit is rolled back before the error propagates
so the session stays usable. Snapshot commits for a project go through
:meth:`RecipeStorage.upsert_snapshots`, which is a single transaction that
also records the published documentation.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from docsync.errors import ParseError
from docsync.models.workato import WorkatoProject, WorkatoRecipe, WorkatoTenant
from docsync.models_sqlalchemy.models import DocumentationRecord, Project, Recipe, RecipeSnapshot, Tenant


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def recipe_to_json(recipe: WorkatoRecipe) -> str:
    return json.dumps(recipe.raw_payload(), ensure_ascii=False, sort_keys=True)


def recipe_from_json(raw_json: Optional[str]) -> WorkatoRecipe:
    """Rebuild a recipe from a stored payload; raises ParseError when malformed."""
    if not raw_json:
        raise ParseError("Stored recipe payload is empty")
    try:
        return WorkatoRecipe.model_validate(json.loads(raw_json))
    except ValueError as exc:
        raise ParseError(f"Stored recipe payload is malformed: {exc}") from exc


@dataclass
class SnapshotInput:
    recipe_id: int
    tenant_id: str
    content_hash: str
    raw_json: str


@dataclass
class DocumentationInput:
    tenant_id: str
    content_md: str
    content_html: Optional[str] = None
    project_id: Optional[int] = None
    recipe_id: Optional[int] = None
    quality_score: Optional[float] = None


class RecipeStorage:
    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # -- catalog --------------------------------------------------------

    def upsert_tenant(self, tenant: WorkatoTenant) -> Tenant:
        row = self.db.get(Tenant, tenant.id)
        if row is None:
            row = Tenant(id=tenant.id, tenant_id=str(tenant.id))
            self.db.add(row)
        row.external_id = tenant.external_id
        row.name = tenant.name or str(tenant.id)
        row.remote_created_at = tenant.created_at
        row.remote_updated_at = tenant.updated_at
        row.updated_at = _now_utc()
        self._commit()
        return row

    def upsert_project(self, tenant_id: str, project: WorkatoProject) -> Project:
        row = self.db.get(Project, (tenant_id, project.id))
        if row is None:
            row = Project(tenant_id=tenant_id, id=project.id)
            self.db.add(row)
        row.folder_id = project.folder_id
        row.name = project.name or f"Project {project.id}"
        row.description = project.description
        row.updated_at = _now_utc()
        self._commit()
        return row

    def upsert_recipe(self, tenant_id: str, recipe: WorkatoRecipe, project_id: Optional[int]) -> Recipe:
        row = self.db.get(Recipe, (tenant_id, recipe.id))
        if row is None:
            row = Recipe(tenant_id=tenant_id, id=recipe.id)
            self.db.add(row)
        row.project_id = project_id
        row.folder_id = recipe.folder_id
        row.name = recipe.name
        row.description = recipe.description
        row.raw_json = recipe_to_json(recipe)
        row.remote_created_at = recipe.created_at
        row.remote_updated_at = recipe.updated_at
        row.updated_at = _now_utc()
        self._commit()
        return row

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.db.query(Tenant).filter(Tenant.tenant_id == str(tenant_id)).one_or_none()

    def get_project(self, project_id: int, tenant_id: str) -> Optional[Project]:
        return self.db.get(Project, (str(tenant_id), project_id))

    def get_recipe(self, recipe_id: int, tenant_id: str) -> Optional[Recipe]:
        return self.db.get(Recipe, (str(tenant_id), recipe_id))

    def get_recipes_by_project(self, tenant_id: str, project_id: int) -> List[Recipe]:
        return (
            self.db.query(Recipe)
            .filter(Recipe.tenant_id == str(tenant_id), Recipe.project_id == project_id)
            .order_by(Recipe.id.asc())
            .all()
        )

    def get_recipes_by_tenant(self, tenant_id: str) -> List[Recipe]:
        return (
            self.db.query(Recipe)
            .filter(Recipe.tenant_id == str(tenant_id))
            .order_by(Recipe.id.asc())
            .all()
        )

    # -- snapshots ------------------------------------------------------

    def get_latest_snapshot(self, recipe_id: int) -> Optional[RecipeSnapshot]:
        return (
            self.db.query(RecipeSnapshot)
            .filter(RecipeSnapshot.recipe_id == recipe_id)
            .one_or_none()
        )

    def get_latest_hash(self, recipe_id: int) -> Optional[str]:
        snapshot = self.get_latest_snapshot(recipe_id)
        return snapshot.content_hash if snapshot else None

    def _stage_snapshot(self, snapshot: SnapshotInput, now: datetime) -> None:
        row = self.get_latest_snapshot(snapshot.recipe_id)
        if row is None:
            row = RecipeSnapshot(recipe_id=snapshot.recipe_id)
            self.db.add(row)
        row.tenant_id = snapshot.tenant_id
        row.content_hash = snapshot.content_hash
        row.raw_json = snapshot.raw_json
        row.created_at = now

    def upsert_snapshot(self, snapshot: SnapshotInput) -> None:
        self.upsert_snapshots([snapshot])

    def upsert_snapshots(
        self,
        snapshots: Iterable[SnapshotInput],
        documentation: Optional[DocumentationInput] = None,
    ) -> int:
        """Replace the snapshots of several recipes in one transaction.

        ``documentation``, when given, is stored in the same transaction.
        """
        now = _now_utc()
        count = 0
        try:
            for snapshot in snapshots:
                self._stage_snapshot(snapshot, now)
                # Flush so a later lookup of the same recipe sees the staged row.
                self.db.flush()
                count += 1
            if documentation is not None:
                self._stage_documentation(documentation, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return count

    # -- documentation --------------------------------------------------

    def _documentation_query(self, tenant_id: str, project_id: Optional[int], recipe_id: Optional[int]):
        query = self.db.query(DocumentationRecord).filter(DocumentationRecord.tenant_id == str(tenant_id))
        for column, value in ((DocumentationRecord.project_id, project_id), (DocumentationRecord.recipe_id, recipe_id)):
            query = query.filter(column.is_(None) if value is None else column == value)
        return query

    def get_documentation(
        self,
        tenant_id: str,
        *,
        project_id: Optional[int] = None,
        recipe_id: Optional[int] = None,
    ) -> Optional[DocumentationRecord]:
        """Last stored documentation of a project (or of a single recipe)."""
        return self._documentation_query(tenant_id, project_id, recipe_id).one_or_none()

    def _stage_documentation(self, doc: DocumentationInput, now: datetime) -> DocumentationRecord:
        row = self.get_documentation(doc.tenant_id, project_id=doc.project_id, recipe_id=doc.recipe_id)
        if row is None:
            row = DocumentationRecord(tenant_id=str(doc.tenant_id), project_id=doc.project_id, recipe_id=doc.recipe_id)
            self.db.add(row)
        row.content_md = doc.content_md
        row.content_html = doc.content_html
        row.quality_score = doc.quality_score
        row.generated_at = now
        return row

    def upsert_documentation(self, doc: DocumentationInput) -> DocumentationRecord:
        row = self._stage_documentation(doc, _now_utc())
        self._commit()
        return row
