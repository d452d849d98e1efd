from .ai_client import (
    AIClient,
    DocumentationResult,
    LookupTableContext,
    QualityResult,
    RunSummaryInput,
    SemanticChangeResult,
)
