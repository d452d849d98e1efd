from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class Documentation:
    tenant_id: str
    content_md: str
    content_html: Optional[str] = None
    project_id: Optional[int] = None
    recipe_id: Optional[int] = None


@dataclass
class PublishMetadata:
    project_name: Optional[str] = None
    project_slug: Optional[str] = None
    recipe_name: Optional[str] = None
    is_project_doc: bool = True
    quality_score: Optional[float] = None


class Publisher(Protocol):
    """Destination for generated documentation.

    Publishing the same content twice must be safe: a run that crashes after
    publishing but before committing snapshots publishes again next time.
    """

    async def publish(self, doc: Documentation, metadata: PublishMetadata) -> None:
        ...


_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: Optional[str]) -> str:
    slug = _NON_ALNUM_RE.sub("-", (name or "").lower()).strip("-")
    return slug or "uncategorized"
