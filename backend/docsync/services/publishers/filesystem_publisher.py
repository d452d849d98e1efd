"""Writes documentation to ``<output>/<tenant>/<project-slug>/``.

Each destination directory holds ``README.md`` (the generated markdown) and
``index.html`` (a standalone page). Files are overwritten in place, so a
repeated publish of the same content is a no-op in effect.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from jinja2 import Environment, select_autoescape

from docsync.config import settings
from docsync.errors import PublishError
from docsync.utils.logger import logger

from .publisher import Documentation, PublishMetadata


HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{{ title }}</title>
  <style>
    body { font-family: system-ui, sans-serif; max-width: 800px; margin: 2rem auto; padding: 0 1rem; line-height: 1.6; }
    h1, h2, h3 { margin-top: 1.5em; }
    code { background: #f4f4f4; padding: 0.2em 0.4em; border-radius: 4px; }
    pre { overflow-x: auto; background: #f4f4f4; padding: 1em; border-radius: 4px; white-space: pre-wrap; }
  </style>
</head>
<body>
{% if body_html %}{{ body_html | safe }}{% else %}<pre>{{ body_markdown }}</pre>{% endif %}
</body>
</html>
"""

_jinja_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))
_page_template = _jinja_env.from_string(HTML_TEMPLATE)


def render_html_page(doc: Documentation, metadata: PublishMetadata) -> str:
    title = metadata.project_name or metadata.recipe_name or "Documentation"
    return _page_template.render(title=title, body_html=doc.content_html, body_markdown=doc.content_md)


class FileSystemPublisher:
    def __init__(self, output_dir: Optional[str] = None):
        self.output_dir = Path(output_dir or settings.OUTPUT_DIR)

    def target_dir(self, doc: Documentation, metadata: PublishMetadata) -> Path:
        path = self.output_dir / str(doc.tenant_id)
        if metadata.project_slug:
            path = path / metadata.project_slug
        if not metadata.is_project_doc and doc.recipe_id is not None:
            path = path / str(doc.recipe_id)
        return path

    def _write(self, doc: Documentation, metadata: PublishMetadata) -> Path:
        directory = self.target_dir(doc, metadata)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "README.md").write_text(doc.content_md, encoding="utf-8")
        (directory / "index.html").write_text(render_html_page(doc, metadata), encoding="utf-8")
        return directory

    async def publish(self, doc: Documentation, metadata: PublishMetadata) -> None:
        try:
            directory = await asyncio.to_thread(self._write, doc, metadata)
        except OSError as exc:
            raise PublishError(f"Failed to write documentation for tenant {doc.tenant_id}: {exc}") from exc
        logger.info(f"Published documentation tenant={doc.tenant_id} dir={directory}")
