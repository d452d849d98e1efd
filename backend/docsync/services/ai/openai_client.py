"""OpenAI-compatible implementation of :class:`AIClient`.

Talks to ``/v1/chat/completions`` directly over httpx. Responses are asked
for as JSON; fenced code blocks around the JSON are tolerated.
"""
from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from docsync.config import settings
from docsync.errors import GenerationError
from docsync.models.workato import WorkatoRecipe
from docsync.services.recipe_definition import RecipeDefinition
from docsync.utils.logger import logger

from .ai_client import (
    DocumentationResult,
    LookupTableContext,
    QualityResult,
    RunSummaryInput,
    SemanticChangeResult,
)


REQUIRED_SECTIONS = """
Required sections:
1. **Overview** (2-3 sentences): What the integration does and which systems are connected.
2. **Field Mapping Table** (Target Field | Source Field | Notes): Use friendly field names, not technical paths.
3. **Data Transformations** (if applicable): How data is reformatted or combined, with short examples.
4. **Sync Rules & Conditions**: When data syncs and when it does not, in business terms.
5. **Common Scenarios** (3-5): "Scenario: ..." followed by "Action: ...".
6. **Special Rules & Exceptions**: Important business rules and edge cases.
7. **When It Runs**: Trigger description and frequency in plain language.
8. **Important Notes** (3-5 bullets): Limitations, one-way sync warnings."""

STYLE_GUIDELINES = """
Style guidelines:
- Use friendly names ("Termination Date", "the HR system") instead of technical field paths.
- No code blocks, formulas or pseudo-code; plain language with examples.
- Short sentences, bullet points and tables.
- Active voice, no hedge words."""

DOC_GEN_SYSTEM = (
    "You are a technical documentation specialist who translates integration workflows "
    "into clear, concise documentation for non-technical business users.\n"
    + REQUIRED_SECTIONS
    + "\n"
    + STYLE_GUIDELINES
)

SEMANTIC_SYSTEM = (
    "You analyze changes between two versions of a Workato recipe. Determine if the change "
    "is semantically meaningful (affects behavior or documentation)."
)

QUALITY_SYSTEM = "You assess documentation quality for Workato recipes. Score 1-5 (5=excellent)."

SUMMARY_SYSTEM = (
    "Generate a brief, human-readable run summary for a Workato recipe documentation sync. "
    "2-4 sentences."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$")
_INJECTION_RES = (
    re.compile(r"Output only valid JSON", re.IGNORECASE),
    re.compile(r"\{\"\s*markdown\s*\"\s*:", re.IGNORECASE),
)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504, 529}


def sanitize_for_prompt(text: Optional[str]) -> str:
    """Neutralise user-controlled text that mimics our output instructions."""
    if not text:
        return ""
    for pattern in _INJECTION_RES:
        text = pattern.sub("[filtered]", text)
    return text


def extract_json(raw: str) -> str:
    text = (raw or "").strip()
    match = _FENCE_RE.match(text)
    if match:
        text = match.group(1).strip()
    return text


def safe_json_parse(raw: str, context: str) -> Dict[str, Any]:
    cleaned = extract_json(raw)
    try:
        data = json.loads(cleaned)
    except ValueError as exc:
        raise GenerationError(
            f"Failed to parse {context} response as JSON. Raw output: {cleaned[:500]}"
        ) from exc
    if not isinstance(data, dict):
        raise GenerationError(f"{context} response is not a JSON object")
    return data


def format_apps(recipe: WorkatoRecipe) -> str:
    """Trigger app first, then action apps, de-duplicated case-insensitively."""
    parts: List[str] = []
    seen = set()
    if recipe.trigger_application:
        parts.append(f"{recipe.trigger_application} (trigger)")
        seen.add(recipe.trigger_application.lower())
    for app in list(recipe.action_applications or []) + list(recipe.applications or []):
        if app and app.lower() not in seen:
            parts.append(app)
            seen.add(app.lower())
    return ", ".join(parts) or "unknown"


def format_connections(recipe: WorkatoRecipe) -> Optional[str]:
    if not recipe.config:
        return None
    return json.dumps(
        [binding.model_dump(mode="json", exclude_none=True) for binding in recipe.config],
        ensure_ascii=False,
    )


def format_lookup_tables(tables: Optional[Sequence[LookupTableContext]]) -> str:
    if not tables:
        return ""
    sections = []
    for table in tables:
        lines = [f'"{sanitize_for_prompt(table.name)}" (ID:{table.id})']
        if table.columns:
            lines.append(f"Columns: {', '.join(table.columns)}")
        if table.sample_rows:
            lines.append(f"Sample rows: {json.dumps(table.sample_rows, ensure_ascii=False, default=str)}")
        sections.append("\n".join(lines))
    return "\nLookup tables:\n" + "\n\n".join(sections) + "\n"


def build_recipe_prompt(recipe: WorkatoRecipe, lookup_tables: Optional[Sequence[LookupTableContext]] = None) -> str:
    lines = [
        "Create a data mapping document for this integration workflow. Be concise, business-focused, "
        "well-organized (tables/bullets), and include practical examples.",
        "",
        f"Name: {sanitize_for_prompt(recipe.name)}",
    ]
    if recipe.description:
        lines.append(f"Description: {sanitize_for_prompt(recipe.description)}")
    lines.append(f"Apps: {format_apps(recipe)}")
    lines.extend(["", "Recipe code:", RecipeDefinition.from_raw(recipe.code).compact()])
    connections = format_connections(recipe)
    if connections:
        lines.extend(["", f"Connections: {connections}"])
    lookup_section = format_lookup_tables(lookup_tables)
    if lookup_section:
        lines.append(lookup_section)
    lines.extend(["", 'Output valid JSON: {"markdown": "..."}'])
    return "\n".join(lines)


def build_project_prompt(
    project_name: str,
    project_description: Optional[str],
    recipes: Sequence[WorkatoRecipe],
    lookup_tables: Optional[Sequence[LookupTableContext]] = None,
) -> str:
    lines = [
        f"Create a data mapping document for this integration project ({len(recipes)} workflows). "
        "Be concise, business-focused, well-organized (tables/bullets), and include practical examples.",
        "",
        f"Project: {sanitize_for_prompt(project_name)}",
    ]
    if project_description:
        lines.append(f"Description: {sanitize_for_prompt(project_description)}")
    for index, recipe in enumerate(recipes, start=1):
        lines.extend(["", f"--- Workflow {index}: {sanitize_for_prompt(recipe.name)} ---"])
        if recipe.description:
            lines.append(f"Description: {sanitize_for_prompt(recipe.description)}")
        lines.append(f"Apps: {format_apps(recipe)}")
        lines.append(f"Code: {RecipeDefinition.from_raw(recipe.code).compact()}")
        connections = format_connections(recipe)
        if connections:
            lines.append(f"Connections: {connections}")
    lookup_section = format_lookup_tables(lookup_tables)
    if lookup_section:
        lines.append(lookup_section)
    lines.extend(
        [
            "",
            "Structure: overview of all workflows -> combined or per-workflow field mappings -> "
            "per-workflow scenarios and sync rules -> unified important notes.",
            "",
            'Output valid JSON: {"markdown": "..."}',
        ]
    )
    return "\n".join(lines)


def build_semantic_prompt(old_recipe: WorkatoRecipe, new_recipe: WorkatoRecipe) -> str:
    def _view(recipe: WorkatoRecipe) -> str:
        code = RecipeDefinition.from_raw(recipe.code).compact()
        return json.dumps(
            {"name": recipe.name, "description": recipe.description, "code": code[:2000]},
            ensure_ascii=False,
        )

    return (
        "Compare these two recipe versions. Output valid JSON:\n"
        '{"hasMeaningfulChange": boolean, "changeSummary": string, '
        '"changeType": "logic" | "config" | "metadata" | null}\n\n'
        f"Old recipe: {_view(old_recipe)}\n"
        f"New recipe: {_view(new_recipe)}\n"
    )


def build_quality_prompt(doc: DocumentationResult, subject_name: str) -> str:
    return (
        f"Recipe: {sanitize_for_prompt(subject_name)}\n"
        "Documentation:\n"
        f"{(doc.markdown or '')[:3000]}\n\n"
        'Output valid JSON: {"score": number, "issues": string[], "suggestedImprovements": string[]}'
    )


class OpenAIClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        doc_model: Optional[str] = None,
        summary_model: Optional[str] = None,
        quality_model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key or settings.OPENAI_API_KEY
        if not self.api_key:
            raise GenerationError("OPENAI_API_KEY is required. Set it in your .env file or environment.")
        self.base_url = (base_url or settings.OPENAI_API_BASE_URL).rstrip("/")
        self.doc_model = doc_model or settings.OPENAI_DOC_MODEL
        self.summary_model = summary_model or settings.OPENAI_SUMMARY_MODEL
        self.quality_model = quality_model or settings.OPENAI_QUALITY_MODEL
        self.timeout = timeout or settings.OPENAI_TIMEOUT_SECONDS
        self.max_retries = max_retries
        self._transport = transport
        self._sleep = sleep

    async def _complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        context: str,
        json_mode: bool = True,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        url = f"{self.base_url}/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        attempt = 0
        while True:
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.post(url, headers=headers, json=payload)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    logger.error("AI provider request failed context=%s: %s", context, exc)
                    raise GenerationError(f"{context}: failed to contact AI provider: {exc}") from exc
                resp = None
                logger.warning(f"AI provider transport error context={context} attempt={attempt + 1}: {exc}")

            if resp is not None:
                if resp.status_code < 400:
                    break
                if resp.status_code not in RETRYABLE_STATUSES or attempt >= self.max_retries:
                    logger.error("AI provider HTTP %s context=%s: %s", resp.status_code, context, resp.text[:500])
                    raise GenerationError(f"{context}: AI provider returned HTTP {resp.status_code}")
                logger.warning(f"AI provider HTTP {resp.status_code} context={context} attempt={attempt + 1}")

            await self._sleep(min(1.0 * (2 ** attempt), 15.0))
            attempt += 1

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("Unexpected AI provider response structure context=%s: %s", context, resp.text[:500])
            raise GenerationError(f"{context}: unexpected AI provider response payload") from exc
        return content or ""

    async def _generate_markdown(self, user_prompt: str, context: str) -> DocumentationResult:
        text = await self._complete(
            model=self.doc_model,
            system=DOC_GEN_SYSTEM,
            user=user_prompt,
            max_tokens=8192,
            temperature=0.3,
            context=context,
        )
        if not text:
            raise GenerationError(f"Empty {context} response")
        parsed = safe_json_parse(text, context)
        markdown = parsed.get("markdown")
        if not markdown or not isinstance(markdown, str):
            raise GenerationError(
                "LLM response missing 'markdown' key. Keys found: " + ", ".join(parsed.keys())
            )
        return DocumentationResult(markdown=markdown)

    async def analyze_semantic_change(
        self,
        old_recipe: WorkatoRecipe,
        new_recipe: WorkatoRecipe,
    ) -> SemanticChangeResult:
        text = await self._complete(
            model=self.doc_model,
            system=SEMANTIC_SYSTEM,
            user=build_semantic_prompt(old_recipe, new_recipe),
            max_tokens=1024,
            temperature=0.2,
            context="semantic analysis",
        )
        if not text:
            raise GenerationError("Empty semantic analysis response")
        parsed = safe_json_parse(text, "semantic analysis")
        meaningful = parsed.get("hasMeaningfulChange")
        return SemanticChangeResult(
            has_meaningful_change=True if meaningful is None else bool(meaningful),
            change_summary=parsed.get("changeSummary") or "Change detected",
            change_type=parsed.get("changeType") or None,
        )

    async def generate_documentation(
        self,
        tenant_id: str,
        recipe: WorkatoRecipe,
        lookup_tables: Optional[Sequence[LookupTableContext]] = None,
    ) -> DocumentationResult:
        logger.info(f"Generating recipe documentation tenant={tenant_id} recipe_id={recipe.id}")
        return await self._generate_markdown(build_recipe_prompt(recipe, lookup_tables), "documentation")

    async def generate_project_documentation(
        self,
        tenant_id: str,
        project_name: str,
        project_description: Optional[str],
        recipes: Sequence[WorkatoRecipe],
        lookup_tables: Optional[Sequence[LookupTableContext]] = None,
    ) -> DocumentationResult:
        logger.info(
            f"Generating project documentation tenant={tenant_id} project={project_name!r} recipes={len(recipes)}"
        )
        return await self._generate_markdown(
            build_project_prompt(project_name, project_description, recipes, lookup_tables),
            "project documentation",
        )

    async def assess_quality(self, doc: DocumentationResult, subject_name: str) -> QualityResult:
        text = await self._complete(
            model=self.quality_model,
            system=QUALITY_SYSTEM,
            user=build_quality_prompt(doc, subject_name),
            max_tokens=1024,
            temperature=0.2,
            context="quality assessment",
        )
        if not text:
            raise GenerationError("Empty quality assessment response")
        parsed = safe_json_parse(text, "quality assessment")
        score = parsed.get("score")
        try:
            score = 3.0 if score is None else min(5.0, max(1.0, float(score)))
        except (TypeError, ValueError) as exc:
            raise GenerationError(f"quality assessment: score is not a number: {score!r}") from exc
        improvements = parsed.get("suggestedImprovements")
        return QualityResult(
            score=score,
            issues=[str(issue) for issue in parsed.get("issues") or []],
            suggested_improvements=[str(item) for item in improvements] if isinstance(improvements, list) else None,
        )

    async def generate_run_summary(self, summary_input: RunSummaryInput) -> str:
        text = await self._complete(
            model=self.summary_model,
            system=SUMMARY_SYSTEM,
            user=(
                f"Sync stats: {summary_input.tenants_processed} customers, "
                f"{summary_input.recipes_fetched} recipes fetched, "
                f"{summary_input.recipes_changed} changed, "
                f"{summary_input.recipes_documented} documented. "
                f"Errors: {len(summary_input.errors)}"
            ),
            max_tokens=512,
            temperature=0.2,
            context="run summary",
            json_mode=False,
        )
        return text.strip() or "Sync completed."
