"""One pass of the documentation pipeline.

fetch -> diff -> per project (document -> publish -> commit snapshots) ->
summarize. Snapshots for a project are committed only after every publisher
accepted its documentation, so a failed publish is retried next run.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from docsync.config import Settings, settings as default_settings
from docsync.errors import DocSyncError, NotFoundError, ParseError
from docsync.models.workato import WorkatoRecipe
from docsync.services.ai import AIClient, DocumentationResult, LookupTableContext, RunSummaryInput
from docsync.services.content_hash import ChangedRecipe, compute_recipe_hash, get_changed_recipes
from docsync.services.fetcher import FetchedRecipe, fetch_and_store_recipes
from docsync.services.lookup_tables import (
    extract_lookup_table_references_from_recipes,
    resolve_lookup_tables,
)
from docsync.services.publishers import Documentation, PublishMetadata, Publisher, slugify
from docsync.services.run_tracker import RunPhase, RunTracker, SyncRunStats
from docsync.services.storage import (
    DocumentationInput,
    RecipeStorage,
    SnapshotInput,
    recipe_from_json,
    recipe_to_json,
)
from docsync.services.workato_client import WorkatoClient
from docsync.utils.logger import logger


ProjectKey = Tuple[str, int]


@dataclass
class PipelineResult:
    run_id: int
    status: str = "running"
    tenants_processed: int = 0
    recipes_fetched: int = 0
    recipes_changed: int = 0
    # Number of projects whose documentation was published.
    recipes_documented: int = 0
    errors: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    documented_projects: List[ProjectKey] = field(default_factory=list)

    def to_stats(self) -> SyncRunStats:
        return SyncRunStats(
            tenants_processed=self.tenants_processed,
            recipes_fetched=self.recipes_fetched,
            recipes_changed=self.recipes_changed,
            recipes_documented=self.recipes_documented,
            errors="; ".join(self.errors) if self.errors else None,
            summary=self.summary,
            status=self.status,
        )


def fallback_summary(result: PipelineResult) -> str:
    text = (
        f"Processed {result.tenants_processed} tenants: {result.recipes_fetched} recipes fetched, "
        f"{result.recipes_changed} changed, {result.recipes_documented} projects documented."
    )
    if result.errors:
        text += f" {len(result.errors)} error(s) recorded."
    return text


class DocumentationPipeline:
    def __init__(
        self,
        db: Session,
        client: WorkatoClient,
        ai_client: AIClient,
        publishers: Sequence[Publisher],
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.client = client
        self.ai_client = ai_client
        self.publishers = list(publishers)
        self.settings = settings or default_settings
        self.storage = RecipeStorage(db)
        self.tracker = RunTracker(db, stale_minutes=self.settings.RUN_STALE_MINUTES)

    async def run(self, tenant_ids: Optional[Sequence[str]] = None, force: bool = False) -> Optional[PipelineResult]:
        """Run one pass; None when another run holds the lease.

        Errors inside a tenant or a project are collected on the result. Any
        other exception finalizes the run as ``error`` and is re-raised.
        """
        run_id = self.tracker.start_run()
        if run_id is None:
            return None

        result = PipelineResult(run_id=run_id)
        try:
            await self._run_pass(result, tenant_ids, force)
        except Exception as exc:
            logger.exception(f"Documentation pipeline run_id={run_id} aborted")
            result.errors.append(str(exc) or exc.__class__.__name__)
            result.status = "error"
            # A failed flush leaves the session unusable until rolled back.
            self.db.rollback()
            try:
                self.tracker.finish_run(run_id, result.to_stats())
            except Exception:
                logger.exception(f"Could not finalize run_id={run_id}")
            raise

        self.tracker.finish_run(run_id, result.to_stats())
        return result

    async def _run_pass(self, result: PipelineResult, tenant_ids: Optional[Sequence[str]], force: bool) -> None:
        run_id = result.run_id
        watermark = None if force else self.tracker.next_watermark(
            source=self.settings.WATERMARK_SOURCE,
            overlap_minutes=self.settings.WATERMARK_OVERLAP_MINUTES,
        )
        logger.info(f"Run id={run_id} force={force} tenants={tenant_ids or 'all'} updated_after={watermark}")

        self.tracker.heartbeat(run_id, RunPhase.FETCHING)
        fetched = await fetch_and_store_recipes(
            self.client,
            self.storage,
            tenant_ids=tenant_ids,
            updated_after=watermark,
            active_prefix=self.settings.ACTIVE_RECIPE_PREFIX,
            on_tenant_done=lambda _tenant_id: self.tracker.heartbeat(run_id),
        )
        result.tenants_processed = fetched.tenants_processed
        result.recipes_fetched = fetched.recipes_fetched
        result.errors.extend(fetched.errors)

        self.tracker.heartbeat(run_id, RunPhase.DIFFING)
        changed = self._detect_changes(fetched.recipes, force)
        result.recipes_changed = len(changed)
        groups = self._group_by_project(changed, fetched.recipes)
        logger.info(f"Run id={run_id} changed_recipes={len(changed)} affected_projects={len(groups)}")

        succeeded = 0
        for key, items in groups.items():
            tenant_id, project_id = key
            try:
                if await self._process_project(run_id, tenant_id, project_id, items, fetched.recipes, force):
                    result.recipes_documented += 1
                    result.documented_projects.append(key)
                succeeded += 1
            except Exception as exc:
                logger.error(
                    f"Project {project_id} (tenant={tenant_id}) failed: {exc}",
                    exc_info=not isinstance(exc, DocSyncError),
                )
                self.db.rollback()
                result.errors.append(f"Project {project_id}: {exc}")
            self.tracker.heartbeat(run_id)

        self.tracker.heartbeat(run_id, RunPhase.SUMMARIZING)
        result.summary = await self._summarize(result)

        if not result.errors:
            result.status = "completed"
        elif groups and succeeded == 0:
            result.status = "error"
        else:
            result.status = "partial"

    def _detect_changes(self, recipes: List[FetchedRecipe], force: bool) -> List[ChangedRecipe]:
        if not force:
            return get_changed_recipes(recipes, self.storage.get_latest_hash)
        return [
            ChangedRecipe(
                recipe_id=item.recipe.id,
                tenant_id=item.tenant_id,
                is_new=self.storage.get_latest_snapshot(item.recipe.id) is None,
                content_hash=compute_recipe_hash(item.recipe),
            )
            for item in recipes
        ]

    @staticmethod
    def _group_by_project(
        changed: List[ChangedRecipe],
        recipes: List[FetchedRecipe],
    ) -> "OrderedDict[ProjectKey, List[ChangedRecipe]]":
        project_of: Dict[Tuple[str, int], Optional[int]] = {
            (item.tenant_id, item.recipe.id): item.project_id for item in recipes
        }
        groups: "OrderedDict[ProjectKey, List[ChangedRecipe]]" = OrderedDict()
        for entry in changed:
            project_id = project_of.get((entry.tenant_id, entry.recipe_id))
            if project_id is None:
                logger.warning(f"Recipe {entry.recipe_id} has no project; skipping")
                continue
            groups.setdefault((entry.tenant_id, project_id), []).append(entry)
        return groups

    async def _process_project(
        self,
        run_id: int,
        tenant_id: str,
        project_id: int,
        changed: List[ChangedRecipe],
        fetched: List[FetchedRecipe],
        force: bool,
    ) -> bool:
        """Document, publish and commit one project; False when skipped."""
        project = self.storage.get_project(project_id, tenant_id)
        if project is None:
            raise NotFoundError(f"project not found for tenant {tenant_id}")

        current = {
            item.recipe.id: item.recipe
            for item in fetched
            if item.tenant_id == tenant_id and item.project_id == project_id
        }

        if not force and not any(entry.is_new for entry in changed):
            if not await self._has_meaningful_change(changed, current):
                logger.info(f"Project {project_id} (tenant={tenant_id}) has only cosmetic changes; skipping")
                return False

        recipes = self._project_recipes(tenant_id, project_id, current)
        if not recipes:
            return False

        self.tracker.heartbeat(run_id, RunPhase.DOCUMENTING)
        lookup_tables = await self._lookup_context(tenant_id, recipes)
        doc = await self.ai_client.generate_project_documentation(
            tenant_id,
            project.name,
            project.description,
            recipes,
            lookup_tables or None,
        )

        quality_score = await self._assess_quality(doc, project.name)

        self.tracker.heartbeat(run_id, RunPhase.PUBLISHING)
        documentation = Documentation(
            tenant_id=tenant_id,
            content_md=doc.markdown,
            content_html=doc.html,
            project_id=project_id,
        )
        metadata = PublishMetadata(
            project_name=project.name,
            project_slug=slugify(project.name),
            is_project_doc=True,
            quality_score=quality_score,
        )
        for publisher in self.publishers:
            await publisher.publish(documentation, metadata)

        self.tracker.heartbeat(run_id, RunPhase.COMMITTING)
        committed = self.storage.upsert_snapshots(
            (
                SnapshotInput(
                    recipe_id=recipe.id,
                    tenant_id=tenant_id,
                    content_hash=compute_recipe_hash(recipe),
                    raw_json=recipe_to_json(recipe),
                )
                for recipe in recipes
            ),
            documentation=DocumentationInput(
                tenant_id=tenant_id,
                content_md=doc.markdown,
                content_html=doc.html,
                project_id=project_id,
                quality_score=quality_score,
            ),
        )
        logger.info(
            f"Project {project_id} (tenant={tenant_id}) documented; snapshots committed={committed} "
            f"quality={quality_score}"
        )
        return True

    async def _assess_quality(self, doc: DocumentationResult, subject_name: str) -> Optional[float]:
        if not self.settings.ASSESS_DOCUMENTATION_QUALITY:
            return None
        try:
            quality = await self.ai_client.assess_quality(doc, subject_name)
        except DocSyncError as exc:
            logger.warning(f"Quality assessment failed for {subject_name!r}: {exc}")
            return None
        if quality.issues:
            logger.info(f"Quality {quality.score} for {subject_name!r}; issues: {'; '.join(quality.issues)}")
        return quality.score

    async def _has_meaningful_change(self, changed: List[ChangedRecipe], current: Dict[int, WorkatoRecipe]) -> bool:
        for entry in changed:
            new_recipe = current.get(entry.recipe_id)
            if new_recipe is None:
                continue
            snapshot = self.storage.get_latest_snapshot(entry.recipe_id)
            if snapshot is None:
                return True
            try:
                old_recipe = recipe_from_json(snapshot.raw_json)
            except ParseError as exc:
                logger.warning(f"Recipe {entry.recipe_id}: previous snapshot unreadable ({exc}); regenerating")
                return True
            try:
                verdict = await self.ai_client.analyze_semantic_change(old_recipe, new_recipe)
            except DocSyncError as exc:
                logger.warning(f"Recipe {entry.recipe_id}: semantic analysis failed ({exc}); regenerating")
                return True
            logger.info(
                f"Recipe {entry.recipe_id}: meaningful={verdict.has_meaningful_change} "
                f"type={verdict.change_type} summary={verdict.change_summary!r}"
            )
            if verdict.has_meaningful_change:
                return True
        return False

    def _project_recipes(self, tenant_id: str, project_id: int, current: Dict[int, WorkatoRecipe]) -> List[WorkatoRecipe]:
        """All active recipes of the project, fetched payloads first."""
        recipes: "OrderedDict[int, WorkatoRecipe]" = OrderedDict()
        prefix = self.settings.ACTIVE_RECIPE_PREFIX
        for row in self.storage.get_recipes_by_project(tenant_id, project_id):
            if row.id in current:
                recipes[row.id] = current[row.id]
                continue
            if not (row.name or "").startswith(prefix):
                continue
            try:
                recipes[row.id] = recipe_from_json(row.raw_json)
            except ParseError as exc:
                logger.warning(f"Recipe {row.id}: stored payload unreadable ({exc}); left out of project docs")
        for recipe_id, recipe in current.items():
            recipes.setdefault(recipe_id, recipe)
        return list(recipes.values())

    async def _lookup_context(self, tenant_id: str, recipes: List[WorkatoRecipe]) -> List[LookupTableContext]:
        if not self.settings.RESOLVE_LOOKUP_TABLES:
            return []
        refs = extract_lookup_table_references_from_recipes(recipes)
        try:
            return await resolve_lookup_tables(self.client, tenant_id, refs)
        except DocSyncError as exc:
            logger.warning(f"Lookup tables unavailable for tenant={tenant_id}: {exc}")
            return []

    async def _summarize(self, result: PipelineResult) -> str:
        try:
            summary = await self.ai_client.generate_run_summary(
                RunSummaryInput(
                    tenants_processed=result.tenants_processed,
                    recipes_fetched=result.recipes_fetched,
                    recipes_changed=result.recipes_changed,
                    recipes_documented=result.recipes_documented,
                    errors=list(result.errors),
                )
            )
        except DocSyncError as exc:
            logger.warning(f"Run summary generation failed: {exc}")
            return fallback_summary(result)
        return summary or fallback_summary(result)


async def run_documentation_pipeline(tenant_id: Optional[str] = None, force: bool = False) -> Optional[PipelineResult]:
    """Run one pass with collaborators built from settings."""
    from docsync.models_sqlalchemy import SessionLocal
    from docsync.services.ai.openai_client import OpenAIClient
    from docsync.services.publishers import FileSystemPublisher

    tenant_ids = [tenant_id] if tenant_id else default_settings.tenant_filter
    db = SessionLocal()
    try:
        async with WorkatoClient() as client:
            pipeline = DocumentationPipeline(
                db,
                client,
                OpenAIClient(),
                [FileSystemPublisher(default_settings.OUTPUT_DIR)],
            )
            return await pipeline.run(tenant_ids, force)
    finally:
        db.close()
