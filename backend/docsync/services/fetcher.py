"""Fetch tenants, projects and active recipes and keep the catalog current."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Set

from docsync.config import settings
from docsync.errors import DocSyncError
from docsync.models.workato import WorkatoRecipe
from docsync.services.run_tracker import format_watermark
from docsync.services.storage import RecipeStorage
from docsync.services.workato_client import WorkatoClient
from docsync.utils.logger import logger


@dataclass
class FetchedRecipe:
    recipe: WorkatoRecipe
    tenant_id: str
    project_id: Optional[int]


@dataclass
class FetchResult:
    tenants_processed: int = 0
    projects_fetched: int = 0
    recipes_fetched: int = 0
    recipes: List[FetchedRecipe] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def is_active_recipe(recipe: WorkatoRecipe, prefix: Optional[str] = None) -> bool:
    prefix = settings.ACTIVE_RECIPE_PREFIX if prefix is None else prefix
    return (recipe.name or "").startswith(prefix)


async def fetch_and_store_recipes(
    client: WorkatoClient,
    storage: RecipeStorage,
    *,
    tenant_ids: Optional[Sequence[str]] = None,
    updated_after: Optional[datetime] = None,
    active_prefix: Optional[str] = None,
    on_tenant_done: Optional[Callable[[str], None]] = None,
) -> FetchResult:
    """Walk every tenant's projects and collect active recipes.

    Recipes are listed per project folder without subfolders, so a recipe
    belongs to exactly one project. Tenant, project and recipe rows are
    upserted as they arrive. Failing to list tenants raises; a failure inside
    one tenant is recorded in ``FetchResult.errors`` and the next tenant is
    processed. ``on_tenant_done`` is called with the tenant id after every
    tenant, failed or not.
    """
    result = FetchResult()
    updated_after_param = format_watermark(updated_after)

    tenants = await client.list_all_tenants(tenant_ids)
    if tenant_ids and not tenants:
        logger.warning(f"No managed users matched tenant filter {list(tenant_ids)}")

    for tenant in tenants:
        tenant_id = str(tenant.id)
        try:
            storage.upsert_tenant(tenant)
            projects = await client.list_all_projects(tenant.id)
            for project in projects:
                storage.upsert_project(tenant_id, project)
            result.projects_fetched += len(projects)

            seen: Set[int] = set()
            for project in projects:
                recipes = await client.list_all_recipes(
                    tenant.id,
                    updated_after=updated_after_param,
                    folder_id=project.folder_id,
                    with_subfolders=False,
                )
                for recipe in recipes:
                    if recipe.id in seen:
                        continue
                    if not is_active_recipe(recipe, active_prefix):
                        # Keep a deactivated recipe's stored name current so it drops
                        # out of project documentation.
                        if storage.get_recipe(recipe.id, tenant_id) is not None:
                            storage.upsert_recipe(tenant_id, recipe, recipe.project_id or project.id)
                        continue
                    seen.add(recipe.id)
                    project_id = recipe.project_id if recipe.project_id is not None else project.id
                    storage.upsert_recipe(tenant_id, recipe, project_id)
                    result.recipes.append(FetchedRecipe(recipe, tenant_id, project_id))
                    result.recipes_fetched += 1

            result.tenants_processed += 1
            logger.info(
                f"Fetched tenant={tenant_id} projects={len(projects)} active_recipes={len(seen)} "
                f"updated_after={updated_after_param}"
            )
        except DocSyncError as exc:
            logger.error(f"Fetch failed for tenant={tenant_id}: {exc}")
            result.errors.append(f"Tenant {tenant_id}: {exc}")

        if on_tenant_done is not None:
            on_tenant_done(tenant_id)

    return result
