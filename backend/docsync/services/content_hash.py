"""Content fingerprint of a recipe and change classification.

Only fields that change what a recipe does (or how it is documented) take
part in the hash: the definition body, name, description and connection
bindings. Run counters, last-run timestamps, version numbers and the like
must never flip a recipe to "changed".
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional

from docsync.services.recipe_definition import RecipeDefinition


# Bump whenever the canonical encoding below changes so that hashes written
# under an older rule never compare equal to current ones.
HASH_VERSION = "v2"


def _get(recipe: Any, field: str) -> Any:
    if isinstance(recipe, Mapping):
        return recipe.get(field)
    return getattr(recipe, field, None)


def _binding_to_dict(binding: Any) -> Any:
    if hasattr(binding, "model_dump"):
        return binding.model_dump(mode="json", exclude_unset=True)
    return binding


def canonical_bindings(config: Optional[Iterable[Any]]) -> List[str]:
    """Encode each connection binding on its own, keys sorted, list order kept."""
    return [
        json.dumps(_binding_to_dict(entry), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        for entry in (config or [])
    ]


def canonical_recipe_bytes(recipe: Any) -> bytes:
    definition = RecipeDefinition.from_raw(_get(recipe, "code"))
    # Explicit field order; the layout of the source object is irrelevant.
    payload = [
        ["code", definition.canonical()],
        ["name", _get(recipe, "name") or ""],
        ["description", _get(recipe, "description") or ""],
        ["config", canonical_bindings(_get(recipe, "config"))],
    ]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_recipe_hash(recipe: Any) -> str:
    """Return ``"<version>:<sha256 hex>"`` for the recipe's relevant content."""
    digest = hashlib.sha256(canonical_recipe_bytes(recipe)).hexdigest()
    return f"{HASH_VERSION}:{digest}"


@dataclass
class ChangedRecipe:
    recipe_id: int
    tenant_id: str
    is_new: bool
    content_hash: str


def get_changed_recipes(
    current_recipes: Iterable[Any],
    get_latest_hash: Callable[[int], Optional[str]],
) -> List[ChangedRecipe]:
    """Classify fetched recipes against committed hashes.

    ``current_recipes`` holds objects with ``recipe`` and ``tenant_id``
    attributes. Recipes without a prior hash come back as new, recipes whose
    prior hash differs come back as changed; unchanged ones are omitted.
    """
    changed: List[ChangedRecipe] = []
    for item in current_recipes:
        recipe = item.recipe
        current_hash = compute_recipe_hash(recipe)
        previous_hash = get_latest_hash(recipe.id)
        if previous_hash is None:
            changed.append(ChangedRecipe(recipe.id, item.tenant_id, True, current_hash))
        elif previous_hash != current_hash:
            changed.append(ChangedRecipe(recipe.id, item.tenant_id, False, current_hash))
    return changed
