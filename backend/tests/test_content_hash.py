import json
from types import SimpleNamespace

from docsync.models.workato import WorkatoRecipe
from docsync.services.content_hash import (
    HASH_VERSION,
    compute_recipe_hash,
    get_changed_recipes,
)


def _recipe(**overrides):
    data = {
        "id": 1,
        "name": "[active] Employee sync",
        "description": "Sync employees",
        "code": json.dumps({"keyword": "trigger", "provider": "workday", "input": {"a": 1, "b": 2}}),
        "config": [{"keyword": "application", "name": "workday", "provider": "workday", "account_id": 7}],
    }
    data.update(overrides)
    return WorkatoRecipe.model_validate(data)


def test_hash_is_deterministic_and_versioned():
    recipe = _recipe()
    first = compute_recipe_hash(recipe)

    assert first == compute_recipe_hash(recipe)
    assert first == compute_recipe_hash(_recipe())
    version, digest = first.split(":")
    assert version == HASH_VERSION
    assert len(digest) == 64


def test_key_order_does_not_change_hash():
    reordered_code = json.dumps({"input": {"b": 2, "a": 1}, "provider": "workday", "keyword": "trigger"})
    reordered_config = [{"account_id": 7, "provider": "workday", "name": "workday", "keyword": "application"}]

    assert compute_recipe_hash(_recipe()) == compute_recipe_hash(
        _recipe(code=reordered_code, config=reordered_config)
    )


def test_relevant_field_changes_change_hash():
    base = compute_recipe_hash(_recipe())

    assert compute_recipe_hash(_recipe(name="[active] Renamed")) != base
    assert compute_recipe_hash(_recipe(description="Other")) != base
    assert compute_recipe_hash(_recipe(code=json.dumps({"keyword": "trigger"}))) != base
    assert compute_recipe_hash(
        _recipe(config=[{"keyword": "application", "name": "workday", "provider": "workday", "account_id": 8}])
    ) != base


def test_missing_description_and_config_default_to_empty():
    assert compute_recipe_hash(_recipe(description=None, config=None)) == compute_recipe_hash(
        _recipe(description="", config=[])
    )


def test_run_counters_do_not_change_hash():
    noisy = _recipe(job_succeeded_count=1000, job_failed_count=3, last_run_at="2026-03-01T00:00:00Z", version_no=9)

    assert compute_recipe_hash(noisy) == compute_recipe_hash(_recipe())


def test_mapping_and_model_hash_identically():
    recipe = _recipe()
    as_dict = {
        "code": recipe.code,
        "name": recipe.name,
        "description": recipe.description,
        "config": [b.model_dump(exclude_unset=True) for b in recipe.config],
    }

    assert compute_recipe_hash(as_dict) == compute_recipe_hash(recipe)


def test_classification_returns_only_new_and_changed():
    new = _recipe(id=1)
    changed = _recipe(id=2)
    unchanged = _recipe(id=3)
    stored = {
        2: "v2:outdated",
        3: compute_recipe_hash(unchanged),
    }
    items = [SimpleNamespace(recipe=r, tenant_id="100") for r in (new, changed, unchanged)]

    result = get_changed_recipes(items, stored.get)

    assert [(c.recipe_id, c.is_new) for c in result] == [(1, True), (2, False)]
    assert all(c.tenant_id == "100" for c in result)
    assert result[0].content_hash == compute_recipe_hash(new)


def test_hash_from_older_rule_counts_as_changed():
    recipe = _recipe()
    digest = compute_recipe_hash(recipe).split(":")[1]
    items = [SimpleNamespace(recipe=recipe, tenant_id="1")]

    result = get_changed_recipes(items, lambda _id: f"v1:{digest}")

    assert len(result) == 1 and not result[0].is_new
