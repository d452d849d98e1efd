import json

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from docsync.config import Settings
from docsync.errors import UpstreamError
from docsync.models.workato import WorkatoRecipe
from docsync.models_sqlalchemy.models import RecipeSnapshot, SyncLease, SyncRun, Tenant
from docsync.services.content_hash import compute_recipe_hash
from docsync.services.orchestrator import DocumentationPipeline
from docsync.services.run_tracker import LEASE_NAME, RunTracker
from docsync.services.storage import RecipeStorage, SnapshotInput, recipe_to_json

FUTURE = "2999-01-01T00:00:00Z"


@pytest.fixture
def pipeline_factory(db_session, make_client, workato_api, fake_ai, fake_publisher):
    def _make(handler=None, **overrides):
        overrides.setdefault("RESOLVE_LOOKUP_TABLES", True)
        return DocumentationPipeline(
            db_session,
            make_client(handler or workato_api.handler),
            fake_ai,
            [fake_publisher],
            Settings(**overrides),
        )

    return _make


@pytest.fixture
def hr_project(workato_api, recipe_factory):
    """Tenant 1 with project 1 (folder 10) holding recipes 1 and 2."""
    workato_api.add_tenant(1, external_id="acme")
    workato_api.add_project(1, 1, 10, name="HR Sync", description="Hiring")
    workato_api.add_recipe(1, recipe_factory(1, updated_at=FUTURE))
    workato_api.add_recipe(1, recipe_factory(2, updated_at=FUTURE))
    return workato_api


def _snapshot_hashes(db_session):
    return {s.recipe_id: s.content_hash for s in db_session.query(RecipeSnapshot).all()}


def _modify_recipe(api, recipe_factory, recipe_id, **extra):
    extra.setdefault("updated_at", FUTURE)
    api.set_recipe(1, recipe_factory(recipe_id, code={"keyword": "trigger", "provider": "jira"}, **extra))


@pytest.mark.asyncio
async def test_new_recipe_regenerates_project_and_commits_all_snapshots(
    db_session, pipeline_factory, hr_project, recipe_factory, fake_ai, fake_publisher
):
    r2 = WorkatoRecipe.model_validate(recipe_factory(2, updated_at=FUTURE))
    RecipeStorage(db_session).upsert_snapshot(
        SnapshotInput(recipe_id=2, tenant_id="1", content_hash=compute_recipe_hash(r2), raw_json=recipe_to_json(r2))
    )

    result = await pipeline_factory().run()

    assert result.status == "completed"
    assert result.recipes_fetched == 2
    assert result.recipes_changed == 1
    assert result.recipes_documented == 1
    assert result.documented_projects == [("1", 1)]
    assert fake_ai.semantic_calls == []
    assert [c["recipe_ids"] for c in fake_ai.project_calls] == [[1, 2]]
    assert len(fake_publisher.published) == 1
    doc, meta = fake_publisher.published[0]
    assert doc.tenant_id == "1" and doc.project_id == 1
    assert meta.project_slug == "hr-sync" and meta.is_project_doc
    assert set(_snapshot_hashes(db_session)) == {1, 2}
    stored = RecipeStorage(db_session).get_documentation("1", project_id=1)
    assert stored.content_md == "# HR Sync\n\n2 recipes"
    assert stored.quality_score is None
    assert fake_ai.quality_calls == []

    run = db_session.get(SyncRun, result.run_id)
    assert run.status == "completed"
    assert run.phase == "FINISHED"
    assert run.errors is None
    assert run.summary == "All good."
    assert db_session.get(SyncLease, LEASE_NAME).run_id is None


@pytest.mark.asyncio
async def test_publish_failure_commits_nothing_and_is_retried(
    db_session, pipeline_factory, hr_project, fake_publisher, publish_error
):
    fake_publisher.error = publish_error

    failed = await pipeline_factory().run()

    assert failed.status == "error"
    assert failed.errors == ["Project 1: disk full"]
    assert _snapshot_hashes(db_session) == {}
    assert db_session.get(SyncRun, failed.run_id).errors == "Project 1: disk full"
    assert RecipeStorage(db_session).get_documentation("1", project_id=1) is None

    fake_publisher.error = None
    retried = await pipeline_factory().run()

    assert retried.status == "completed"
    assert retried.recipes_changed == 2
    assert len(fake_publisher.published) == 1
    assert set(_snapshot_hashes(db_session)) == {1, 2}


@pytest.mark.asyncio
async def test_unchanged_recipes_are_not_redocumented(db_session, pipeline_factory, hr_project, fake_ai):
    await pipeline_factory().run()

    second = await pipeline_factory().run()

    assert second.recipes_fetched == 2
    assert second.recipes_changed == 0
    assert second.recipes_documented == 0
    assert len(fake_ai.project_calls) == 1


@pytest.mark.asyncio
async def test_cosmetic_change_skips_regeneration(db_session, pipeline_factory, hr_project, recipe_factory, fake_ai):
    await pipeline_factory().run()
    before = _snapshot_hashes(db_session)
    _modify_recipe(hr_project, recipe_factory, 1)
    fake_ai.meaningful = False

    result = await pipeline_factory().run()

    assert result.recipes_changed == 1
    assert result.recipes_documented == 0
    assert result.status == "completed"
    assert len(fake_ai.semantic_calls) == 1
    old, new = fake_ai.semantic_calls[0]
    assert old.code != new.code
    assert len(fake_ai.project_calls) == 1
    assert _snapshot_hashes(db_session) == before


@pytest.mark.asyncio
async def test_meaningful_change_regenerates(db_session, pipeline_factory, hr_project, recipe_factory, fake_ai):
    await pipeline_factory().run()
    before = _snapshot_hashes(db_session)
    _modify_recipe(hr_project, recipe_factory, 1)

    result = await pipeline_factory().run()

    assert result.recipes_documented == 1
    assert len(fake_ai.project_calls) == 2
    after = _snapshot_hashes(db_session)
    assert after[1] != before[1]
    assert after[2] == before[2]


@pytest.mark.asyncio
async def test_classifier_failure_counts_as_meaningful(
    pipeline_factory, hr_project, recipe_factory, fake_ai, generation_error
):
    await pipeline_factory().run()
    _modify_recipe(hr_project, recipe_factory, 1)
    fake_ai.semantic_error = generation_error

    result = await pipeline_factory().run()

    assert result.recipes_documented == 1
    assert result.errors == []


@pytest.mark.asyncio
async def test_unreadable_previous_snapshot_counts_as_meaningful(
    db_session, pipeline_factory, hr_project, recipe_factory, fake_ai
):
    await pipeline_factory().run()
    snapshot = db_session.query(RecipeSnapshot).filter(RecipeSnapshot.recipe_id == 1).one()
    snapshot.raw_json = "{broken"
    db_session.commit()
    _modify_recipe(hr_project, recipe_factory, 1)

    result = await pipeline_factory().run()

    assert result.recipes_documented == 1
    assert fake_ai.semantic_calls == []


@pytest.mark.asyncio
async def test_force_redocuments_everything_without_watermark(pipeline_factory, hr_project, fake_ai):
    await pipeline_factory().run()
    hr_project.requests.clear()

    result = await pipeline_factory().run(force=True)

    assert result.recipes_changed == 2
    assert result.recipes_documented == 1
    assert fake_ai.semantic_calls == []
    recipe_requests = [r for r in hr_project.requests if r.url.path.endswith("/recipes")]
    assert recipe_requests
    assert all("updated_after" not in r.url.params for r in recipe_requests)


@pytest.mark.asyncio
async def test_incremental_run_documents_whole_project(pipeline_factory, workato_api, recipe_factory, fake_ai):
    workato_api.add_tenant(1)
    workato_api.add_project(1, 1, 10, name="HR Sync")
    workato_api.add_recipe(1, recipe_factory(1, updated_at=FUTURE))
    workato_api.add_recipe(1, recipe_factory(2, updated_at="2020-01-01T00:00:00Z"))
    await pipeline_factory().run()
    _modify_recipe(workato_api, recipe_factory, 1)

    result = await pipeline_factory().run()

    assert result.recipes_fetched == 1
    assert fake_ai.project_calls[-1]["recipe_ids"] == [1, 2]
    recipe_requests = [r for r in workato_api.requests if r.url.path.endswith("/recipes")]
    assert recipe_requests[-1].url.params["updated_after"].endswith("Z")


@pytest.mark.asyncio
async def test_missing_project_is_recorded_and_others_continue(
    pipeline_factory, hr_project, recipe_factory, fake_publisher
):
    hr_project.add_recipe(1, recipe_factory(3, project_id=99, updated_at=FUTURE))

    result = await pipeline_factory().run()

    assert result.status == "partial"
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Project 99:")
    assert result.documented_projects == [("1", 1)]
    assert len(fake_publisher.published) == 1


@pytest.mark.asyncio
async def test_generation_failure_is_a_project_error(db_session, pipeline_factory, hr_project, fake_ai, generation_error):
    fake_ai.doc_error = generation_error

    result = await pipeline_factory().run()

    assert result.errors == ["Project 1: model unavailable"]
    assert _snapshot_hashes(db_session) == {}


@pytest.mark.asyncio
async def test_tenant_errors_are_collected_and_block_the_watermark(
    db_session, pipeline_factory, hr_project, recipe_factory
):
    hr_project.add_tenant(2, name="Globex")
    hr_project.failures[("2", "projects")] = 403

    result = await pipeline_factory().run()

    assert result.tenants_processed == 1
    assert result.status == "partial"
    assert result.errors[0].startswith("Tenant 2: Workato API error (403)")
    assert result.documented_projects == [("1", 1)]
    assert RunTracker(db_session).last_successful_run_finished_at() is None


@pytest.mark.asyncio
async def test_tenant_filter_limits_the_run(pipeline_factory, hr_project):
    hr_project.add_tenant(2, external_id="globex")

    result = await pipeline_factory().run(tenant_ids=["acme"])

    assert result.tenants_processed == 1
    assert not any("/managed_users/2/" in r.url.path for r in hr_project.requests)


@pytest.mark.asyncio
async def test_fetch_abort_finishes_run_and_reraises(db_session, pipeline_factory):
    def handler(request):
        return httpx.Response(401, json={"message": "Invalid token"})

    with pytest.raises(UpstreamError):
        await pipeline_factory(handler).run()

    run = db_session.query(SyncRun).one()
    assert run.status == "error"
    assert run.finished_at is not None
    assert "Invalid token" in run.errors
    assert db_session.get(SyncLease, LEASE_NAME).run_id is None


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(db_session, pipeline_factory, hr_project, fake_ai):
    RunTracker(db_session).start_run()

    assert await pipeline_factory().run() is None
    assert hr_project.requests == []


@pytest.mark.asyncio
async def test_summary_failure_uses_fallback(pipeline_factory, hr_project, fake_ai, generation_error):
    fake_ai.summary_error = generation_error

    result = await pipeline_factory().run()

    assert result.status == "completed"
    assert result.errors == []
    assert result.summary.startswith("Processed 1 tenants")


@pytest.mark.asyncio
async def test_lookup_tables_are_passed_to_generation(pipeline_factory, hr_project, recipe_factory, fake_ai):
    hr_project.set_recipe(1, recipe_factory(1, code={"input": {"table_name": "Offices"}}, updated_at=FUTURE))
    hr_project.lookup_tables["1"] = [{"id": 4, "name": "Offices", "schema": json.dumps(["Code", "City"])}]
    hr_project.lookup_rows[4] = [{"id": 1, "data": {"Code": "BER", "City": "Berlin"}}]

    await pipeline_factory().run()

    tables = fake_ai.project_calls[0]["lookup_tables"]
    assert [(t.name, t.columns) for t in tables] == [("Offices", ["Code", "City"])]
    assert tables[0].sample_rows == [{"Code": "BER", "City": "Berlin"}]


@pytest.mark.asyncio
async def test_lookup_listing_failure_does_not_block_docs(pipeline_factory, hr_project, recipe_factory, fake_ai):
    hr_project.set_recipe(1, recipe_factory(1, code={"input": {"table_id": 4}}, updated_at=FUTURE))
    hr_project.failures[("1", "lookup_tables")] = 403

    result = await pipeline_factory().run()

    assert result.recipes_documented == 1
    assert fake_ai.project_calls[0]["lookup_tables"] is None


@pytest.mark.asyncio
async def test_lookup_resolution_can_be_disabled(pipeline_factory, hr_project, recipe_factory, fake_ai):
    hr_project.set_recipe(1, recipe_factory(1, code={"input": {"table_id": 4}}, updated_at=FUTURE))

    await pipeline_factory(RESOLVE_LOOKUP_TABLES=False).run()

    assert not any("lookup_tables" in r.url.path for r in hr_project.requests)


@pytest.mark.asyncio
async def test_storage_failure_finalizes_run_and_releases_lease(db_session, pipeline_factory, hr_project):
    # Claims tenant_id "1" under another id, so storing tenant 1 violates the unique key.
    db_session.add(Tenant(id=999, tenant_id="1", name="Clash"))
    db_session.commit()

    with pytest.raises(IntegrityError):
        await pipeline_factory().run()

    run = db_session.query(SyncRun).one()
    assert run.status == "error"
    assert run.finished_at is not None
    assert run.errors
    assert db_session.get(SyncLease, LEASE_NAME).run_id is None
    assert RunTracker(db_session).start_run() is not None


@pytest.mark.asyncio
async def test_finalize_failure_still_raises_the_original_error(db_session, pipeline_factory, monkeypatch):
    def handler(request):
        return httpx.Response(401, json={"message": "Invalid token"})

    def broken_finish(self, run_id, stats):
        raise RuntimeError("database gone")

    monkeypatch.setattr(RunTracker, "finish_run", broken_finish)

    with pytest.raises(UpstreamError):
        await pipeline_factory(handler).run()


@pytest.mark.asyncio
async def test_heartbeat_after_each_fetched_tenant(pipeline_factory, workato_api, monkeypatch):
    for tenant_id in (1, 2, 3):
        workato_api.add_tenant(tenant_id)
        workato_api.add_project(tenant_id, tenant_id, tenant_id * 10)
    beats = []
    original = RunTracker.heartbeat

    def recording_heartbeat(self, run_id, phase=None):
        beats.append((phase, len(workato_api.requests)))
        return original(self, run_id, phase)

    monkeypatch.setattr(RunTracker, "heartbeat", recording_heartbeat)

    await pipeline_factory().run()

    # One tenant listing, then a project and a recipe listing per tenant.
    assert [count for phase, count in beats if phase is None] == [3, 5, 7]


@pytest.mark.asyncio
async def test_quality_score_is_published_and_stored(db_session, pipeline_factory, hr_project, fake_ai, fake_publisher):
    result = await pipeline_factory(ASSESS_DOCUMENTATION_QUALITY=True).run()

    assert result.status == "completed"
    assert fake_ai.quality_calls == ["HR Sync"]
    assert fake_publisher.published[0][1].quality_score == 4.0
    assert RecipeStorage(db_session).get_documentation("1", project_id=1).quality_score == 4.0


@pytest.mark.asyncio
async def test_quality_failure_does_not_block_publishing(
    db_session, pipeline_factory, hr_project, fake_ai, fake_publisher, generation_error
):
    fake_ai.quality_error = generation_error

    result = await pipeline_factory(ASSESS_DOCUMENTATION_QUALITY=True).run()

    assert result.status == "completed"
    assert result.recipes_documented == 1
    assert fake_publisher.published[0][1].quality_score is None
    assert RecipeStorage(db_session).get_documentation("1", project_id=1).quality_score is None
