import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from docsync.errors import GenerationError, PublishError
from docsync.models_sqlalchemy import init_db, make_engine
from docsync.services.ai import DocumentationResult, QualityResult, SemanticChangeResult
from docsync.services.workato_client import WorkatoClient


BASE_URL = "https://workato.test/api"


@pytest.fixture
def db_session():
    """Fresh in-memory SQLite database with all tables created."""
    engine = make_engine("sqlite://")
    init_db(engine)
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def make_recipe(recipe_id: int, *, folder_id: int = 10, project_id: Optional[int] = 1, name: Optional[str] = None,
                code: Any = None, **extra) -> Dict[str, Any]:
    if code is None:
        code = {"keyword": "trigger", "provider": "salesforce", "block": [{"keyword": "action", "provider": "workday"}]}
    payload = {
        "id": recipe_id,
        "name": name if name is not None else f"[active] Recipe {recipe_id}",
        "description": None,
        "folder_id": folder_id,
        "project_id": project_id,
        "trigger_application": "salesforce",
        "action_applications": ["workday"],
        "running": True,
        "code": code if isinstance(code, str) else json.dumps(code),
        "config": [{"keyword": "application", "name": "salesforce", "provider": "salesforce", "account_id": 5}],
        "updated_at": "2026-01-01T00:00:00Z",
    }
    payload.update(extra)
    return payload


class FakeWorkatoAPI:
    """Minimal in-memory Workato managed users API for httpx.MockTransport."""

    def __init__(self):
        self.tenants: List[Dict[str, Any]] = []
        self.projects: Dict[str, List[Dict[str, Any]]] = {}
        self.recipes: Dict[str, List[Dict[str, Any]]] = {}
        self.lookup_tables: Dict[str, List[Dict[str, Any]]] = {}
        self.lookup_rows: Dict[int, List[Dict[str, Any]]] = {}
        # (tenant_id, resource) -> HTTP status to answer with
        self.failures: Dict[tuple, int] = {}
        self.requests: List[httpx.Request] = []

    def add_tenant(self, tenant_id: int, external_id: Optional[str] = None, name: str = "Acme"):
        self.tenants.append({"id": tenant_id, "external_id": external_id, "name": name})
        self.projects.setdefault(str(tenant_id), [])
        self.recipes.setdefault(str(tenant_id), [])

    def add_project(self, tenant_id: int, project_id: int, folder_id: int, name: str = "HR Sync", description=None):
        self.projects[str(tenant_id)].append(
            {"id": project_id, "folder_id": folder_id, "name": name, "description": description}
        )

    def add_recipe(self, tenant_id: int, recipe: Dict[str, Any]):
        self.recipes[str(tenant_id)].append(recipe)

    def set_recipe(self, tenant_id: int, recipe: Dict[str, Any]):
        rows = self.recipes[str(tenant_id)]
        self.recipes[str(tenant_id)] = [r for r in rows if r["id"] != recipe["id"]] + [recipe]

    @staticmethod
    def _page(request: httpx.Request, items: List[Dict[str, Any]]) -> httpx.Response:
        page = int(request.url.params.get("page", 1))
        per_page = int(request.url.params.get("per_page", 100))
        start = (page - 1) * per_page
        return httpx.Response(200, json={"result": items[start:start + per_page], "count": len(items)})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.split("/")[2:]  # drop "" and "api"
        if parts == ["managed_users"]:
            return self._page(request, self.tenants)

        tenant_id, resource = parts[1], parts[2]
        status = self.failures.get((tenant_id, resource))
        if status:
            return httpx.Response(status, json={"message": f"{resource} unavailable"})

        if resource == "projects":
            return self._page(request, self.projects.get(tenant_id, []))
        if resource == "recipes":
            rows = self.recipes.get(tenant_id, [])
            folder_id = request.url.params.get("folder_id")
            if folder_id is not None:
                rows = [r for r in rows if str(r.get("folder_id")) == folder_id]
            updated_after = request.url.params.get("updated_after")
            if updated_after:
                rows = [r for r in rows if (r.get("updated_at") or "") >= updated_after]
            return self._page(request, rows)
        if resource == "lookup_tables" and len(parts) == 3:
            return self._page(request, self.lookup_tables.get(tenant_id, []))
        if resource == "lookup_tables" and parts[-1] == "rows":
            table_id = int(parts[3])
            if (tenant_id, f"rows:{table_id}") in self.failures:
                return httpx.Response(self.failures[(tenant_id, f"rows:{table_id}")], json={"message": "boom"})
            return self._page(request, self.lookup_rows.get(table_id, []))
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def workato_api():
    return FakeWorkatoAPI()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(sleeps):
    """Factory for a WorkatoClient that answers from a handler and never really sleeps."""

    async def fake_sleep(delay):
        sleeps.append(delay)

    def _make(handler, **kwargs):
        return WorkatoClient(
            api_token="test-token",
            base_url=BASE_URL,
            transport=httpx.MockTransport(handler),
            sleep=fake_sleep,
            **kwargs,
        )

    return _make


class FakeAIClient:
    def __init__(self):
        self.meaningful = True
        self.semantic_error: Optional[Exception] = None
        self.doc_error: Optional[Exception] = None
        self.summary_error: Optional[Exception] = None
        self.quality_score = 4.0
        self.quality_error: Optional[Exception] = None
        self.quality_calls: List[str] = []
        self.semantic_calls: List[tuple] = []
        self.project_calls: List[Dict[str, Any]] = []
        self.summary_calls: List[Any] = []

    async def analyze_semantic_change(self, old_recipe, new_recipe):
        self.semantic_calls.append((old_recipe, new_recipe))
        if self.semantic_error:
            raise self.semantic_error
        return SemanticChangeResult(has_meaningful_change=self.meaningful, change_summary="diff", change_type="logic")

    async def generate_documentation(self, tenant_id, recipe, lookup_tables=None):
        return DocumentationResult(markdown=f"# {recipe.name}")

    async def generate_project_documentation(self, tenant_id, project_name, project_description, recipes,
                                             lookup_tables=None):
        self.project_calls.append(
            {
                "tenant_id": tenant_id,
                "project_name": project_name,
                "recipe_ids": [r.id for r in recipes],
                "lookup_tables": lookup_tables,
            }
        )
        if self.doc_error:
            raise self.doc_error
        return DocumentationResult(markdown=f"# {project_name}\n\n{len(recipes)} recipes")

    async def assess_quality(self, doc, subject_name):
        self.quality_calls.append(subject_name)
        if self.quality_error:
            raise self.quality_error
        return QualityResult(score=self.quality_score, issues=["No examples"])

    async def generate_run_summary(self, summary_input):
        self.summary_calls.append(summary_input)
        if self.summary_error:
            raise self.summary_error
        return "All good."


class FakePublisher:
    def __init__(self):
        self.published: List[tuple] = []
        self.error: Optional[Exception] = None

    async def publish(self, doc, metadata):
        if self.error:
            raise self.error
        self.published.append((doc, metadata))


@pytest.fixture
def fake_ai():
    return FakeAIClient()


@pytest.fixture
def fake_publisher():
    return FakePublisher()


@pytest.fixture
def generation_error():
    return GenerationError("model unavailable")


@pytest.fixture
def publish_error():
    return PublishError("disk full")


@pytest.fixture
def recipe_factory():
    return make_recipe
