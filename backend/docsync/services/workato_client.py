"""Async client for the Workato Embedded (managed users) API.

Every public ``list_all_*`` call hides numbered pagination; every request
goes through :meth:`WorkatoClient.request`, which owns the retry policy:

- transport failures (connection reset, timeout, DNS), 5xx and 429 are
  retried with exponential backoff (1s, 2s, 4s ... capped);
- a 429 carrying ``Retry-After`` waits that long instead (also capped);
- any other 4xx fails immediately.

One ``x-correlation-id`` is generated per logical request and reused for all
of its retries so a request can be traced end to end in Workato support logs.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union
from urllib.parse import quote
from uuid import uuid4

import httpx
from pydantic import BaseModel

from docsync.config import settings
from docsync.errors import ExhaustedPaginationError, NotFoundError, ParseError, UpstreamError
from docsync.models.workato import (
    PaginatedResponse,
    WorkatoLookupTable,
    WorkatoLookupTableRow,
    WorkatoProject,
    WorkatoRecipe,
    WorkatoTenant,
)
from docsync.utils.logger import logger, sanitize_headers


M = TypeVar("M", bound=BaseModel)

CORRELATION_HEADER = "x-correlation-id"
# Page guard for lookup table listing, well below WORKATO_MAX_PAGES.
LOOKUP_TABLE_MAX_PAGES = 5


def format_tenant_id(tenant_id: Union[str, int]) -> str:
    """Managed user id as used in URL paths.

    External ids are prefixed with ``E`` by Workato and may contain
    characters that need escaping; numeric ids are used as-is.
    """
    value = str(tenant_id)
    if value.startswith("E"):
        return quote(value, safe="")
    return value


def filter_tenants(tenants: Iterable[WorkatoTenant], tenant_ids: Optional[Iterable[str]]) -> List[WorkatoTenant]:
    """Keep tenants whose numeric id or external id equals one of ``tenant_ids``."""
    if tenant_ids is None:
        return list(tenants)
    wanted = {str(t).strip() for t in tenant_ids if str(t).strip()}
    return [
        t for t in tenants
        if str(t.id) in wanted or (t.external_id is not None and t.external_id in wanted)
    ]


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def extract_error_message(response: httpx.Response) -> str:
    """Best-effort error text from a Workato error response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list):
            titles = [
                str(e.get("title") or e.get("detail") or e.get("message"))
                for e in errors
                if isinstance(e, dict) and (e.get("title") or e.get("detail") or e.get("message"))
            ]
            if titles:
                return "; ".join(titles)
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])

    text = (response.text or "").strip()
    if text:
        return text[:500]
    return response.reason_phrase or f"HTTP {response.status_code}"


class WorkatoClient:
    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        retry_after_max: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        token = api_token if api_token is not None else settings.WORKATO_API_TOKEN
        self.base_url = (base_url or settings.workato_api_base_url).rstrip("/")
        self.page_size = page_size or settings.WORKATO_PAGE_SIZE
        self.max_pages = max_pages or settings.WORKATO_MAX_PAGES
        self.max_retries = settings.WORKATO_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = settings.WORKATO_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = settings.WORKATO_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self.retry_after_max = (
            settings.WORKATO_RETRY_AFTER_MAX_SECONDS if retry_after_max is None else retry_after_max
        )
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout or settings.WORKATO_TIMEOUT_SECONDS, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> "WorkatoClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Perform one logical API request with retries; return decoded JSON."""
        correlation_id = str(uuid4())
        headers = {CORRELATION_HEADER: correlation_id}
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug(
            f"Workato {method} {path} params={clean_params} "
            f"headers={sanitize_headers({**self._client.headers, **headers})}"
        )

        attempt = 0
        while True:
            try:
                response = await self._client.request(method, path, params=clean_params, headers=headers)
            except httpx.TransportError as exc:
                message = str(exc) or exc.__class__.__name__
                if attempt >= self.max_retries:
                    logger.error(
                        "Workato %s %s network failure after %s retries correlation_id=%s: %s",
                        method, path, attempt, correlation_id, message,
                    )
                    raise UpstreamError(
                        "network", message, method=method, url=path, correlation_id=correlation_id
                    ) from exc
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Workato {method} {path} network error, retrying in {delay:.1f}s "
                    f"attempt={attempt + 1}/{self.max_retries} correlation_id={correlation_id}: {message}"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            status = response.status_code
            if status < 400:
                if not response.content:
                    return None
                try:
                    return response.json()
                except ValueError as exc:
                    raise ParseError(
                        f"Workato {method} {path} returned invalid JSON (correlation_id={correlation_id})"
                    ) from exc

            message = extract_error_message(response)
            retryable = status >= 500 or status == 429
            if not retryable or attempt >= self.max_retries:
                logger.error(
                    "Workato %s %s failed status=%s attempts=%s correlation_id=%s: %s",
                    method, path, status, attempt + 1, correlation_id, message,
                )
                raise UpstreamError(status, message, method=method, url=path, correlation_id=correlation_id)

            delay = self.backoff_delay(attempt)
            if status == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    delay = min(retry_after, self.retry_after_max)
            logger.warning(
                f"Workato {method} {path} status={status}, retrying in {delay:.1f}s "
                f"attempt={attempt + 1}/{self.max_retries} correlation_id={correlation_id}"
            )
            await self._sleep(delay)
            attempt += 1

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def list_page(
        self,
        path: str,
        *,
        page: int,
        per_page: int,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        query = dict(params or {})
        query.update({"page": page, "per_page": per_page})
        data = await self.request("GET", path, params=query)
        if isinstance(data, list):
            return data, None
        if not isinstance(data, dict):
            raise ParseError(f"Unexpected page payload for {path}: {type(data).__name__}")
        parsed = PaginatedResponse[Dict[str, Any]].model_validate(data)
        return parsed.result, parsed.count

    async def list_all(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        per_page: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Walk numbered pages until an empty page or the reported total.

        Raises :class:`ExhaustedPaginationError` when ``max_pages`` (default
        the client limit) pages were read without reaching either condition.
        """
        per_page = per_page or self.page_size
        max_pages = max_pages or self.max_pages
        items: List[Dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            batch, total = await self.list_page(path, page=page, per_page=per_page, params=params)
            if not batch:
                return items
            items.extend(batch)
            logger.debug(f"Fetched page={page} path={path} batch={len(batch)} total_so_far={len(items)} reported={total}")
            if total is not None and len(items) >= total:
                return items
        logger.error("Pagination safety limit hit path=%s max_pages=%s", path, max_pages)
        raise ExhaustedPaginationError(path, max_pages)

    @staticmethod
    def _parse_all(model: Type[M], rows: List[Dict[str, Any]]) -> List[M]:
        try:
            return [model.model_validate(row) for row in rows]
        except ValueError as exc:
            raise ParseError(f"Malformed {model.__name__} payload: {exc}") from exc

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def list_all_tenants(self, tenant_ids: Optional[Iterable[str]] = None) -> List[WorkatoTenant]:
        rows = await self.list_all("/managed_users")
        return filter_tenants(self._parse_all(WorkatoTenant, rows), tenant_ids)

    async def list_all_projects(
        self,
        tenant_id: Union[str, int],
        updated_after: Optional[str] = None,
    ) -> List[WorkatoProject]:
        rows = await self.list_all(
            f"/managed_users/{format_tenant_id(tenant_id)}/projects",
            {"updated_after": updated_after},
        )
        return self._parse_all(WorkatoProject, rows)

    async def list_all_recipes(
        self,
        tenant_id: Union[str, int],
        *,
        updated_after: Optional[str] = None,
        folder_id: Optional[Union[str, int]] = None,
        with_subfolders: Optional[bool] = None,
    ) -> List[WorkatoRecipe]:
        params: Dict[str, Any] = {
            "updated_after": updated_after,
            "folder_id": str(folder_id) if folder_id is not None else None,
        }
        if with_subfolders is not None:
            params["with_subfolders"] = "true" if with_subfolders else "false"
        rows = await self.list_all(f"/managed_users/{format_tenant_id(tenant_id)}/recipes", params)
        return self._parse_all(WorkatoRecipe, rows)

    async def get_recipe(self, tenant_id: Union[str, int], recipe_id: int) -> WorkatoRecipe:
        data = await self.request("GET", f"/managed_users/{format_tenant_id(tenant_id)}/recipes/{recipe_id}")
        result = data.get("result") if isinstance(data, dict) else None
        if isinstance(result, list):
            result = result[0] if result else None
        if not result:
            raise NotFoundError(f"Recipe {recipe_id} not found for tenant {tenant_id}")
        return self._parse_all(WorkatoRecipe, [result])[0]

    async def list_lookup_tables(self, tenant_id: Union[str, int]) -> List[WorkatoLookupTable]:
        rows = await self.list_all(
            f"/managed_users/{format_tenant_id(tenant_id)}/lookup_tables",
            max_pages=min(self.max_pages, LOOKUP_TABLE_MAX_PAGES),
        )
        return self._parse_all(WorkatoLookupTable, rows)

    async def list_lookup_table_rows(
        self,
        tenant_id: Union[str, int],
        lookup_table_id: int,
        *,
        per_page: int = 5,
    ) -> List[WorkatoLookupTableRow]:
        """First page of rows only; callers want a sample, not the table."""
        rows, _ = await self.list_page(
            f"/managed_users/{format_tenant_id(tenant_id)}/lookup_tables/{lookup_table_id}/rows",
            page=1,
            per_page=per_page,
        )
        return self._parse_all(WorkatoLookupTableRow, rows)
