"""Error taxonomy for the sync core.

Collaborators translate library exceptions (httpx, OSError, JSON decoding)
into these types so the orchestrator can decide what is fatal for a run and
what is only recorded against a tenant or a project.
"""
from __future__ import annotations

from typing import Optional, Union


class DocSyncError(RuntimeError):
    """Base class for all errors raised by the sync core."""


class UpstreamError(DocSyncError):
    """Workato API call failed after retries or with a non-retryable status.

    ``status`` is the HTTP status code, or the string ``"network"`` when no
    response was received at all.
    """

    def __init__(
        self,
        status: Union[int, str],
        message: str,
        *,
        method: Optional[str] = None,
        url: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self.status = status
        self.message = message
        self.method = method
        self.url = url
        self.correlation_id = correlation_id
        super().__init__(f"Workato API error ({status}): {message}")


class ExhaustedPaginationError(DocSyncError):
    def __init__(self, resource: str, max_pages: int) -> None:
        self.resource = resource
        self.max_pages = max_pages
        super().__init__(
            f"Pagination for {resource} exceeded the safety limit of {max_pages} pages"
        )


class NotFoundError(DocSyncError):
    pass


class ParseError(DocSyncError):
    pass


class GenerationError(DocSyncError):
    pass


class PublishError(DocSyncError):
    pass


class RunStateError(DocSyncError):
    """Run record used out of order (unknown id or finished twice)."""
