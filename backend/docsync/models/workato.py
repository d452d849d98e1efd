"""Pydantic shapes of Workato API payloads.

Only the fields the sync reads are declared; everything else the API sends
is kept as extra attributes so raw payloads round-trip into storage intact.
"""
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field


T = TypeVar("T")


class WorkatoModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class WorkatoTenant(WorkatoModel):
    """Managed user (customer account) of an Embedded/OEM workspace."""

    id: int
    external_id: Optional[str] = None
    name: str = ""
    team_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WorkatoProject(WorkatoModel):
    id: int
    folder_id: int
    name: str = ""
    description: Optional[str] = None


class ConnectionBinding(WorkatoModel):
    """Entry of a recipe's ``config`` list (app connection used by a step)."""

    name: Optional[str] = None
    provider: Optional[str] = None
    account_id: Optional[int] = None
    keyword: Optional[str] = None


class WorkatoRecipe(WorkatoModel):
    id: int
    user_id: Optional[int] = None
    name: str = ""
    description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    trigger_application: Optional[str] = None
    action_applications: Optional[List[str]] = None
    applications: Optional[List[str]] = None
    project_id: Optional[int] = None
    folder_id: Optional[int] = None
    running: bool = False
    last_run_at: Optional[str] = None
    job_succeeded_count: Optional[int] = None
    job_failed_count: Optional[int] = None
    version_no: Optional[int] = None
    config: Optional[List[ConnectionBinding]] = None
    # Recipe definition; the API sends it as a JSON-encoded string.
    code: Union[str, Dict[str, Any], List[Any], None] = None

    def raw_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class WorkatoLookupTable(WorkatoModel):
    id: int
    name: str = ""
    # JSON-encoded array of column names, e.g. '["Code","Label"]'.
    table_schema: Optional[Union[str, List[Any]]] = Field(default=None, alias="schema")
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    project_id: Optional[int] = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class WorkatoLookupTableRow(WorkatoModel):
    id: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PaginatedResponse(BaseModel, Generic[T]):
    result: List[T] = Field(default_factory=list)
    # Total reported by the server; some endpoints omit it.
    count: Optional[int] = None
    page: Optional[int] = None
    per_page: Optional[int] = None
