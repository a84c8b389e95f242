from __future__ import annotations

from typing import Optional, List, Dict, Any, Type, TypeVar, Union

from fastapi import Request
from pydantic import BaseModel, Field, ValidationError

from sheets_backend.errors import invalid_request

CellValue = Union[str, int, float, bool, None]
FilterValue = Union[str, int, float, bool]

ModelT = TypeVar("ModelT", bound=BaseModel)

COLUMN_TYPES = ("text", "number", "date", "checkbox", "select", "email", "url")


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None


class SearchRequest(BaseModel):
    search_term: Optional[str] = ""
    column_filters: Optional[Dict[str, Optional[FilterValue]]] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    success: bool = True
    results: List[Dict[str, CellValue]]
    count: int


class ColumnStats(BaseModel):
    name: str
    type: str
    filled: int
    empty: int
    sum: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    checked: Optional[int] = None


class SheetStats(BaseModel):
    sheet_id: str
    total_rows: int
    total_columns: int
    total_cells: int
    filled_cells: int
    last_updated: Optional[str] = None
    columns: List[ColumnStats] = Field(default_factory=list)


class StatsResponse(BaseModel):
    success: bool = True
    stats: SheetStats


class SheetCreate(BaseModel):
    name: str
    description: str = ""
    settings: Dict[str, Any] = Field(default_factory=dict)


class ColumnCreate(BaseModel):
    name: str
    type: str
    validation_rules: Dict[str, Any] = Field(default_factory=dict)
    format_options: Dict[str, Any] = Field(default_factory=dict)
    default_value: Optional[str] = None


class CellUpdate(BaseModel):
    row_id: str
    column_id: str
    value: Any = None


class BulkCellUpdate(BaseModel):
    updates: List[CellUpdate]


class RowDelete(BaseModel):
    row_id: str


class PublicLinkCreate(BaseModel):
    can_view: bool = True
    can_edit: bool = False
    can_download: bool = False
    expires_at: Optional[str] = None


async def read_body(request: Request, model: Type[ModelT], optional: bool = False) -> ModelT:
    """Parse the JSON body into ``model`` once the caller is authenticated.

    Body parameters declared on a route are decoded before its dependencies
    run, so routes read the body themselves to keep the session check first.
    """
    raw = await request.body()
    if optional and raw.strip() in (b"", b"null"):
        return model()
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ())) or 'body'}: {err.get('msg', '')}"
            for err in exc.errors()
        )
        raise invalid_request("Invalid request", details or None) from exc
