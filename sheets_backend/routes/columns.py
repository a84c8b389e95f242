from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from sheets_backend.auth import require_user
from sheets_backend.errors import store_error
from sheets_backend.repositories import SheetStore, get_sheet_store
from sheets_backend.schemas import AuthenticatedUser, ColumnCreate, read_body
from sheets_backend.sheets import resolve_sheet

router = APIRouter()


@router.post("/sheets/{sheet_id}/columns")
async def add_column(
    sheet_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    payload = await read_body(request, ColumnCreate)
    try:
        column = await store.add_column(handle.sheet_id, payload.model_dump(), user.id)
    except Exception as exc:
        raise store_error("Failed to add column", exc) from exc
    return {"success": True, "message": "Column added successfully", "data": column}
