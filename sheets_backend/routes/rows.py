from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from sheets_backend.auth import require_user
from sheets_backend.errors import store_error
from sheets_backend.repositories import SheetStore, get_sheet_store
from sheets_backend.schemas import AuthenticatedUser, CellUpdate, RowDelete, read_body
from sheets_backend.sheets import resolve_sheet

router = APIRouter()


@router.post("/sheets/{sheet_id}/rows")
async def add_row(
    sheet_id: str,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    try:
        row = await store.add_row(handle.sheet_id, user.id)
    except Exception as exc:
        raise store_error("Failed to add row", exc) from exc
    return {"success": True, "data": row}


@router.patch("/sheets/{sheet_id}/rows")
async def update_cell(
    sheet_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    payload = await read_body(request, CellUpdate)
    try:
        await store.update_cell(handle.sheet_id, payload.row_id, payload.column_id, payload.value)
    except Exception as exc:
        raise store_error("Failed to update cell", exc) from exc
    return {"success": True}


@router.delete("/sheets/{sheet_id}/rows")
async def delete_row(
    sheet_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    payload = await read_body(request, RowDelete)
    try:
        await store.delete_row(handle.sheet_id, payload.row_id, user.id)
    except Exception as exc:
        raise store_error("Failed to delete row", exc) from exc
    return {"success": True}
