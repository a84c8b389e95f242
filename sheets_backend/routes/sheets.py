from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request

from sheets_backend.auth import require_user
from sheets_backend.errors import internal_error, not_found, store_error
from sheets_backend.repositories import SheetStore, get_sheet_store
from sheets_backend.schemas import AuthenticatedUser, BulkCellUpdate, PublicLinkCreate, SheetCreate, read_body
from sheets_backend.sheets import resolve_sheet

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sheets", status_code=201)
async def create_sheet(
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    payload = await read_body(request, SheetCreate)
    try:
        sheet = await store.create_sheet(payload.name, payload.description, user.id, payload.settings)
    except Exception as exc:
        raise store_error("Failed to create sheet", exc) from exc
    return {"success": True, "sheet": sheet}


@router.get("/sheets/{sheet_id}")
async def get_sheet(
    sheet_id: str,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    try:
        data = await store.get_sheet_data(handle.sheet_id)
    except Exception as exc:
        logger.exception("Failed to fetch sheet %s: %s", sheet_id, exc)
        raise internal_error("Failed to fetch sheet data", exc) from exc
    if data is None:
        raise not_found("Sheet not found")
    return {"success": True, "data": data}


@router.put("/sheets/{sheet_id}")
async def bulk_update_sheet(
    sheet_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    payload = await read_body(request, BulkCellUpdate)
    try:
        updated = await store.bulk_update_cells(
            handle.sheet_id,
            [update.model_dump() for update in payload.updates],
        )
    except Exception as exc:
        raise store_error("Failed to update sheet", exc) from exc
    return {"success": True, "message": f"Successfully updated {updated} cells"}


@router.get("/sheets/{sheet_id}/history")
async def sheet_history(
    sheet_id: str,
    limit: int = Query(50, ge=1, le=500),
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    try:
        items = await store.list_history(handle.sheet_id, limit=limit)
    except Exception as exc:
        logger.exception("Failed to fetch history for sheet %s: %s", sheet_id, exc)
        raise internal_error("Failed to fetch history", exc) from exc
    return {"success": True, "items": items, "count": len(items)}


@router.post("/sheets/{sheet_id}/links", status_code=201)
async def create_public_link(
    sheet_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    payload = await read_body(request, PublicLinkCreate, optional=True)
    try:
        link = await store.create_public_link(
            handle.sheet_id,
            user.id,
            payload.model_dump(exclude={"expires_at"}),
            payload.expires_at,
        )
    except Exception as exc:
        raise store_error("Failed to create public link", exc) from exc
    return {"success": True, "link": link}
