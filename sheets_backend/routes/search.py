from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from sheets_backend.auth import require_user
from sheets_backend.errors import internal_error, not_found
from sheets_backend.repositories import SheetStore, get_sheet_store
from sheets_backend.schemas import AuthenticatedUser, SearchRequest, SearchResponse, StatsResponse, read_body
from sheets_backend.sheets import resolve_sheet

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sheets/{sheet_id}/search")
async def search_sheet(
    sheet_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    query = await read_body(request, SearchRequest, optional=True)
    try:
        results = await store.search(handle, query.search_term or "", query.column_filters or {})
    except Exception as exc:
        logger.exception("Failed to search sheet %s: %s", sheet_id, exc)
        raise internal_error("Failed to search", exc) from exc
    return SearchResponse(results=results, count=len(results)).model_dump()


@router.get("/sheets/{sheet_id}/stats")
async def sheet_stats(
    sheet_id: str,
    user: AuthenticatedUser = Depends(require_user),
    store: SheetStore = Depends(get_sheet_store),
):
    handle = resolve_sheet(sheet_id)
    try:
        stats = await store.compute_stats(handle)
    except Exception as exc:
        logger.exception("Failed to get stats for sheet %s: %s", sheet_id, exc)
        raise internal_error("Failed to get stats", exc) from exc
    if stats is None:
        raise not_found("Stats not found")
    return StatsResponse(stats=stats).model_dump(exclude_none=True)
