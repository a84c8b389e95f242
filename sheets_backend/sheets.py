from __future__ import annotations

from dataclasses import dataclass

from sheets_backend.errors import invalid_request


@dataclass(frozen=True)
class SheetHandle:
    sheet_id: str


def resolve_sheet(sheet_id: str) -> SheetHandle:
    # Existence is only discovered by the first query against the handle.
    if not isinstance(sheet_id, str) or sheet_id == "":
        raise invalid_request("Sheet ID is required")
    return SheetHandle(sheet_id=sheet_id)
