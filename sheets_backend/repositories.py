from __future__ import annotations

import json
import logging
import math
import secrets
from datetime import date, datetime, timezone
from uuid import uuid4

from fastapi import Request
from sqlalchemy import text as sql_text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sheets_backend.db_init import (
    SHEETS_TABLE,
    COLUMNS_TABLE,
    ROWS_TABLE,
    CELLS_TABLE,
    HISTORY_TABLE,
    PUBLIC_LINKS_TABLE,
)
from sheets_backend.errors import RecordNotFound
from sheets_backend.schemas import COLUMN_TYPES
from sheets_backend.sheets import SheetHandle

logger = logging.getLogger(__name__)

DEFAULT_COLUMN_WIDTH = 120

DEFAULT_COLUMNS = [
    {"name": "Site ID", "type": "text"},
    {"name": "Scenario", "type": "text"},
    {"name": "MR Number", "type": "text"},
    {"name": "IQF Number", "type": "text"},
    {"name": "Status", "type": "select", "validation_rules": {"options": ["Pending", "Done", "Problem"]}},
    {"name": "Date", "type": "date"},
    {"name": "Contractor", "type": "text"},
    {"name": "Region", "type": "text"},
    {"name": "Notes", "type": "text"},
]

TRUE_STRINGS = {"true", "1", "yes", "on"}

DEFAULT_LINK_PERMISSIONS = {"can_view": True, "can_edit": False, "can_download": False}


def _new_id() -> str:
    return uuid4().hex


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw, default):
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except Exception:
        return default
    return value if isinstance(value, type(default)) else default


def encode_cell_value(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def decode_cell_value(raw, column_type: str | None):
    if raw is None:
        return None
    if column_type == "number":
        text = str(raw).strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        number = _parse_number(text)
        return number if number is not None else str(raw)
    if column_type == "checkbox":
        return str(raw).strip().lower() in TRUE_STRINGS
    return str(raw)


def filter_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def default_cell_value(column_type: str, default_value: str | None = None) -> str | None:
    if default_value:
        return default_value
    if column_type == "number":
        return "0"
    if column_type == "checkbox":
        return "false"
    if column_type == "date":
        return date.today().isoformat()
    if column_type == "select":
        return None
    return ""


def _parse_number(value) -> float | None:
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_filled(value) -> bool:
    return value is not None and str(value).strip() != ""


def _max_iso(values) -> str | None:
    present = [str(value) for value in values if value]
    return max(present) if present else None


def _normalize_sheet_row(row) -> dict:
    payload = dict(row)
    payload["is_active"] = bool(payload.get("is_active"))
    payload["settings"] = _load_json(payload.pop("settings_json", None), {})
    payload["metadata"] = _load_json(payload.pop("metadata_json", None), {})
    return payload


def _normalize_column_row(row) -> dict:
    payload = dict(row)
    payload["is_required"] = bool(payload.get("is_required"))
    payload["is_unique"] = bool(payload.get("is_unique"))
    payload["validation_rules"] = _load_json(payload.pop("validation_rules_json", None), {})
    payload["format_options"] = _load_json(payload.pop("format_options_json", None), {})
    return payload


class SheetStore:
    """Row, column and cell access for sheets, over an injected async session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def search(self, handle: SheetHandle, search_term: str = "", column_filters: dict | None = None) -> list[dict]:
        clauses = ["r.sheet_id = :sheet_id", "r.is_deleted = 0"]
        params: dict = {"sheet_id": handle.sheet_id}
        if search_term:
            clauses.append(
                f"EXISTS (SELECT 1 FROM {CELLS_TABLE} tc WHERE tc.row_id = r.id "
                "AND lower(tc.value) LIKE :pattern ESCAPE '\\')"
            )
            params["pattern"] = f"%{_escape_like(search_term.lower())}%"
        active_filters = [
            (str(key), filter_text(value))
            for key, value in (column_filters or {}).items()
            if value is not None and filter_text(value) != ""
        ]
        for index, (key, value) in enumerate(active_filters):
            clauses.append(
                f"EXISTS (SELECT 1 FROM {CELLS_TABLE} fc{index} "
                f"JOIN {COLUMNS_TABLE} fcol{index} ON fcol{index}.id = fc{index}.column_id "
                f"WHERE fc{index}.row_id = r.id AND fcol{index}.sheet_id = r.sheet_id "
                f"AND (fcol{index}.name = :filter_key_{index} OR fcol{index}.id = :filter_key_{index}) "
                f"AND lower(fc{index}.value) = :filter_value_{index})"
            )
            params[f"filter_key_{index}"] = key
            params[f"filter_value_{index}"] = value.lower()
        async with self._session_factory() as session:
            records = (await session.execute(
                sql_text(
                    f"""
                    SELECT r.id AS row_id, col.name AS column_name, col.type AS column_type, c.value AS value
                    FROM {ROWS_TABLE} r
                    LEFT JOIN {COLUMNS_TABLE} col ON col.sheet_id = r.sheet_id
                    LEFT JOIN {CELLS_TABLE} c ON c.row_id = r.id AND c.column_id = col.id
                    WHERE {' AND '.join(clauses)}
                    ORDER BY r.position, r.id, col.position, col.id
                    """
                ),
                params,
            )).mappings().all()
        rows: dict[str, dict] = {}
        for record in records:
            row = rows.setdefault(record["row_id"], {})
            if record["column_name"] is None:
                continue
            row[record["column_name"]] = decode_cell_value(record["value"], record["column_type"])
        return list(rows.values())

    async def compute_stats(self, handle: SheetHandle) -> dict | None:
        params = {"sheet_id": handle.sheet_id}
        async with self._session_factory() as session:
            summary = (await session.execute(
                sql_text(
                    f"""
                    SELECT r.sheet_id AS sheet_id, COUNT(*) AS total_rows, MAX(r.created_at) AS last_row_at
                    FROM {ROWS_TABLE} r
                    WHERE r.sheet_id = :sheet_id AND r.is_deleted = 0
                    GROUP BY r.sheet_id
                    """
                ),
                params,
            )).mappings().fetchone()
            if summary is None:
                return None
            columns = (await session.execute(
                sql_text(
                    f"SELECT id, name, type FROM {COLUMNS_TABLE} "
                    "WHERE sheet_id = :sheet_id ORDER BY position, id"
                ),
                params,
            )).mappings().all()
            cells = (await session.execute(
                sql_text(
                    f"""
                    SELECT c.column_id AS column_id, c.value AS value, c.updated_at AS updated_at
                    FROM {CELLS_TABLE} c
                    JOIN {ROWS_TABLE} r ON r.id = c.row_id
                    WHERE r.sheet_id = :sheet_id AND r.is_deleted = 0
                    """
                ),
                params,
            )).mappings().all()

        total_rows = int(summary["total_rows"])
        values_by_column: dict[str, list] = {}
        for cell in cells:
            values_by_column.setdefault(cell["column_id"], []).append(cell["value"])

        column_stats = []
        filled_cells = 0
        for column in columns:
            values = [value for value in values_by_column.get(column["id"], []) if _is_filled(value)]
            filled = len(values)
            filled_cells += filled
            entry = {"name": column["name"], "type": column["type"], "filled": filled, "empty": total_rows - filled}
            if column["type"] == "number":
                numbers = [number for number in (_parse_number(value) for value in values) if number is not None]
                if numbers:
                    entry["min"] = min(numbers)
                    entry["max"] = max(numbers)
                    # Totals past the float range are left out; JSON has no infinity.
                    try:
                        total = math.fsum(numbers)
                    except OverflowError:
                        total = math.inf
                    if math.isfinite(total):
                        entry["sum"] = total
                        entry["avg"] = total / len(numbers)
            elif column["type"] == "checkbox":
                entry["checked"] = sum(1 for value in values if str(value).strip().lower() in TRUE_STRINGS)
            column_stats.append(entry)

        return {
            "sheet_id": summary["sheet_id"],
            "total_rows": total_rows,
            "total_columns": len(columns),
            "total_cells": total_rows * len(columns),
            "filled_cells": filled_cells,
            "last_updated": _max_iso([summary["last_row_at"], *(cell["updated_at"] for cell in cells)]),
            "columns": column_stats,
        }

    async def get_sheet_data(self, sheet_id: str) -> dict | None:
        params = {"sheet_id": sheet_id}
        async with self._session_factory() as session:
            sheet = (await session.execute(
                sql_text(f"SELECT * FROM {SHEETS_TABLE} WHERE id = :sheet_id"),
                params,
            )).mappings().fetchone()
            if sheet is None:
                return None
            columns = (await session.execute(
                sql_text(f"SELECT * FROM {COLUMNS_TABLE} WHERE sheet_id = :sheet_id ORDER BY position, id"),
                params,
            )).mappings().all()
            rows = (await session.execute(
                sql_text(
                    f"SELECT id, position, metadata_json, created_at FROM {ROWS_TABLE} "
                    "WHERE sheet_id = :sheet_id AND is_deleted = 0 ORDER BY position, id"
                ),
                params,
            )).mappings().all()
            cells = (await session.execute(
                sql_text(
                    f"""
                    SELECT c.row_id AS row_id, c.column_id AS column_id, c.value AS value
                    FROM {CELLS_TABLE} c
                    JOIN {ROWS_TABLE} r ON r.id = c.row_id
                    WHERE r.sheet_id = :sheet_id AND r.is_deleted = 0
                    """
                ),
                params,
            )).mappings().all()

        column_types = {column["id"]: column["type"] for column in columns}
        cells_by_row: dict[str, dict] = {}
        for cell in cells:
            if cell["column_id"] not in column_types:
                continue
            cells_by_row.setdefault(cell["row_id"], {})[cell["column_id"]] = decode_cell_value(
                cell["value"], column_types[cell["column_id"]]
            )
        return {
            "sheet": _normalize_sheet_row(sheet),
            "columns": [_normalize_column_row(column) for column in columns],
            "rows": [
                {
                    "id": row["id"],
                    "position": row["position"],
                    "created_at": row["created_at"],
                    "metadata": _load_json(row["metadata_json"], {}),
                    "cells": cells_by_row.get(row["id"], {}),
                }
                for row in rows
            ],
        }

    async def create_sheet(self, name: str, description: str, owner_id: str, settings: dict | None = None) -> dict:
        name = " ".join(str(name or "").split()).strip()
        if not name:
            raise ValueError("Sheet name cannot be empty")
        now = _now_iso()
        sheet = {
            "id": _new_id(),
            "name": name,
            "description": description or "",
            "owner_id": owner_id,
            "is_active": 1,
            "settings_json": json.dumps(settings or {}, ensure_ascii=False),
            "metadata_json": json.dumps({"created_by": owner_id}),
            "created_at": now,
            "updated_at": now,
        }
        async with self._session_factory() as session:
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {SHEETS_TABLE}
                        (id, name, description, owner_id, is_active, settings_json, metadata_json, created_at, updated_at)
                    VALUES
                        (:id, :name, :description, :owner_id, :is_active, :settings_json, :metadata_json, :created_at, :updated_at)
                    """
                ),
                sheet,
            )
            columns = []
            for position, column in enumerate(DEFAULT_COLUMNS):
                columns.append(await self._insert_column(session, sheet["id"], position, column))
            await self._insert_row(session, sheet["id"], 0, owner_id, columns)
            await self._log_action(
                session,
                sheet["id"],
                owner_id,
                "create_sheet",
                {"sheet_name": name, "columns_count": len(DEFAULT_COLUMNS)},
            )
            await session.commit()
        logger.info("Created sheet %s (%s) for %s", sheet["id"], name, owner_id)
        return _normalize_sheet_row(sheet)

    async def add_column(self, sheet_id: str, column: dict, user_id: str) -> dict:
        name = " ".join(str(column.get("name") or "").split()).strip()
        if not name:
            raise ValueError("Column name cannot be empty")
        if column.get("type") not in COLUMN_TYPES:
            raise ValueError(f"Unsupported column type: {column.get('type')}")
        async with self._session_factory() as session:
            await self._require_sheet(session, sheet_id)
            last_position = (await session.execute(
                sql_text(f"SELECT MAX(position) FROM {COLUMNS_TABLE} WHERE sheet_id = :sheet_id"),
                {"sheet_id": sheet_id},
            )).scalar()
            position = 0 if last_position is None else int(last_position) + 1
            record = await self._insert_column(session, sheet_id, position, {**column, "name": name})
            await self._log_action(
                session,
                sheet_id,
                user_id,
                "add_column",
                {"column_name": name, "column_type": column.get("type")},
            )
            await self._touch_sheet(session, sheet_id)
            await session.commit()
        logger.info("Added column %s to sheet %s", record["id"], sheet_id)
        return _normalize_column_row(record)

    async def add_row(self, sheet_id: str, user_id: str) -> dict:
        async with self._session_factory() as session:
            await self._require_sheet(session, sheet_id)
            last_position = (await session.execute(
                sql_text(f"SELECT MAX(position) FROM {ROWS_TABLE} WHERE sheet_id = :sheet_id"),
                {"sheet_id": sheet_id},
            )).scalar()
            position = 0 if last_position is None else int(last_position) + 1
            columns = (await session.execute(
                sql_text(
                    f"SELECT id, type, default_value FROM {COLUMNS_TABLE} "
                    "WHERE sheet_id = :sheet_id ORDER BY position, id"
                ),
                {"sheet_id": sheet_id},
            )).mappings().all()
            row = await self._insert_row(session, sheet_id, position, user_id, columns)
            await self._log_action(session, sheet_id, user_id, "add_row", {"row_id": row["id"], "position": position})
            await self._touch_sheet(session, sheet_id)
            await session.commit()
        return row

    async def update_cell(self, sheet_id: str, row_id: str, column_id: str, value) -> None:
        async with self._session_factory() as session:
            await self._upsert_cell(session, sheet_id, row_id, column_id, value)
            await self._touch_sheet(session, sheet_id)
            await session.commit()

    async def bulk_update_cells(self, sheet_id: str, updates: list[dict]) -> int:
        if not updates:
            raise ValueError("Updates array is required")
        async with self._session_factory() as session:
            for update in updates:
                await self._upsert_cell(session, sheet_id, update["row_id"], update["column_id"], update.get("value"))
            await self._touch_sheet(session, sheet_id)
            await session.commit()
        logger.info("Updated %s cells in sheet %s", len(updates), sheet_id)
        return len(updates)

    async def delete_row(self, sheet_id: str, row_id: str, user_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                sql_text(
                    f"UPDATE {ROWS_TABLE} SET is_deleted = 1 "
                    "WHERE id = :row_id AND sheet_id = :sheet_id AND is_deleted = 0"
                ),
                {"row_id": row_id, "sheet_id": sheet_id},
            )
            if result.rowcount == 0:
                raise RecordNotFound("Row not found")
            await self._log_action(session, sheet_id, user_id, "delete_row", {"row_id": row_id})
            await self._touch_sheet(session, sheet_id)
            await session.commit()
        logger.info("Soft-deleted row %s in sheet %s", row_id, sheet_id)

    async def list_history(self, sheet_id: str, limit: int = 50) -> list[dict]:
        async with self._session_factory() as session:
            rows = (await session.execute(
                sql_text(
                    f"""
                    SELECT id, sheet_id, user_id, action, details_json, created_at
                    FROM {HISTORY_TABLE}
                    WHERE sheet_id = :sheet_id
                    ORDER BY created_at DESC
                    LIMIT :limit
                    """
                ),
                {"sheet_id": sheet_id, "limit": int(limit)},
            )).mappings().all()
        items = []
        for row in rows:
            payload = dict(row)
            payload["details"] = _load_json(payload.pop("details_json", None), {})
            items.append(payload)
        return items

    async def create_public_link(
        self,
        sheet_id: str,
        user_id: str,
        permissions: dict | None = None,
        expires_at: str | None = None,
    ) -> dict:
        record = {
            "id": _new_id(),
            "sheet_id": sheet_id,
            "access_key": secrets.token_urlsafe(16),
            "created_by": user_id,
            "permissions_json": json.dumps(permissions or DEFAULT_LINK_PERMISSIONS),
            "expires_at": expires_at,
            "created_at": _now_iso(),
        }
        async with self._session_factory() as session:
            await self._require_sheet(session, sheet_id)
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {PUBLIC_LINKS_TABLE}
                        (id, sheet_id, access_key, created_by, permissions_json, expires_at, created_at)
                    VALUES
                        (:id, :sheet_id, :access_key, :created_by, :permissions_json, :expires_at, :created_at)
                    """
                ),
                record,
            )
            await self._log_action(session, sheet_id, user_id, "create_public_link", {"link_id": record["id"]})
            await session.commit()
        logger.info("Created public link %s for sheet %s", record["id"], sheet_id)
        payload = dict(record)
        payload["permissions"] = _load_json(payload.pop("permissions_json"), {})
        return payload

    async def _require_sheet(self, session: AsyncSession, sheet_id: str) -> None:
        row = (await session.execute(
            sql_text(f"SELECT id FROM {SHEETS_TABLE} WHERE id = :sheet_id"),
            {"sheet_id": sheet_id},
        )).fetchone()
        if row is None:
            raise RecordNotFound("Sheet not found")

    async def _touch_sheet(self, session: AsyncSession, sheet_id: str) -> None:
        await session.execute(
            sql_text(f"UPDATE {SHEETS_TABLE} SET updated_at = :updated_at WHERE id = :sheet_id"),
            {"updated_at": _now_iso(), "sheet_id": sheet_id},
        )

    async def _insert_column(self, session: AsyncSession, sheet_id: str, position: int, column: dict) -> dict:
        record = {
            "id": _new_id(),
            "sheet_id": sheet_id,
            "name": column["name"],
            "type": column.get("type") or "text",
            "position": position,
            "width": int(column.get("width") or DEFAULT_COLUMN_WIDTH),
            "is_required": int(bool(column.get("is_required"))),
            "is_unique": int(bool(column.get("is_unique"))),
            "default_value": column.get("default_value"),
            "validation_rules_json": json.dumps(column.get("validation_rules") or {}, ensure_ascii=False),
            "format_options_json": json.dumps(column.get("format_options") or {}, ensure_ascii=False),
        }
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {COLUMNS_TABLE}
                    (id, sheet_id, name, type, position, width, is_required, is_unique,
                     default_value, validation_rules_json, format_options_json)
                VALUES
                    (:id, :sheet_id, :name, :type, :position, :width, :is_required, :is_unique,
                     :default_value, :validation_rules_json, :format_options_json)
                """
            ),
            record,
        )
        return record

    async def _insert_row(self, session: AsyncSession, sheet_id: str, position: int, user_id: str, columns) -> dict:
        row_id = _new_id()
        now = _now_iso()
        metadata = {"created_by": user_id}
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {ROWS_TABLE} (id, sheet_id, position, is_deleted, metadata_json, created_at)
                VALUES (:id, :sheet_id, :position, 0, :metadata_json, :created_at)
                """
            ),
            {
                "id": row_id,
                "sheet_id": sheet_id,
                "position": position,
                "metadata_json": json.dumps(metadata),
                "created_at": now,
            },
        )
        cells = {}
        for column in columns:
            raw = default_cell_value(column["type"], column.get("default_value"))
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {CELLS_TABLE} (id, row_id, column_id, value, validation_status, updated_at)
                    VALUES (:id, :row_id, :column_id, :value, 'valid', :updated_at)
                    """
                ),
                {"id": _new_id(), "row_id": row_id, "column_id": column["id"], "value": raw, "updated_at": now},
            )
            cells[column["id"]] = decode_cell_value(raw, column["type"])
        return {
            "id": row_id,
            "sheet_id": sheet_id,
            "position": position,
            "is_deleted": False,
            "metadata": metadata,
            "created_at": now,
            "cells": cells,
        }

    async def _upsert_cell(self, session: AsyncSession, sheet_id: str, row_id: str, column_id: str, value) -> None:
        row = (await session.execute(
            sql_text(
                f"SELECT id FROM {ROWS_TABLE} "
                "WHERE id = :row_id AND sheet_id = :sheet_id AND is_deleted = 0"
            ),
            {"row_id": row_id, "sheet_id": sheet_id},
        )).fetchone()
        if row is None:
            raise RecordNotFound("Row not found")
        column = (await session.execute(
            sql_text(f"SELECT id FROM {COLUMNS_TABLE} WHERE id = :column_id AND sheet_id = :sheet_id"),
            {"column_id": column_id, "sheet_id": sheet_id},
        )).fetchone()
        if column is None:
            raise RecordNotFound("Column not found")
        params = {"row_id": row_id, "column_id": column_id, "value": encode_cell_value(value), "updated_at": _now_iso()}
        existing = (await session.execute(
            sql_text(f"SELECT id FROM {CELLS_TABLE} WHERE row_id = :row_id AND column_id = :column_id"),
            {"row_id": row_id, "column_id": column_id},
        )).fetchone()
        if existing:
            await session.execute(
                sql_text(
                    f"UPDATE {CELLS_TABLE} SET value = :value, updated_at = :updated_at "
                    "WHERE row_id = :row_id AND column_id = :column_id"
                ),
                params,
            )
        else:
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {CELLS_TABLE} (id, row_id, column_id, value, validation_status, updated_at)
                    VALUES (:id, :row_id, :column_id, :value, 'valid', :updated_at)
                    """
                ),
                {"id": _new_id(), **params},
            )

    async def _log_action(self, session: AsyncSession, sheet_id: str, user_id: str, action: str, details: dict) -> None:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {HISTORY_TABLE} (id, sheet_id, user_id, action, details_json, created_at)
                VALUES (:id, :sheet_id, :user_id, :action, :details_json, :created_at)
                """
            ),
            {
                "id": _new_id(),
                "sheet_id": sheet_id,
                "user_id": user_id,
                "action": action,
                "details_json": json.dumps(details, ensure_ascii=False),
                "created_at": _now_iso(),
            },
        )


def get_sheet_store(request: Request) -> SheetStore:
    return request.app.state.sheet_store
