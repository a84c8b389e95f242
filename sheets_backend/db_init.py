from __future__ import annotations

import logging

from sqlalchemy import text as sql_text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SHEETS_TABLE = "sheets"
COLUMNS_TABLE = "sheet_columns"
ROWS_TABLE = "sheet_rows"
CELLS_TABLE = "sheet_cells"
HISTORY_TABLE = "sheet_history"
PUBLIC_LINKS_TABLE = "public_links"


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {SHEETS_TABLE} (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    owner_id TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    settings_json TEXT,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {COLUMNS_TABLE} (
                    id TEXT PRIMARY KEY,
                    sheet_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'text',
                    position INTEGER NOT NULL,
                    width INTEGER DEFAULT 120,
                    is_required INTEGER DEFAULT 0,
                    is_unique INTEGER DEFAULT 0,
                    default_value TEXT,
                    validation_rules_json TEXT,
                    format_options_json TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {ROWS_TABLE} (
                    id TEXT PRIMARY KEY,
                    sheet_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    is_deleted INTEGER DEFAULT 0,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {CELLS_TABLE} (
                    id TEXT PRIMARY KEY,
                    row_id TEXT NOT NULL,
                    column_id TEXT NOT NULL,
                    value TEXT,
                    validation_status TEXT DEFAULT 'valid',
                    updated_at TEXT,
                    UNIQUE (row_id, column_id)
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {HISTORY_TABLE} (
                    id TEXT PRIMARY KEY,
                    sheet_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details_json TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {PUBLIC_LINKS_TABLE} (
                    id TEXT PRIMARY KEY,
                    sheet_id TEXT NOT NULL,
                    access_key TEXT NOT NULL UNIQUE,
                    created_by TEXT NOT NULL,
                    permissions_json TEXT,
                    expires_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
        )

    async def ensure_index(index_sql: str) -> None:
        try:
            async with engine.begin() as conn:
                await conn.execute(sql_text(index_sql))
        except Exception as exc:
            logger.warning("Index creation skipped: %s", exc)

    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{ROWS_TABLE}_sheet_position "
        f"ON {ROWS_TABLE} (sheet_id, is_deleted, position)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{COLUMNS_TABLE}_sheet_position "
        f"ON {COLUMNS_TABLE} (sheet_id, position)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{CELLS_TABLE}_row "
        f"ON {CELLS_TABLE} (row_id)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{HISTORY_TABLE}_sheet "
        f"ON {HISTORY_TABLE} (sheet_id, created_at)"
    )
