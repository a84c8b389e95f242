"""
Pytest configuration and fixtures for the sheets API tests
"""
import json
import os

# Set test environment variables before importing the app module
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest-sheets.db")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import text as sql_text

from sheets_backend.db import create_engine, create_sessionmaker
from sheets_backend.db_init import init_db, SHEETS_TABLE, COLUMNS_TABLE, ROWS_TABLE, CELLS_TABLE
from sheets_backend.main import create_app
from sheets_backend.repositories import SheetStore
from sheets_backend.schemas import AuthenticatedUser
from sheets_backend.settings import Settings

VALID_TOKEN = "valid-token"
AUTH_HEADERS = {"Authorization": f"Bearer {VALID_TOKEN}"}
TEST_USER = AuthenticatedUser(id="user-1", email="tester@example.com")


class FakeSessionVerifier:
    """Accepts only tokens it knows about and remembers every token it was asked about"""

    def __init__(self, users=None):
        self.users = users if users is not None else {VALID_TOKEN: TEST_USER}
        self.calls = []

    async def verify(self, token):
        self.calls.append(token)
        if not token:
            return None
        return self.users.get(token)


async def seed_sheet(engine, sheet_id, columns, rows, deleted_rows=()):
    """
    Insert a sheet with the given columns and rows directly.

    columns: list of (name, type); rows: list of dicts keyed by column name.
    Rows listed in deleted_rows (by index) are stored soft-deleted.
    """
    async with engine.begin() as conn:
        await conn.execute(
            sql_text(
                f"INSERT INTO {SHEETS_TABLE} (id, name, description, owner_id, is_active, created_at, updated_at) "
                "VALUES (:id, :name, '', 'owner-1', 1, '2025-01-01T00:00:00', '2025-01-01T00:00:00')"
            ),
            {"id": sheet_id, "name": f"Sheet {sheet_id}"},
        )
        column_ids = {}
        for position, (name, column_type) in enumerate(columns):
            column_id = f"{sheet_id}-col-{position}"
            column_ids[name] = column_id
            await conn.execute(
                sql_text(
                    f"INSERT INTO {COLUMNS_TABLE} (id, sheet_id, name, type, position) "
                    "VALUES (:id, :sheet_id, :name, :type, :position)"
                ),
                {"id": column_id, "sheet_id": sheet_id, "name": name, "type": column_type, "position": position},
            )
        for position, row in enumerate(rows):
            row_id = f"{sheet_id}-row-{position}"
            await conn.execute(
                sql_text(
                    f"INSERT INTO {ROWS_TABLE} (id, sheet_id, position, is_deleted, metadata_json, created_at) "
                    "VALUES (:id, :sheet_id, :position, :is_deleted, '{}', :created_at)"
                ),
                {
                    "id": row_id,
                    "sheet_id": sheet_id,
                    "position": position,
                    "is_deleted": 1 if position in deleted_rows else 0,
                    "created_at": f"2025-01-0{position + 1}T00:00:00",
                },
            )
            for name, value in row.items():
                await conn.execute(
                    sql_text(
                        f"INSERT INTO {CELLS_TABLE} (id, row_id, column_id, value, updated_at) "
                        "VALUES (:id, :row_id, :column_id, :value, '2025-01-01T00:00:00')"
                    ),
                    {
                        "id": f"{row_id}-{column_ids[name]}",
                        "row_id": row_id,
                        "column_id": column_ids[name],
                        "value": value if isinstance(value, str) or value is None else json.dumps(value),
                    },
                )
    return column_ids


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test, schema created"""
    engine = create_engine(f"sqlite:///{tmp_path / 'sheets.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return SheetStore(create_sessionmaker(engine))


@pytest.fixture
def verifier():
    return FakeSessionVerifier()


@pytest.fixture
def app(engine, verifier):
    settings = Settings(DATABASE_URL=str(engine.url))
    return create_app(settings=settings, session_verifier=verifier, engine=engine)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest_asyncio.fixture
async def inventory_sheet(engine):
    """Sheet S1 from the bolt/nail inventory scenario"""
    await seed_sheet(
        engine,
        "S1",
        [("name", "text"), ("qty", "number")],
        [{"name": "bolt", "qty": 5}, {"name": "nail", "qty": 10}],
    )
    return "S1"
