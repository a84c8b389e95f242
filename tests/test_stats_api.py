"""
Tests for GET /sheets/{id}/stats
"""
from unittest.mock import AsyncMock

import pytest

from conftest import AUTH_HEADERS, seed_sheet

pytestmark = pytest.mark.asyncio


class TestStatsAuthentication:

    async def test_missing_session_is_rejected(self, client, app, inventory_sheet, monkeypatch):
        """Should return 401 without computing anything"""
        spy = AsyncMock(return_value=None)
        monkeypatch.setattr(app.state.sheet_store, "compute_stats", spy)
        response = await client.get("/sheets/S1/stats")
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}
        spy.assert_not_awaited()


class TestStatsResults:

    async def test_stats_reflect_all_rows(self, client, inventory_sheet):
        response = await client.get("/sheets/S1/stats", headers=AUTH_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        stats = body["stats"]
        assert stats["sheet_id"] == "S1"
        assert stats["total_rows"] == 2
        assert stats["total_columns"] == 2
        assert stats["total_cells"] == 4
        assert stats["filled_cells"] == 4
        assert stats["last_updated"] is not None

    async def test_per_column_aggregates(self, client, inventory_sheet):
        response = await client.get("/sheets/S1/stats", headers=AUTH_HEADERS)
        name_stats, qty_stats = response.json()["stats"]["columns"]
        assert name_stats == {"name": "name", "type": "text", "filled": 2, "empty": 0}
        assert qty_stats["name"] == "qty"
        assert qty_stats["sum"] == 15
        assert qty_stats["min"] == 5
        assert qty_stats["max"] == 10
        assert qty_stats["avg"] == 7.5

    async def test_checkbox_and_blank_cells(self, client, engine):
        await seed_sheet(
            engine,
            "tasks",
            [("title", "text"), ("done", "checkbox"), ("hours", "number")],
            [
                {"title": "order bolts", "done": True, "hours": "2.5"},
                {"title": "count nails", "done": False, "hours": "n/a"},
                {"title": "", "done": True},
            ],
        )
        response = await client.get("/sheets/tasks/stats", headers=AUTH_HEADERS)
        columns = {column["name"]: column for column in response.json()["stats"]["columns"]}
        assert columns["title"]["filled"] == 2
        assert columns["title"]["empty"] == 1
        assert columns["done"]["checked"] == 2
        assert columns["hours"]["filled"] == 2
        assert columns["hours"]["sum"] == 2.5

    async def test_totals_beyond_float_range_are_omitted(self, client, engine):
        await seed_sheet(engine, "big", [("qty", "number")], [{"qty": "1e308"}, {"qty": "1e308"}])
        response = await client.get("/sheets/big/stats", headers=AUTH_HEADERS)
        assert response.status_code == 200
        (qty_stats,) = response.json()["stats"]["columns"]
        assert qty_stats["max"] == 1e308
        assert qty_stats["min"] == 1e308
        assert "sum" not in qty_stats
        assert "avg" not in qty_stats

    async def test_deleted_rows_are_not_counted(self, client, engine):
        await seed_sheet(engine, "S2", [("name", "text")], [{"name": "a"}, {"name": "b"}], deleted_rows=(0,))
        response = await client.get("/sheets/S2/stats", headers=AUTH_HEADERS)
        assert response.json()["stats"]["total_rows"] == 1

    async def test_unknown_sheet_is_not_found(self, client):
        response = await client.get("/sheets/missing-id/stats", headers=AUTH_HEADERS)
        assert response.status_code == 404
        assert response.json() == {"error": "Stats not found"}

    async def test_sheet_without_rows_is_not_found(self, client, engine):
        await seed_sheet(engine, "empty", [("name", "text")], [])
        response = await client.get("/sheets/empty/stats", headers=AUTH_HEADERS)
        assert response.status_code == 404

    async def test_repeated_stats_are_identical(self, client, inventory_sheet):
        first = await client.get("/sheets/S1/stats", headers=AUTH_HEADERS)
        second = await client.get("/sheets/S1/stats", headers=AUTH_HEADERS)
        assert first.json() == second.json()


class TestStatsErrors:

    async def test_store_failure_returns_500_with_details(self, client, app, monkeypatch):
        monkeypatch.setattr(
            app.state.sheet_store,
            "compute_stats",
            AsyncMock(side_effect=RuntimeError("relation does not exist")),
        )
        response = await client.get("/sheets/S1/stats", headers=AUTH_HEADERS)
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to get stats", "details": "relation does not exist"}
