from __future__ import annotations

import logging

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from sheets_backend.auth import SessionVerifier, SupabaseSessionVerifier
from sheets_backend.db import create_engine, create_sessionmaker
from sheets_backend.db_init import init_db
from sheets_backend.errors import register_exception_handlers
from sheets_backend.repositories import SheetStore
from sheets_backend.routes import columns, rows, search, sheets
from sheets_backend.settings import Settings, get_settings


def create_app(
    settings: Settings | None = None,
    session_verifier: SessionVerifier | None = None,
    engine: AsyncEngine | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    app = FastAPI(title="Sheets API", version="0.1.0")

    engine = engine or create_engine(settings.database_url)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sheet_store = SheetStore(create_sessionmaker(engine))
    app.state.session_verifier = session_verifier or SupabaseSessionVerifier(
        settings.auth_user_url,
        settings.supabase_anon_key,
        timeout=settings.auth_timeout_seconds,
    )

    app.include_router(search.router)
    app.include_router(sheets.router)
    app.include_router(rows.router)
    app.include_router(columns.router)

    register_exception_handlers(app)

    @app.on_event("startup")
    async def _startup():
        await init_db(app.state.engine)

    @app.on_event("shutdown")
    async def _shutdown():
        await app.state.engine.dispose()

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()
