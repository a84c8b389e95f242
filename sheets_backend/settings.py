from __future__ import annotations

import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")

    supabase_url: str = Field("", alias="SUPABASE_URL")
    supabase_anon_key: str = Field("", alias="SUPABASE_ANON_KEY")
    session_cookie_name: str = Field("sb-access-token", alias="SESSION_COOKIE_NAME")
    auth_timeout_seconds: float = Field(10.0, alias="AUTH_TIMEOUT_SECONDS")

    log_level: str = Field("INFO", alias="BACKEND_LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def auth_user_url(self) -> str:
        base = self.supabase_url.rstrip("/")
        return f"{base}/auth/v1/user" if base else ""


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# For local dev convenience only.
if os.getenv("BACKEND_DEBUG_SETTINGS"):
    print(get_settings())
