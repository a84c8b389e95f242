from __future__ import annotations

import logging
from typing import Protocol

import httpx
from fastapi import Depends, Request

from sheets_backend.errors import unauthenticated
from sheets_backend.schemas import AuthenticatedUser

logger = logging.getLogger(__name__)


class SessionVerifier(Protocol):
    async def verify(self, token: str | None) -> AuthenticatedUser | None:
        ...


class SupabaseSessionVerifier:
    """Resolves an access token to a user through the auth server's ``/auth/v1/user`` endpoint.

    Every failure (no token, rejected token, transport error, unexpected body)
    yields ``None`` so callers can treat it exactly like a missing session.
    """

    def __init__(self, user_url: str, api_key: str, timeout: float = 10.0):
        self.user_url = user_url
        self.api_key = api_key
        self.timeout = timeout

    async def verify(self, token: str | None) -> AuthenticatedUser | None:
        if not token:
            return None
        if not token.isascii():
            logger.debug("Rejected session token with non-ASCII characters.")
            return None
        if not self.user_url:
            logger.warning("SUPABASE_URL not configured; rejecting session.")
            return None
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.user_url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Session lookup failed: %s", exc)
            return None
        if response.status_code != 200:
            logger.debug("Session rejected by auth server (status %s)", response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("Auth server returned a non-JSON user payload.")
            return None
        if not isinstance(data, dict) or not data.get("id"):
            return None
        email = data.get("email")
        return AuthenticatedUser(id=str(data["id"]), email=email if isinstance(email, str) else None)


def extract_session_token(request: Request, cookie_name: str) -> str | None:
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    cookie = (request.cookies.get(cookie_name) or "").strip()
    return cookie or None


def get_session_verifier(request: Request) -> SessionVerifier:
    return request.app.state.session_verifier


async def require_user(
    request: Request,
    verifier: SessionVerifier = Depends(get_session_verifier),
) -> AuthenticatedUser:
    token = extract_session_token(request, request.app.state.settings.session_cookie_name)
    user = await verifier.verify(token)
    if user is None:
        logger.debug("Rejected unauthenticated %s %s", request.method, request.url.path)
        raise unauthenticated()
    return user
