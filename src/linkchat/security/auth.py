from __future__ import annotations

"""FastAPI dependencies for session access and bearer-protected endpoints."""

from typing import Optional
import hmac
import logging

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import get_settings
from ..domain.errors import SessionNotAuthenticated, Unauthorized
from ..infrastructure.session_store import AUTHENTICATED_KEY, SessionContext


logger = logging.getLogger("linkchat.auth")
bearer_scheme = HTTPBearer(auto_error=False)

UNAUTHORIZED_MESSAGE = "Unauthorized: missing or invalid API key"


def get_session_context(request: Request) -> SessionContext:
    ctx = getattr(request.state, "session", None)
    if ctx is None:
        raise RuntimeError("session middleware is not installed")
    return ctx


def is_authenticated(ctx: SessionContext) -> bool:
    return bool(ctx.get(AUTHENTICATED_KEY, False))


def require_authenticated_session(ctx: SessionContext = Depends(get_session_context)) -> SessionContext:
    """Resolve the caller's session, rejecting it until a link token was consumed.

    With ``LINKCHAT_NO_AUTH=1`` every session counts as authenticated.
    """
    if get_settings().no_auth:
        ctx.set(AUTHENTICATED_KEY, True)
        return ctx
    if not is_authenticated(ctx):
        raise SessionNotAuthenticated()
    return ctx


def require_api_key(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        logger.info("Rejected magic link API call without bearer credential")
        raise Unauthorized(UNAUTHORIZED_MESSAGE)
    expected = get_settings().magic_link_api_key
    if not hmac.compare_digest(creds.credentials.encode("utf-8"), expected.encode("utf-8")):
        logger.info("Rejected magic link API call with wrong bearer credential")
        raise Unauthorized(UNAUTHORIZED_MESSAGE)
    return creds.credentials
