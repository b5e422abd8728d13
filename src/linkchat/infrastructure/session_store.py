from __future__ import annotations

"""Per-client session contexts and the HTTP middleware that carries them.

The session id travels in a cookie holding a small HS256 JWT (``sid`` claim)
so a client cannot pick another client's id. Everything else stays in memory.
"""

from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import logging
import uuid

import jwt
from starlette.requests import Request
from starlette.responses import Response

from ..config import Settings, get_settings

logger = logging.getLogger("linkchat.session")

AUTHENTICATED_KEY = "authenticated"
CONVERSATION_KEY = "conversation"
CONFIG_KEY = "config"
STREAM_KEY = "stream"

_JWT_ALGORITHM = "HS256"

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionContext:
    """Opaque key/value store owned by one client session."""

    def __init__(self, session_id: str, now: Optional[datetime] = None) -> None:
        self.session_id = session_id
        self.created_at = now or _utcnow()
        self.last_accessed = self.created_at
        self._attrs: Dict[str, Any] = {}
        self._lock = RLock()
        self._invalidated = False

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._attrs.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._attrs[key] = value

    def pop(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._attrs.pop(key, default)

    def get_or_create(self, key: str, factory: Callable[[], T]) -> T:
        with self._lock:
            if key not in self._attrs:
                self._attrs[key] = factory()
            return self._attrs[key]

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_accessed = now or _utcnow()

    def invalidate(self) -> None:
        with self._lock:
            self._attrs.clear()
            self._invalidated = True


class InMemorySessionStore:
    def __init__(self, idle_minutes: Optional[int] = None) -> None:
        self._sessions: Dict[str, SessionContext] = {}
        self._idle_minutes = idle_minutes
        self._lock = RLock()

    def _idle_limit(self) -> timedelta:
        minutes = self._idle_minutes if self._idle_minutes is not None else get_settings().session_idle_minutes
        return timedelta(minutes=minutes)

    def create(self) -> SessionContext:
        self.purge_idle()
        with self._lock:
            ctx = SessionContext(uuid.uuid4().hex)
            self._sessions[ctx.session_id] = ctx
        logger.debug("session_created", extra={"session_id": ctx.session_id})
        return ctx

    def get(self, session_id: str, now: Optional[datetime] = None) -> Optional[SessionContext]:
        now = now or _utcnow()
        with self._lock:
            ctx = self._sessions.get(session_id)
            if ctx is None:
                return None
            if ctx.invalidated or now - ctx.last_accessed > self._idle_limit():
                self._sessions.pop(session_id, None)
                ctx.invalidate()
                return None
            ctx.touch(now)
            return ctx

    def invalidate(self, session_id: str) -> bool:
        with self._lock:
            ctx = self._sessions.pop(session_id, None)
        if ctx is None:
            return False
        ctx.invalidate()
        logger.info("Invalidated session %s", session_id)
        return True

    def purge_idle(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        limit = self._idle_limit()
        with self._lock:
            stale = [
                sid
                for sid, ctx in self._sessions.items()
                if ctx.invalidated or now - ctx.last_accessed > limit
            ]
            for sid in stale:
                self._sessions.pop(sid).invalidate()
        if stale:
            logger.info("Purged %d idle sessions", len(stale))
        return len(stale)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


_store: InMemorySessionStore | None = None


def get_session_store() -> InMemorySessionStore:
    global _store
    if _store is None:
        _store = InMemorySessionStore()
    return _store


def encode_session_cookie(session_id: str, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    payload = {"sid": session_id, "iat": int(_utcnow().timestamp())}
    return jwt.encode(payload, settings.session_secret, algorithm=_JWT_ALGORITHM)


def decode_session_cookie(value: str, settings: Optional[Settings] = None) -> Optional[str]:
    settings = settings or get_settings()
    try:
        data = jwt.decode(value, settings.session_secret, algorithms=[_JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
    sid = data.get("sid")
    return sid if isinstance(sid, str) and sid else None


def session_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        settings = get_settings()
        store = get_session_store()
        raw = request.cookies.get(settings.session_cookie)
        session_id = decode_session_cookie(raw, settings) if raw else None
        ctx = store.get(session_id) if session_id else None
        issued = ctx is None
        if ctx is None:
            ctx = store.create()
        request.state.session = ctx

        response = await call_next(request)

        if ctx.invalidated:
            response.delete_cookie(settings.session_cookie, path="/")
        elif issued:
            response.set_cookie(
                settings.session_cookie,
                encode_session_cookie(ctx.session_id, settings),
                httponly=True,
                samesite="lax",
                path="/",
            )
        return response

    return middleware
