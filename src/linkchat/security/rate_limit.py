from __future__ import annotations

"""Fixed-window in-memory rate limiting for the magic-link endpoints."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Optional, Tuple

from ..config import _env_int


TOO_MANY_ATTEMPTS = "Too many attempts. Please try again later."


@dataclass
class _RateLimitEntry:
    count: int
    window_end: datetime


_LIMIT_STORE: Dict[Tuple[str, str], _RateLimitEntry] = {}
_LIMIT_LOCK = Lock()


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(TOO_MANY_ATTEMPTS)
        self.retry_after_seconds = retry_after_seconds


def rate_limit_action(
    key: str,
    identifier: str,
    *,
    limit_env: str,
    window_env: str,
    default_limit: int,
    default_window_seconds: int,
    now: Optional[datetime] = None,
) -> None:
    """Count one action for ``(key, identifier)``.

    Raises:
        RateLimitExceeded once ``limit`` actions fall inside the current window.
    """

    if _rate_limiting_disabled():
        return

    limit = _env_int(limit_env, default_limit, minimum=1)
    window_seconds = _env_int(window_env, default_window_seconds, minimum=1)

    now = now or datetime.now(timezone.utc)
    store_key = (key, identifier)
    with _LIMIT_LOCK:
        entry = _LIMIT_STORE.get(store_key)
        if entry and entry.window_end > now:
            if entry.count >= limit:
                retry_after = int((entry.window_end - now).total_seconds())
                raise RateLimitExceeded(max(retry_after, 1))
            entry.count += 1
            return
        _LIMIT_STORE[store_key] = _RateLimitEntry(count=1, window_end=now + timedelta(seconds=window_seconds))


def _rate_limiting_disabled() -> bool:
    flag = os.getenv("LINKCHAT_RATE_LIMIT_DISABLED")
    if flag and flag.lower() in {"1", "true", "yes", "on"}:
        return True
    if os.getenv("LINKCHAT_RATE_LIMIT_FORCE"):
        return False
    if os.getenv("PYTEST_CURRENT_TEST"):
        return True
    return False


def reset_rate_limits() -> None:
    """Clear in-memory counters (useful for tests)."""

    with _LIMIT_LOCK:
        _LIMIT_STORE.clear()
