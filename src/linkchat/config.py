from __future__ import annotations

"""Process configuration read from the environment.

Values are resolved on every call to :func:`get_settings` so tests (and the
``.env`` file loaded by the API module) can change them at runtime.

Env vars:
- OPENROUTER_API_KEY / OPENROUTER_BASE_URL
- LINKCHAT_DEFAULT_* (model, temperature, max tokens, history turns/flag, streaming)
- LINKCHAT_NO_AUTH, LINKCHAT_MAGIC_LINK_* (link credential policy)
- LINKCHAT_SESSION_* (cookie signing and idle purge)
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-flash-1.5-8b"
DEFAULT_MAGIC_LINK_API_KEY = "test-magic-key"


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    openrouter_api_key: str
    openrouter_base_url: str
    default_model: str
    default_temperature: float
    default_max_tokens: int
    default_history_turns: int
    default_history_enabled: bool
    default_streaming_enabled: bool
    stream_update_rate: int
    llm_connect_timeout: int
    llm_read_timeout: int
    no_auth: bool
    magic_link_api_key: str
    magic_link_api_minutes: int
    magic_link_email_minutes: int
    include_link_in_response: bool
    session_secret: str
    session_cookie: str
    session_idle_minutes: int

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            openrouter_api_key=(os.getenv("OPENROUTER_API_KEY") or "").strip(),
            openrouter_base_url=(os.getenv("OPENROUTER_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            default_model=os.getenv("LINKCHAT_DEFAULT_MODEL") or DEFAULT_MODEL,
            default_temperature=_env_float("LINKCHAT_DEFAULT_TEMPERATURE", 0.7),
            default_max_tokens=_env_int("LINKCHAT_DEFAULT_MAX_TOKENS", 4096, minimum=1),
            default_history_turns=_env_int("LINKCHAT_DEFAULT_HISTORY_TURNS", 10, minimum=0),
            default_history_enabled=_env_flag("LINKCHAT_DEFAULT_HISTORY_ENABLED", True),
            default_streaming_enabled=_env_flag("LINKCHAT_DEFAULT_STREAMING", False),
            stream_update_rate=_env_int("LINKCHAT_STREAM_UPDATE_RATE", 1, minimum=1),
            llm_connect_timeout=_env_int("LINKCHAT_LLM_CONNECT_TIMEOUT", 3, minimum=1),
            llm_read_timeout=_env_int("LINKCHAT_LLM_READ_TIMEOUT", 90, minimum=1),
            no_auth=(os.getenv("LINKCHAT_NO_AUTH") or "").strip() == "1",
            magic_link_api_key=os.getenv("LINKCHAT_MAGIC_LINK_API_KEY") or DEFAULT_MAGIC_LINK_API_KEY,
            magic_link_api_minutes=_env_int("LINKCHAT_MAGIC_LINK_API_MINUTES", 10000),
            magic_link_email_minutes=_env_int("LINKCHAT_MAGIC_LINK_EMAIL_MINUTES", 60),
            include_link_in_response=_env_flag("LINKCHAT_INCLUDE_LINK_IN_RESPONSE", False),
            session_secret=os.getenv("LINKCHAT_SESSION_SECRET") or "dev-session-secret-change-me-before-deploying",
            session_cookie=os.getenv("LINKCHAT_SESSION_COOKIE") or "linkchat_session",
            session_idle_minutes=_env_int("LINKCHAT_SESSION_IDLE_MINUTES", 30, minimum=1),
        )


def get_settings() -> Settings:
    return Settings.from_env()
