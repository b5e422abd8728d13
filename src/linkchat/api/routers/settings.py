from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, Form
from pydantic import ValidationError

from ...config import get_settings
from ...domain.chat_models import HealthStatus
from ...infrastructure.session_store import CONFIG_KEY, SessionContext, get_session_store
from ...security.auth import get_session_context, require_authenticated_session
from ...services.conversation import get_config
from ..views import CHAT_BOTTOM, error_redirect, login_redirect, redirect

logger = logging.getLogger("linkchat.chat")

router = APIRouter(tags=["settings"])


def _flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value == "true"


@router.post("/config/ai")
def update_ai_config(
    historyEnabled: Optional[str] = Form(None),
    maxHistoryTurns: Optional[str] = Form(None),
    aiModel: Optional[str] = Form(None),
    temperature: Optional[str] = Form(None),
    maxTokens: Optional[str] = Form(None),
    streamingEnabled: Optional[str] = Form(None),
    streamingUpdateRate: Optional[str] = Form(None),
    systemPrompt: Optional[str] = Form(None),
    ctx: SessionContext = Depends(require_authenticated_session),
):
    changes: Dict[str, Any] = {
        "history_enabled": _flag(historyEnabled),
        "max_history_turns": maxHistoryTurns,
        "ai_model": aiModel,
        "temperature": temperature,
        "max_tokens": maxTokens,
        "streaming_enabled": _flag(streamingEnabled),
        "streaming_update_rate": streamingUpdateRate,
        "system_prompt": systemPrompt,
    }
    try:
        updated = get_config(ctx).with_changes(changes)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "config"
        logger.info("Rejected AI configuration update: %s", field)
        return error_redirect(f"Invalid value for {field}: {first.get('msg', 'invalid')}")
    ctx.set(CONFIG_KEY, updated)
    logger.info(
        "AI configuration updated: historyEnabled=%s, maxHistoryTurns=%s, aiModel=%s, temperature=%s, "
        "maxTokens=%s, streamingEnabled=%s",
        updated.history_enabled,
        updated.max_history_turns,
        updated.ai_model,
        updated.temperature,
        updated.max_tokens,
        updated.streaming_enabled,
    )
    return redirect(CHAT_BOTTOM)


@router.post("/logout")
def logout(ctx: SessionContext = Depends(get_session_context)):
    get_session_store().invalidate(ctx.session_id)
    ctx.invalidate()
    return login_redirect()


@router.get("/api/health", response_model=HealthStatus)
def api_health() -> HealthStatus:
    configured = bool(get_settings().openrouter_api_key)
    return HealthStatus(
        status="UP",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        openrouter_api_key="CONFIGURED" if configured else "NOT_CONFIGURED",
        message="API key is configured" if configured else "Please set the OPENROUTER_API_KEY environment variable",
    )
