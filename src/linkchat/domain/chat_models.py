from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..config import DEFAULT_MODEL, Settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"


class ChatMessage(BaseModel):
    id: Optional[str] = None
    role: Role
    content: str = ""
    image: Optional[str] = None  # base64 payload, USER turns only
    created_at: datetime = Field(default_factory=utcnow)


class GenerationConfig(BaseModel):
    history_enabled: bool = True
    max_history_turns: int = Field(10, ge=0)
    ai_model: str = Field(DEFAULT_MODEL, min_length=1)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(4096, gt=0)
    system_prompt: str = ""
    streaming_enabled: bool = False
    streaming_update_rate: int = Field(1, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GenerationConfig":
        return cls(
            history_enabled=settings.default_history_enabled,
            max_history_turns=settings.default_history_turns,
            ai_model=settings.default_model,
            temperature=settings.default_temperature,
            max_tokens=settings.default_max_tokens,
            streaming_enabled=settings.default_streaming_enabled,
            streaming_update_rate=settings.stream_update_rate,
        )

    def with_changes(self, changes: Dict[str, Any]) -> "GenerationConfig":
        """Return a validated copy; raises pydantic ``ValidationError`` on bad values."""
        merged = self.model_dump()
        merged.update({k: v for k, v in changes.items() if v is not None})
        return GenerationConfig.model_validate(merged)


class StreamState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETE = "complete"


class StreamSnapshot(BaseModel):
    prompt: str
    text: str
    complete: bool
    started: bool
    fragment_count: int
    state: StreamState


class ChatView(BaseModel):
    """Data handed to the page renderer."""

    messages: List[ChatMessage]
    config: GenerationConfig
    streaming: Optional[StreamSnapshot] = None
    poll_url: Optional[str] = None
    error: Optional[str] = None
    editing_message_id: Optional[str] = None
    editing_message_content: Optional[str] = None
    editing_message_turn: Optional[int] = None


class HealthStatus(BaseModel):
    status: str
    timestamp: str
    openrouter_api_key: str
    message: str
