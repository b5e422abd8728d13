from __future__ import annotations

"""Conversation export/import as a JSON document.

Exports are a JSON array of ``{id, role, content, image, created_at}``.
Imports also accept the older field names (``type`` with ``USER``/``AI``,
``timestamp``, ``imageBase64``) and ``[y, m, d, H, M, S, ns]`` timestamps.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence
import json
import logging

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from ..domain.chat_models import ChatMessage, Role, utcnow
from ..domain.errors import InvalidInput


logger = logging.getLogger("linkchat.chat")

EXPORT_FILENAME = "chat-export.json"


class TransferMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    role: Role = Field(validation_alias=AliasChoices("role", "type"))
    content: str = ""
    image: Optional[str] = Field(None, validation_alias=AliasChoices("image", "imageBase64"))
    created_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("created_at", "timestamp"))

    @field_validator("role", mode="before")
    @classmethod
    def legacy_role(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().upper() == "AI":
            return Role.ASSISTANT
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("content", mode="before")
    @classmethod
    def null_content(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("created_at", mode="before")
    @classmethod
    def array_timestamp(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)) and len(value) >= 3:
            parts = [int(p) for p in value[:7]]
            nanos = parts[6] if len(parts) > 6 else 0
            return datetime(*parts[:6], nanos // 1000)
        return value

    @model_validator(mode="after")
    def image_only_on_user(self) -> "TransferMessage":
        if self.image and self.role != Role.USER:
            raise ValueError("images can only be attached to user messages")
        return self

    def to_message(self) -> ChatMessage:
        created = self.created_at or utcnow()
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return ChatMessage(id=self.id, role=self.role, content=self.content, image=self.image, created_at=created)


_IMPORT_ADAPTER = TypeAdapter(List[TransferMessage])


def export_messages(messages: Sequence[ChatMessage]) -> bytes:
    doc = [
        {
            "id": m.id,
            "role": m.role.value,
            "content": m.content,
            "image": m.image,
            "created_at": m.created_at.isoformat(),
        }
        for m in messages
    ]
    return json.dumps(doc, indent=2, ensure_ascii=False).encode("utf-8")


def parse_import(raw: bytes) -> List[ChatMessage]:
    """Decode an uploaded export; raises ``InvalidInput`` with a readable reason."""
    if not raw or not raw.strip():
        raise InvalidInput("No file selected for import.")
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidInput(f"Failed to import chat history: {exc}") from exc
    if not isinstance(data, list):
        raise InvalidInput("Failed to import chat history: expected a JSON array of messages")
    try:
        parsed = _IMPORT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        logger.warning("import_rejected", extra={"errors": exc.error_count()})
        raise InvalidInput(f"Failed to import chat history: {exc.errors()[0].get('msg', 'invalid message')}") from exc
    return [item.to_message() for item in parsed]
