from __future__ import annotations

"""Session-scoped conversation log.

One :class:`ConversationStore` lives in each session. It keeps the ordered
message list, builds the context window sent to the provider and inserts
replies so that an assistant turn always sits right after the user turn it
answers.
"""

from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Iterable, List, Optional, Sequence, Tuple
import logging
import uuid

from ..config import get_settings
from ..domain.chat_models import ChatMessage, GenerationConfig, Role, utcnow
from ..domain.errors import InvalidInput, NotFound
from ..infrastructure.session_store import CONFIG_KEY, CONVERSATION_KEY, SessionContext
from ..observability.metrics import PROVIDER_FAILURES
from .completion_client import CompletionClient, get_completion_client


logger = logging.getLogger("linkchat.chat")

PROCESS_FALLBACK = "Sorry, I encountered an error while processing your request. Please try again."
REGENERATE_FALLBACK = "Sorry, I encountered an error while regenerating your request. Please try again."


@dataclass
class _Message:
    message_id: str
    role: Role
    content: str
    image: Optional[str]
    created_at: datetime


def context_window(prior: Sequence[ChatMessage], config: GenerationConfig, prompt: str) -> List[ChatMessage]:
    """Messages to send ahead of ``prompt``.

    ``prior`` holds the log up to (not including) the current exchange. The
    window is its last ``2 * max_history_turns`` entries, minus a trailing
    USER message identical to ``prompt`` since the prompt is sent on its own.
    """
    if not config.history_enabled:
        return []
    limit = config.max_history_turns * 2
    window = list(prior[-limit:]) if limit > 0 else []
    if window and window[-1].role == Role.USER and window[-1].content == prompt:
        window.pop()
    return window


class ConversationStore:
    def __init__(self, client: Optional[CompletionClient] = None) -> None:
        self._messages: List[_Message] = []
        self._client = client
        self._lock = RLock()
        self._epoch = 0

    @property
    def lock(self) -> RLock:
        return self._lock

    @property
    def client(self) -> CompletionClient:
        return self._client or get_completion_client()

    @property
    def epoch(self) -> int:
        """Bumped whenever the log is cleared or replaced by an import."""
        with self._lock:
            return self._epoch

    def _model(self, message: _Message) -> ChatMessage:
        return ChatMessage(
            id=message.message_id,
            role=message.role,
            content=message.content,
            image=message.image,
            created_at=message.created_at,
        )

    def _index(self, message_id: str) -> int:
        for idx, message in enumerate(self._messages):
            if message.message_id == message_id:
                return idx
        return -1

    def _new_id(self) -> str:
        return uuid.uuid4().hex

    def _to_internal(self, message: ChatMessage, message_id: str) -> _Message:
        if getattr(message, "role", None) is None:
            raise InvalidInput("Message role is required")
        role = Role(message.role)
        if message.image and role != Role.USER:
            raise InvalidInput("Images can only be attached to user messages")
        return _Message(
            message_id=message_id,
            role=role,
            content=message.content or "",
            image=message.image,
            created_at=message.created_at or utcnow(),
        )

    def _insert_reply(self, anchor_id: str, content: str) -> ChatMessage:
        """Place an assistant reply right after ``anchor_id``, replacing a reply already there."""
        reply = _Message(self._new_id(), Role.ASSISTANT, content, None, utcnow())
        idx = self._index(anchor_id)
        if idx < 0:
            self._messages.append(reply)
            return self._model(reply)
        nxt = idx + 1
        if nxt < len(self._messages) and self._messages[nxt].role == Role.ASSISTANT:
            del self._messages[nxt]
        self._messages.insert(nxt, reply)
        return self._model(reply)

    def insert_reply(self, anchor_id: str, content: str, epoch: Optional[int] = None) -> Optional[ChatMessage]:
        """Insert a reply unless the log was cleared or replaced since ``epoch``."""
        with self._lock:
            if epoch is not None and epoch != self._epoch:
                logger.info("Dropped reply for message %s: chat history was reset", anchor_id)
                return None
            return self._insert_reply(anchor_id, content)

    def append(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            message_id = message.id or self._new_id()
            if self._index(message_id) >= 0:
                raise InvalidInput(f"Duplicate message id: {message_id}")
            stored = self._to_internal(message, message_id)
            self._messages.append(stored)
            logger.debug("Added message with ID: %s", message_id)
            return self._model(stored)

    def get(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            idx = self._index(message_id)
            return self._model(self._messages[idx]) if idx >= 0 else None

    def list(self) -> List[ChatMessage]:
        with self._lock:
            return [self._model(m) for m in self._messages]

    def index_of(self, message_id: str) -> int:
        with self._lock:
            return self._index(message_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def update(self, message_id: str, new_content: str, new_image: Optional[str] = None) -> ChatMessage:
        with self._lock:
            idx = self._index(message_id)
            if idx < 0:
                raise NotFound(f"Message not found with ID: {message_id}")
            message = self._messages[idx]
            if new_image is not None and message.role != Role.USER:
                raise InvalidInput("Images can only be attached to user messages")
            message.content = new_content
            if new_image is not None:
                message.image = new_image
            logger.info("Updated message with ID: %s (with image: %s)", message_id, new_image is not None)
            return self._model(message)

    def delete(self, message_id: str) -> bool:
        with self._lock:
            idx = self._index(message_id)
            if idx < 0:
                logger.warning("Attempted to delete non-existent message with ID: %s", message_id)
                return False
            del self._messages[idx]
            logger.info("Deleted message with ID: %s", message_id)
            return True

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._epoch += 1
        logger.info("Cleared all messages from chat history")

    def replace_all(self, messages: Iterable[ChatMessage]) -> List[ChatMessage]:
        """Swap in an imported log; every message gets a fresh id."""
        incoming = [self._to_internal(m, self._new_id()) for m in messages]
        with self._lock:
            self._messages = incoming
            self._epoch += 1
            logger.info("Imported %d messages into chat history", len(incoming))
            return [self._model(m) for m in self._messages]

    def process_turn(
        self,
        prompt: str,
        config: GenerationConfig,
        image: Optional[str] = None,
    ) -> Tuple[ChatMessage, ChatMessage]:
        if not prompt or not prompt.strip():
            raise InvalidInput("Please enter a valid message")
        with self._lock:
            prior = [self._model(m) for m in self._messages]
            user_msg = self.append(ChatMessage(role=Role.USER, content=prompt, image=image))
        window = context_window(prior, config, prompt)
        logger.debug("Using %d messages from history (max turns: %d)", len(window), config.max_history_turns)

        try:
            reply_text = self.client.complete(prompt, window, config, image=image)
        except Exception:
            logger.exception("Failed to generate AI response")
            PROVIDER_FAILURES.labels(operation="turn").inc()
            reply_text = PROCESS_FALLBACK

        with self._lock:
            reply = self._insert_reply(user_msg.id, reply_text)
        logger.info("Processed user message %s and generated AI response %s", user_msg.id, reply.id)
        return user_msg, reply

    def regenerate(self, user_message_id: str, config: GenerationConfig) -> ChatMessage:
        with self._lock:
            idx = self._index(user_message_id)
            if idx < 0 or self._messages[idx].role != Role.USER:
                raise NotFound(f"User message not found with ID: {user_message_id}")
            nxt = idx + 1
            if nxt < len(self._messages) and self._messages[nxt].role == Role.ASSISTANT:
                del self._messages[nxt]
            target = self._model(self._messages[idx])
            prior = [self._model(m) for m in self._messages[:idx]]
        window = context_window(prior, config, target.content)

        try:
            reply_text = self.client.complete(target.content, window, config, image=target.image)
        except Exception:
            logger.exception("Failed to regenerate AI response")
            PROVIDER_FAILURES.labels(operation="regenerate").inc()
            reply_text = REGENERATE_FALLBACK

        with self._lock:
            reply = self._insert_reply(user_message_id, reply_text)
        logger.info("Regenerated AI reply for message %s", user_message_id)
        return reply


def get_conversation(ctx: SessionContext) -> ConversationStore:
    return ctx.get_or_create(CONVERSATION_KEY, ConversationStore)


def get_config(ctx: SessionContext) -> GenerationConfig:
    return ctx.get_or_create(CONFIG_KEY, lambda: GenerationConfig.from_settings(get_settings()))
