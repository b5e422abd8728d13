from __future__ import annotations

"""Background generation feeding a pull-only (meta-refresh) client.

A streaming submit only records a :class:`StreamSession`. The first poll
flips the ``started`` latch and launches one daemon thread that runs the
blocking provider stream and writes fragments into the session buffer.
Polls read a consistent snapshot under the stream lock, so a poll that
sees ``complete=True`` also sees the final text.
"""

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock, Thread
from typing import Optional
import logging

from ..domain.chat_models import ChatMessage, GenerationConfig, Role, StreamSnapshot, StreamState, utcnow
from ..domain.errors import Conflict, InvalidInput, ProviderFailure
from ..infrastructure.session_store import STREAM_KEY, SessionContext
from ..observability.metrics import PROVIDER_FAILURES, STREAMS
from .completion_client import CompletionClient, get_completion_client
from .conversation import ConversationStore, context_window, get_conversation


logger = logging.getLogger("linkchat.stream")


@dataclass
class StreamSession:
    prompt: str
    prompt_message_id: Optional[str]
    config: GenerationConfig
    image: Optional[str] = None
    buffer: str = ""
    complete: bool = False
    started: bool = False
    created_at: datetime = field(default_factory=utcnow)
    fragment_count: int = 0
    error: Optional[str] = None
    committed: bool = False
    epoch: int = 0
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def state(self) -> StreamState:
        with self.lock:
            return self._state()

    def _state(self) -> StreamState:
        if self.complete:
            return StreamState.COMPLETE
        if self.started:
            return StreamState.RUNNING
        return StreamState.NOT_STARTED

    def latch(self) -> bool:
        """Mark the stream started; True only for the caller that flipped it."""
        with self.lock:
            if self.started:
                return False
            self.started = True
            return True

    def append(self, fragment: str) -> None:
        if not fragment:
            return
        with self.lock:
            self.buffer += fragment
            self.fragment_count += 1

    def fail(self, message: str) -> None:
        with self.lock:
            self.error = message
            self.buffer += f"Error: {message}"

    def text(self) -> str:
        with self.lock:
            return self.buffer

    def snapshot(self) -> StreamSnapshot:
        with self.lock:
            return StreamSnapshot(
                prompt=self.prompt,
                text=self.buffer,
                complete=self.complete,
                started=self.started,
                fragment_count=self.fragment_count,
                state=self._state(),
            )


class StreamCoordinator:
    def __init__(self, client: Optional[CompletionClient] = None) -> None:
        self._client = client
        self._lock = Lock()

    @property
    def client(self) -> CompletionClient:
        return self._client or get_completion_client()

    def current(self, ctx: SessionContext) -> Optional[StreamSession]:
        return ctx.get(STREAM_KEY)

    def begin(
        self,
        ctx: SessionContext,
        prompt: str,
        config: GenerationConfig,
        image: Optional[str] = None,
    ) -> StreamSnapshot:
        if not prompt or not prompt.strip():
            raise InvalidInput("Please enter a valid message")
        store = get_conversation(ctx)
        with self._lock:
            existing = self.current(ctx)
            if existing is not None and existing.state() == StreamState.RUNNING:
                raise Conflict("A response is still being generated. Please wait for it to finish.")
            with store.lock:
                messages = store.list()
                last = messages[-1] if messages else None
                if last is not None and last.role == Role.USER and last.content == prompt:
                    prompt_msg = last
                    logger.debug("stream_resubmit", extra={"message_id": last.id})
                else:
                    prompt_msg = store.append(ChatMessage(role=Role.USER, content=prompt, image=image))
                epoch = store.epoch
            stream = StreamSession(
                prompt=prompt,
                prompt_message_id=prompt_msg.id,
                config=config.model_copy(),
                image=image or prompt_msg.image,
                epoch=epoch,
            )
            ctx.set(STREAM_KEY, stream)
        logger.info("stream_begin", extra={"session_id": ctx.session_id, "message_id": prompt_msg.id})
        return stream.snapshot()

    def poll(self, ctx: SessionContext) -> Optional[StreamSnapshot]:
        stream = self.current(ctx)
        if stream is None:
            return None
        if stream.latch():
            self._launch(get_conversation(ctx), stream)
        return stream.snapshot()

    def snapshot(self, ctx: SessionContext) -> Optional[StreamSnapshot]:
        stream = self.current(ctx)
        return stream.snapshot() if stream is not None else None

    def discard(self, ctx: SessionContext) -> bool:
        """Forget a finished or never-started stream; a running one is kept."""
        with self._lock:
            stream = self.current(ctx)
            if stream is None or stream.state() == StreamState.RUNNING:
                return False
            ctx.pop(STREAM_KEY)
            return True

    def _launch(self, store: ConversationStore, stream: StreamSession) -> Thread:
        worker = Thread(target=self._run, args=(store, stream), daemon=True, name="linkchat-stream")
        worker.start()
        logger.debug("stream_started", extra={"message_id": stream.prompt_message_id})
        return worker

    def _run(self, store: ConversationStore, stream: StreamSession) -> None:
        with store.lock:
            messages = store.list()
            idx = store.index_of(stream.prompt_message_id) if stream.prompt_message_id else -1
        prior = messages[:idx] if idx >= 0 else messages
        window = context_window(prior, stream.config, stream.prompt)

        outcome = "completed"
        try:
            self.client.stream(stream.prompt, window, stream.config, stream.append, image=stream.image)
            if not stream.text().strip():
                raise ProviderFailure("No response received from the model")
        except Exception as exc:
            logger.exception("stream_failed", extra={"message_id": stream.prompt_message_id})
            PROVIDER_FAILURES.labels(operation="stream").inc()
            stream.fail(str(exc) or exc.__class__.__name__)
            outcome = "failed"
        self._commit(store, stream)
        STREAMS.labels(outcome=outcome).inc()
        logger.info(
            "stream_completed",
            extra={"outcome": outcome, "fragments": stream.fragment_count, "message_id": stream.prompt_message_id},
        )

    def _commit(self, store: ConversationStore, stream: StreamSession) -> None:
        with stream.lock:
            if stream.committed:
                return
            stream.committed = True
            content = stream.buffer
        store.insert_reply(stream.prompt_message_id or "", content, epoch=stream.epoch)
        with stream.lock:
            stream.complete = True


_coordinator: StreamCoordinator | None = None


def get_stream_coordinator() -> StreamCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = StreamCoordinator()
    return _coordinator
