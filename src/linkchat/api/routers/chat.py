from __future__ import annotations

from typing import Optional
import logging

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile

from ...domain.chat_models import ChatView
from ...domain.errors import InvalidInput, LinkChatError, NotFound
from ...infrastructure.session_store import SessionContext
from ...security.auth import require_authenticated_session
from ...services.conversation import get_config, get_conversation
from ...services.streaming import get_stream_coordinator
from ...services.transfer import EXPORT_FILENAME, export_messages, parse_import
from ..views import CHAT_BOTTOM, build_view, error_redirect, read_image, redirect, turn_anchor

logger = logging.getLogger("linkchat.chat")

router = APIRouter(tags=["chat"])


def _safe_anchor(anchor: Optional[str]) -> str:
    if anchor and anchor.startswith("#") and "/" not in anchor:
        return f"/{anchor}"
    return CHAT_BOTTOM


@router.get("/", response_model=ChatView)
def chat_page(
    error: Optional[str] = Query(None),
    ctx: SessionContext = Depends(require_authenticated_session),
) -> ChatView:
    return build_view(ctx, error=error)


@router.post("/chat")
def submit_message(
    prompt: str = Form(""),
    image: Optional[UploadFile] = File(None),
    ctx: SessionContext = Depends(require_authenticated_session),
):
    if not prompt.strip():
        logger.warning("Empty prompt received")
        return error_redirect("Please enter a valid message")
    image_b64 = read_image(image)
    get_stream_coordinator().discard(ctx)
    try:
        get_conversation(ctx).process_turn(prompt, get_config(ctx), image=image_b64)
    except LinkChatError as exc:
        return error_redirect(str(exc))
    return redirect(CHAT_BOTTOM)


@router.get("/chat/message/{message_id}/edit", response_model=ChatView)
def edit_message(message_id: str, ctx: SessionContext = Depends(require_authenticated_session)):
    store = get_conversation(ctx)
    message = store.get(message_id)
    if message is None:
        logger.warning("Message not found: %s", message_id)
        return error_redirect("Message not found")
    return build_view(
        ctx,
        editing_message_id=message_id,
        editing_message_content=message.content,
        editing_message_turn=store.index_of(message_id),
    )


@router.post("/chat/message/{message_id}/save")
def save_message(
    message_id: str,
    prompt: str = Form(""),
    image: Optional[UploadFile] = File(None),
    ctx: SessionContext = Depends(require_authenticated_session),
):
    store = get_conversation(ctx)
    try:
        if not prompt.strip():
            raise InvalidInput("Please enter a valid message")
        store.update(message_id, prompt, read_image(image))
    except (InvalidInput, NotFound) as exc:
        return error_redirect(str(exc))
    turn = store.index_of(message_id)
    return redirect(turn_anchor(turn) if turn >= 0 else CHAT_BOTTOM)


@router.get("/chat/message/{message_id}/view", response_model=ChatView)
def view_message(message_id: str, ctx: SessionContext = Depends(require_authenticated_session)):
    store = get_conversation(ctx)
    if store.get(message_id) is None:
        return error_redirect("Message not found")
    return build_view(ctx, editing_message_turn=store.index_of(message_id))


@router.post("/chat/message/{message_id}/delete")
def delete_message(message_id: str, ctx: SessionContext = Depends(require_authenticated_session)):
    if not get_conversation(ctx).delete(message_id):
        return error_redirect("Message not found or could not be deleted.")
    return redirect(CHAT_BOTTOM)


@router.post("/chat/message/{message_id}/regenerate")
def regenerate_message(
    message_id: str,
    anchor: Optional[str] = Form(None),
    ctx: SessionContext = Depends(require_authenticated_session),
):
    try:
        get_conversation(ctx).regenerate(message_id, get_config(ctx))
    except NotFound as exc:
        return error_redirect(str(exc))
    return redirect(_safe_anchor(anchor))


@router.post("/chat/clear")
def clear_chat(ctx: SessionContext = Depends(require_authenticated_session)):
    get_conversation(ctx).clear()
    get_stream_coordinator().discard(ctx)
    return redirect(CHAT_BOTTOM)


@router.post("/chat/export")
def export_chat(ctx: SessionContext = Depends(require_authenticated_session)) -> Response:
    messages = get_conversation(ctx).list()
    logger.info("Exporting chat history (%d messages)", len(messages))
    return Response(
        content=export_messages(messages),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )


@router.post("/chat/import")
def import_chat(
    file: Optional[UploadFile] = File(None),
    ctx: SessionContext = Depends(require_authenticated_session),
):
    if file is None or not file.filename:
        return error_redirect("No file selected for import.")
    try:
        messages = parse_import(file.file.read())
    except InvalidInput as exc:
        return error_redirect(str(exc))
    get_stream_coordinator().discard(ctx)
    get_conversation(ctx).replace_all(messages)
    return redirect(CHAT_BOTTOM)
