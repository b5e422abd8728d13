from __future__ import annotations

"""Helpers shared by the page routers: redirects, view models and uploads."""

from typing import Optional
from urllib.parse import quote
import base64
import html
import time

from fastapi import UploadFile, status
from fastapi.responses import HTMLResponse, RedirectResponse

from ..domain.chat_models import ChatView, StreamSnapshot
from ..infrastructure.session_store import SessionContext
from ..services.conversation import get_config, get_conversation
from ..services.streaming import get_stream_coordinator

CHAT_BOTTOM = "/#chat-bottom"
LOGIN_PAGE = "/magic-link/request"
STREAM_FRAME_URL = "/chat/stream-frame"


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


def error_redirect(reason: str) -> RedirectResponse:
    return redirect(f"/?error={quote(reason)}#chat-bottom")


def login_redirect(error: Optional[str] = None, success: Optional[str] = None) -> RedirectResponse:
    if error:
        return redirect(f"{LOGIN_PAGE}?error={quote(error)}")
    if success:
        return redirect(f"{LOGIN_PAGE}?success={quote(success)}")
    return redirect(LOGIN_PAGE)


def turn_anchor(index: int) -> str:
    return f"/#turn-{index}"


def read_image(upload: Optional[UploadFile]) -> Optional[str]:
    """Base64 of an uploaded image, or None when the field was left empty."""
    if upload is None or not upload.filename:
        return None
    data = upload.file.read()
    if not data:
        return None
    return base64.b64encode(data).decode("ascii")


def poll_url(snapshot: StreamSnapshot) -> str:
    return (
        f"{STREAM_FRAME_URL}?t={int(time.time() * 1000)}"
        f"&c={len(snapshot.text)}&p={len(snapshot.prompt)}#stream-bottom"
    )


def build_view(ctx: SessionContext, error: Optional[str] = None, **editing) -> ChatView:
    snapshot = get_stream_coordinator().snapshot(ctx)
    return ChatView(
        messages=get_conversation(ctx).list(),
        config=get_config(ctx),
        streaming=snapshot,
        poll_url=poll_url(snapshot) if snapshot is not None and not snapshot.complete else None,
        error=error,
        **editing,
    )


def render_stream_frame(snapshot: Optional[StreamSnapshot], update_rate: int) -> HTMLResponse:
    if snapshot is None:
        return HTMLResponse("<!DOCTYPE html>\n<html><head></head><body></body></html>\n")
    parts = ["<!DOCTYPE html>", "<html><head>"]
    if not snapshot.complete:
        parts.append(f'<meta http-equiv="refresh" content="{update_rate};url={poll_url(snapshot)}">')
    parts.append(
        "<style>body{margin:0;padding:0;font:inherit;background:transparent;}"
        "#ai-stream{white-space:pre-wrap;word-wrap:break-word;}</style>"
    )
    parts.append("</head><body>")
    parts.append('<div id="ai-stream">')
    parts.append(html.escape(snapshot.text, quote=False).replace("\n", "<br/>"))
    parts.append("</div>")
    parts.append('<div id="stream-bottom"></div>')
    parts.append("</body></html>")
    return HTMLResponse("\n".join(parts) + "\n")
