from __future__ import annotations

from typing import Optional
import logging

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import HTMLResponse, JSONResponse

from ...domain.chat_models import ChatView
from ...domain.errors import Conflict, InvalidInput
from ...infrastructure.session_store import SessionContext
from ...security.auth import require_authenticated_session
from ...services.conversation import get_config
from ...services.streaming import get_stream_coordinator
from ..views import build_view, error_redirect, read_image, render_stream_frame

logger = logging.getLogger("linkchat.stream")

router = APIRouter(prefix="/chat", tags=["stream"])


@router.post("/stream", response_model=ChatView)
def start_stream(
    prompt: str = Form(""),
    image: Optional[UploadFile] = File(None),
    ctx: SessionContext = Depends(require_authenticated_session),
):
    try:
        get_stream_coordinator().begin(ctx, prompt, get_config(ctx), image=read_image(image))
    except InvalidInput as exc:
        return error_redirect(str(exc))
    except Conflict as exc:
        view = build_view(ctx, error=str(exc))
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=view.model_dump(mode="json"))
    return build_view(ctx)


@router.get("/stream-frame", response_class=HTMLResponse)
def stream_frame(
    t: Optional[str] = Query(None),
    c: Optional[str] = Query(None),
    p: Optional[str] = Query(None),
    ctx: SessionContext = Depends(require_authenticated_session),
) -> HTMLResponse:
    # t/c/p only defeat caches between refreshes; the session holds the real state.
    snapshot = get_stream_coordinator().poll(ctx)
    if snapshot is not None and not snapshot.complete:
        logger.debug("stream_poll", extra={"chars": len(snapshot.text), "fragments": snapshot.fragment_count})
    return render_stream_frame(snapshot, get_config(ctx).streaming_update_rate)
