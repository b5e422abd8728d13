from __future__ import annotations

from datetime import datetime, timezone
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.stream import router as stream_router
from .routers.magic_link import router as magic_link_router
from .routers.settings import router as settings_router
from .views import login_redirect
from ..domain.errors import SessionNotAuthenticated, Unauthorized
from ..infrastructure.session_store import get_session_store, session_middleware_factory
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # .env may carry OPENROUTER_API_KEY, LINKCHAT_SESSION_SECRET, SMTP settings

logger = logging.getLogger("linkchat.api")

app = FastAPI(title="LinkChat", version="0.1.0")

# Session cookie first, latency histogram outermost
app.middleware("http")(session_middleware_factory())
app.middleware("http")(metrics_middleware_factory())

app.include_router(chat_router)
app.include_router(stream_router)
app.include_router(magic_link_router)
app.include_router(settings_router)


@app.exception_handler(SessionNotAuthenticated)
async def handle_not_authenticated(request: Request, exc: SessionNotAuthenticated) -> Response:
    logger.debug("Redirecting unauthenticated request for %s", request.url.path)
    return login_redirect()


@app.exception_handler(Unauthorized)
async def handle_unauthorized(request: Request, exc: Unauthorized) -> Response:
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": str(exc)})


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "sessions": get_session_store().count(),
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
