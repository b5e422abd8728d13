from __future__ import annotations

from typing import Optional
import logging

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from pydantic import ValidationError

from ...config import get_settings
from ...domain.errors import CredentialError
from ...infrastructure.session_store import AUTHENTICATED_KEY, SessionContext
from ...security.auth import get_session_context, require_api_key
from ...security.magic_link import (
    MagicLinkEmailRequest,
    MagicLinkResponse,
    TokenView,
    build_link,
    get_token_issuer,
    send_magic_link_email,
    should_include_link_in_response,
)
from ...security.rate_limit import RateLimitExceeded, rate_limit_action
from ..views import CHAT_BOTTOM, login_redirect, redirect

logger = logging.getLogger("linkchat.auth")

router = APIRouter(prefix="/magic-link", tags=["magic-link"])


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.get("/request", response_model=MagicLinkResponse, response_model_by_alias=True)
def request_link_api(_: str = Depends(require_api_key)) -> MagicLinkResponse:
    token = get_token_issuer().issue(get_settings().magic_link_api_minutes)
    return MagicLinkResponse(token=token.value, link=build_link("", token.value), expires_at=token.expires_at)


@router.post("/request")
def request_link_email(request: Request, email: str = Form("")):
    try:
        req = MagicLinkEmailRequest(email=email.strip())
    except ValidationError:
        return login_redirect(error="Please enter a valid email address.")
    try:
        rate_limit_action(
            "magic_link_request",
            str(req.email).lower(),
            limit_env="LINKCHAT_LINK_REQUEST_LIMIT",
            window_env="LINKCHAT_LINK_REQUEST_WINDOW_SEC",
            default_limit=5,
            default_window_seconds=900,
        )
    except RateLimitExceeded as exc:
        return login_redirect(error=str(exc))

    minutes = get_settings().magic_link_email_minutes
    token = get_token_issuer().issue(minutes)
    link = build_link(str(request.base_url), token.value)
    sent = send_magic_link_email(str(req.email), link, minutes)
    if should_include_link_in_response():
        return login_redirect(success=f"Magic link generated: {link}")
    if not sent:
        return login_redirect(error="Unable to send the magic link email. Please try again later.")
    return login_redirect(success=f"Magic link sent to {req.email}.")


@router.get("/consume")
def consume_link(
    request: Request,
    token: Optional[str] = Query(None),
    ctx: SessionContext = Depends(get_session_context),
):
    issuer = get_token_issuer()
    try:
        rate_limit_action(
            "magic_link_consume",
            _client_host(request),
            limit_env="LINKCHAT_LINK_CONSUME_LIMIT",
            window_env="LINKCHAT_LINK_CONSUME_WINDOW_SEC",
            default_limit=20,
            default_window_seconds=900,
        )
        issuer.validate_and_consume(token, ctx.session_id)
        ctx.set(AUTHENTICATED_KEY, True)
        response = redirect(CHAT_BOTTOM)
    except (CredentialError, RateLimitExceeded) as exc:
        response = login_redirect(error=str(exc))
    try:
        issuer.sweep()
    except Exception as exc:
        logger.exception("Magic link token sweep failed")
        response = login_redirect(error=str(exc) or "Token cleanup failed.")
    return response


@router.get("/tokens/{value}", response_model=TokenView)
def token_status(value: str, _: str = Depends(require_api_key)) -> TokenView:
    issuer = get_token_issuer()
    token = issuer.get(value)
    if token is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
    return TokenView(
        token_prefix=token.value[:6],
        created_at=token.created_at,
        expires_at=token.expires_at,
        used=token.used,
        expired=token.is_expired(issuer.now()),
        bound=token.bound_session_id is not None,
    )
