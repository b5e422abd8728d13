from __future__ import annotations

"""Single-use magic link credentials.

This module provides:
- ``LinkToken`` (pydantic) and the process-wide ``TokenIssuer`` store
- atomic validate-and-consume, expiry and sweep
- the SMTP sender used for emailed links

Env vars:
- LINKCHAT_SMTP_HOST / _PORT / _USER / _PASSWORD / _SENDER
- LINKCHAT_SMTP_USE_TLS (default 1), LINKCHAT_SMTP_USE_SSL (default 0), LINKCHAT_SMTP_TIMEOUT
- LINKCHAT_INCLUDE_LINK_IN_RESPONSE (echo emailed links, for local use only)
"""

from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from threading import RLock
from typing import Callable, Dict, Optional

import logging
import os
import secrets
import smtplib
import ssl

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..config import get_settings
from ..domain.errors import AlreadyUsed, Expired, InvalidToken
from ..observability.metrics import LINK_TOKENS


logger = logging.getLogger("linkchat.auth")

MAX_VALID_MINUTES = 60 * 24 * 365

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LinkToken(BaseModel):
    value: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    bound_session_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class MagicLinkEmailRequest(BaseModel):
    email: EmailStr


class MagicLinkResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    link: str
    expires_at: datetime = Field(serialization_alias="expiresAt")


class TokenView(BaseModel):
    """Diagnostic view; the full value is never echoed back."""

    token_prefix: str
    created_at: datetime
    expires_at: datetime
    used: bool
    expired: bool
    bound: bool


class TokenIssuer:
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._tokens: Dict[str, LinkToken] = {}
        self._clock = clock or _utcnow
        self._lock = RLock()

    def now(self) -> datetime:
        return self._clock()

    def issue(self, valid_minutes: int) -> LinkToken:
        if valid_minutes > MAX_VALID_MINUTES:
            logger.warning("Clamping magic link lifetime of %s minutes to %s", valid_minutes, MAX_VALID_MINUTES)
            valid_minutes = MAX_VALID_MINUTES
        now = self.now()
        value = secrets.token_urlsafe(24)
        token = LinkToken(value=value, created_at=now, expires_at=now + timedelta(minutes=valid_minutes))
        with self._lock:
            while value in self._tokens:
                value = secrets.token_urlsafe(24)
                token.value = value
            self._tokens[value] = token
        LINK_TOKENS.labels(outcome="issued").inc()
        logger.info("Issued magic link token %s... expiring at %s", value[:6], token.expires_at.isoformat())
        return token.model_copy()

    def validate_and_consume(self, value: Optional[str], bound_session_id: Optional[str]) -> LinkToken:
        if not value or not value.strip():
            LINK_TOKENS.labels(outcome="invalid").inc()
            raise InvalidToken()
        with self._lock:
            token = self._tokens.get(value)
            if token is None:
                outcome, error = "invalid", InvalidToken()
            elif token.used:
                outcome, error = "already_used", AlreadyUsed()
            elif token.is_expired(self.now()):
                outcome, error = "expired", Expired()
            else:
                token.used = True
                token.bound_session_id = bound_session_id
                outcome, error = "consumed", None
            LINK_TOKENS.labels(outcome=outcome).inc()
            if error is not None:
                logger.info("Rejected magic link token %s...: %s", value[:6], error)
                raise error
            logger.info("Consumed magic link token %s...", value[:6])
            return token.model_copy()

    def get(self, value: str) -> Optional[LinkToken]:
        with self._lock:
            token = self._tokens.get(value)
            return token.model_copy() if token is not None else None

    def sweep(self) -> int:
        now = self.now()
        with self._lock:
            expired = [v for v, t in self._tokens.items() if t.is_expired(now)]
            for value in expired:
                del self._tokens[value]
        if expired:
            logger.debug("Swept %d expired magic link tokens", len(expired))
        return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._tokens)


_issuer: TokenIssuer | None = None


def get_token_issuer() -> TokenIssuer:
    global _issuer
    if _issuer is None:
        _issuer = TokenIssuer()
    return _issuer


def build_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/magic-link/consume?token={token}"


def should_include_link_in_response() -> bool:
    return get_settings().include_link_in_response


def _smtp_configured() -> bool:
    host = os.getenv("LINKCHAT_SMTP_HOST")
    user = os.getenv("LINKCHAT_SMTP_USER")
    password = os.getenv("LINKCHAT_SMTP_PASSWORD")
    sender = os.getenv("LINKCHAT_SMTP_SENDER") or user
    if not host or not user or not password or not sender:
        return False
    try:
        int(os.getenv("LINKCHAT_SMTP_PORT", "587"))
    except ValueError:
        return False
    return True


def send_magic_link_email(recipient: str, link: str, valid_minutes: int) -> bool:
    """Mail ``link`` to ``recipient``; returns False when SMTP is not set up or sending failed."""
    if not _smtp_configured():
        logger.info("SMTP not fully configured; skipping magic link email send")
        return False
    host = os.getenv("LINKCHAT_SMTP_HOST")
    port = int(os.getenv("LINKCHAT_SMTP_PORT", "587"))
    user = os.getenv("LINKCHAT_SMTP_USER")
    password = os.getenv("LINKCHAT_SMTP_PASSWORD")
    sender = os.getenv("LINKCHAT_SMTP_SENDER") or user
    use_tls = os.getenv("LINKCHAT_SMTP_USE_TLS", "1").lower() in ("1", "true", "yes")
    use_ssl = os.getenv("LINKCHAT_SMTP_USE_SSL", "0").lower() in ("1", "true", "yes")
    timeout = int(os.getenv("LINKCHAT_SMTP_TIMEOUT", "10"))

    message = EmailMessage()
    message["Subject"] = "Your LinkChat sign-in link"
    message["From"] = sender
    message["To"] = recipient
    message.set_content(
        f"Use this link to sign in:\n\n{link}\n\n"
        f"It can be used once and expires in {valid_minutes} minutes."
    )

    try:
        context = ssl.create_default_context()
        if use_ssl:
            with smtplib.SMTP_SSL(host, port, timeout=timeout, context=context) as client:
                client.login(user, password)
                client.send_message(message)
        else:
            with smtplib.SMTP(host, port, timeout=timeout) as client:
                client.ehlo()
                if use_tls:
                    client.starttls(context=context)
                    client.ehlo()
                client.login(user, password)
                client.send_message(message)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send magic link email to %s", recipient)
        return False
    logger.info("Sent magic link email to %s via %s:%s", recipient, host, port)
    return True
