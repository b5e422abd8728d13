import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from .utils import FakeCompletionClient  # noqa: E402


_ENV_VARS = (
    "OPENROUTER_API_KEY",
    "OPENROUTER_BASE_URL",
    "LINKCHAT_NO_AUTH",
    "LINKCHAT_MAGIC_LINK_API_KEY",
    "LINKCHAT_MAGIC_LINK_API_MINUTES",
    "LINKCHAT_MAGIC_LINK_EMAIL_MINUTES",
    "LINKCHAT_INCLUDE_LINK_IN_RESPONSE",
    "LINKCHAT_DEFAULT_HISTORY_TURNS",
    "LINKCHAT_DEFAULT_STREAMING",
    "LINKCHAT_RATE_LIMIT_DISABLED",
    "LINKCHAT_RATE_LIMIT_FORCE",
    "LINKCHAT_SMTP_HOST",
    "LINKCHAT_SMTP_USER",
    "LINKCHAT_SMTP_PASSWORD",
    "LINKCHAT_SMTP_SENDER",
)


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch):
    """Fresh singletons and a scripted provider for every test."""
    from src.linkchat.infrastructure import session_store
    from src.linkchat.security import magic_link
    from src.linkchat.security.rate_limit import reset_rate_limits
    from src.linkchat.services import completion_client, streaming

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(session_store, "_store", None)
    monkeypatch.setattr(magic_link, "_issuer", None)
    monkeypatch.setattr(streaming, "_coordinator", None)
    monkeypatch.setattr(completion_client, "_client", FakeCompletionClient())
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def fake_client():
    from src.linkchat.services.completion_client import get_completion_client

    return get_completion_client()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from src.linkchat.api.main import app

    with TestClient(app) as c:
        yield c
