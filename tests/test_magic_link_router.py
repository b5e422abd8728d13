from urllib.parse import parse_qs, urlsplit

from src.linkchat.api.routers import magic_link as magic_link_routes
from src.linkchat.security.magic_link import get_token_issuer
from .utils import API_HEADERS, issue_link_token, login


def _query(location):
    return parse_qs(urlsplit(location).query)


def test_api_issuance_requires_bearer(client):
    res = client.get("/magic-link/request")
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized: missing or invalid API key"}

    res = client.get("/magic-link/request", headers={"Authorization": "Bearer wrong"})
    assert res.status_code == 401
    assert res.json()["error"] == "Unauthorized: missing or invalid API key"


def test_api_issuance_returns_token_link_and_expiry(client):
    res = client.get("/magic-link/request", headers=API_HEADERS)
    assert res.status_code == 200
    body = res.json()
    assert set(body) == {"token", "link", "expiresAt"}
    assert body["link"] == f"/magic-link/consume?token={body['token']}"
    token = get_token_issuer().get(body["token"])
    assert (token.expires_at - token.created_at).total_seconds() == 10000 * 60


def test_api_key_can_be_configured(client, monkeypatch):
    monkeypatch.setenv("LINKCHAT_MAGIC_LINK_API_KEY", "other-key")
    assert client.get("/magic-link/request", headers=API_HEADERS).status_code == 401
    res = client.get("/magic-link/request", headers={"Authorization": "Bearer other-key"})
    assert res.status_code == 200


def test_consume_authenticates_session(client):
    assert client.get("/", follow_redirects=False).status_code == 303
    login(client)
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["messages"] == []


def test_consumed_token_cannot_be_reused(client):
    token = issue_link_token(client)
    client.get("/magic-link/consume", params={"token": token}, follow_redirects=False)

    res = client.get("/magic-link/consume", params={"token": token}, follow_redirects=False)
    assert res.status_code == 303
    assert res.headers["location"].startswith("/magic-link/request?error=")
    assert _query(res.headers["location"])["error"] == ["Magic link token already used."]


def test_consume_unknown_or_missing_token(client):
    res = client.get("/magic-link/consume", params={"token": "bogus"}, follow_redirects=False)
    assert _query(res.headers["location"])["error"] == ["Invalid magic link token."]
    res = client.get("/magic-link/consume", follow_redirects=False)
    assert _query(res.headers["location"])["error"] == ["Invalid magic link token."]
    assert client.get("/", follow_redirects=False).status_code == 303


def test_consume_expired_token_and_sweep(client):
    token = get_token_issuer().issue(0)
    res = client.get("/magic-link/consume", params={"token": token.value}, follow_redirects=False)
    assert _query(res.headers["location"])["error"] == ["Magic link token expired."]
    # the sweep that follows every consumption drops the expired token
    assert get_token_issuer().get(token.value) is None


def test_sweep_failure_redirects_with_reason(client, monkeypatch):
    token = issue_link_token(client)

    def broken_sweep():
        raise RuntimeError("sweep exploded")

    monkeypatch.setattr(get_token_issuer(), "sweep", broken_sweep)
    res = client.get("/magic-link/consume", params={"token": token}, follow_redirects=False)
    assert _query(res.headers["location"])["error"] == ["sweep exploded"]


def test_email_request_rejects_invalid_address(client):
    res = client.post("/magic-link/request", data={"email": "not-an-email"}, follow_redirects=False)
    assert res.status_code == 303
    assert _query(res.headers["location"])["error"] == ["Please enter a valid email address."]


def test_email_request_sends_link(client, monkeypatch):
    sent = []

    def fake_send(recipient, link, minutes):
        sent.append((recipient, link, minutes))
        return True

    monkeypatch.setattr(magic_link_routes, "send_magic_link_email", fake_send)

    res = client.post("/magic-link/request", data={"email": "user@example.com"}, follow_redirects=False)

    assert _query(res.headers["location"])["success"] == ["Magic link sent to user@example.com."]
    recipient, link, minutes = sent[0]
    assert recipient == "user@example.com"
    assert minutes == 60
    assert link.startswith("http://testserver/magic-link/consume?token=")
    token = link.split("token=", 1)[1]
    assert get_token_issuer().get(token) is not None


def test_email_request_without_smtp_reports_error(client):
    res = client.post("/magic-link/request", data={"email": "user@example.com"}, follow_redirects=False)
    assert _query(res.headers["location"])["error"] == [
        "Unable to send the magic link email. Please try again later."
    ]


def test_email_request_can_echo_link(client, monkeypatch):
    monkeypatch.setenv("LINKCHAT_INCLUDE_LINK_IN_RESPONSE", "1")
    res = client.post("/magic-link/request", data={"email": "user@example.com"}, follow_redirects=False)
    success = _query(res.headers["location"])["success"][0]
    assert success.startswith("Magic link generated: http://testserver/magic-link/consume?token=")

    link = success.split(": ", 1)[1]
    res = client.get(link, follow_redirects=False)
    assert res.headers["location"] == "/#chat-bottom"


def test_consume_rate_limited_per_client(client, monkeypatch):
    monkeypatch.setenv("LINKCHAT_RATE_LIMIT_FORCE", "1")
    monkeypatch.setenv("LINKCHAT_LINK_CONSUME_LIMIT", "2")
    for _ in range(2):
        client.get("/magic-link/consume", params={"token": "x"}, follow_redirects=False)
    res = client.get("/magic-link/consume", params={"token": "x"}, follow_redirects=False)
    assert _query(res.headers["location"])["error"] == ["Too many attempts. Please try again later."]


def test_token_status_endpoint(client):
    token = issue_link_token(client)
    res = client.get(f"/magic-link/tokens/{token}", headers=API_HEADERS)
    assert res.status_code == 200
    body = res.json()
    assert body["used"] is False
    assert body["expired"] is False
    assert body["token_prefix"] == token[:6]
    assert "token" not in body

    assert client.get(f"/magic-link/tokens/{token}").status_code == 401
    assert client.get("/magic-link/tokens/missing", headers=API_HEADERS).status_code == 404
