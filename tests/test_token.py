import json
import sys
import threading
import time
import types
from pathlib import Path

import jwt
import pytest
import requests


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import rsc_token  # noqa: E402
from rsc_context import Context  # noqa: E402
from rsc_errors import (  # noqa: E402
    ApiRequestError,
    AttemptTimeoutError,
    CanceledError,
    ProtocolError,
    TransportError,
)


def _jwt(exp=1000, **claims):
    if exp is not None:
        claims["exp"] = exp
    return jwt.encode(claims, "x" * 32, algorithm="HS256")


class Resp:
    def __init__(self, status_code=200, body=None, content_type="application/json"):
        self.status_code = status_code
        if body is None:
            self.content = b""
        elif isinstance(body, bytes):
            self.content = body
        else:
            self.content = json.dumps(body).encode()
        self.headers = {"Content-Type": content_type} if content_type else {}


class FakeSession:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append(dict(kwargs, url=url))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class CountingSource:
    def __init__(self, tokens):
        self.tokens = list(tokens)
        self.calls = 0

    def token(self, ctx):
        self.calls += 1
        return self.tokens.pop(0)


def test_token_expiry_uses_skew():
    token = rsc_token.Token.from_jwt(_jwt(exp=100))
    assert token.expires_at == 100
    assert token.expired(now=30) is False
    assert token.expired(now=50) is True
    assert token.auth_header().startswith("Bearer ")


def test_token_without_exp_is_expired():
    token = rsc_token.Token.from_jwt(_jwt(exp=None, sub="u"))
    assert token.expired(now=0) is True


def test_token_from_garbage_is_protocol_error():
    with pytest.raises(ProtocolError):
        rsc_token.Token.from_jwt("not-a-jwt")


def test_request_token_retries_only_timeouts():
    session = FakeSession(
        [
            requests.exceptions.ReadTimeout("slow"),
            requests.exceptions.ConnectTimeout("slow"),
            Resp(200, {"access_token": "t"}),
        ]
    )
    buf = rsc_token.request_token(Context.background(), session, "https://a.test/api/session", b"{}")
    assert json.loads(buf) == {"access_token": "t"}
    assert len(session.calls) == 3
    assert all(c["timeout"] == rsc_token.REQUEST_TIMEOUT_S for c in session.calls)


def test_request_token_gives_up_after_three_timeouts():
    session = FakeSession([requests.exceptions.Timeout("slow")] * 3)
    with pytest.raises(AttemptTimeoutError) as excinfo:
        rsc_token.request_token(Context.background(), session, "https://a.test/api/session", b"{}")
    assert "after 3 attempts" in str(excinfo.value)
    assert len(session.calls) == 3


def test_request_token_protocol_error_is_not_retried():
    session = FakeSession([Resp(200, b"<html>oops</html>", content_type="text/html")] * 3)
    with pytest.raises(ProtocolError) as excinfo:
        rsc_token.request_token(Context.background(), session, "https://a.test/api/session", b"{}")
    assert len(session.calls) == 1
    assert "text/html" in str(excinfo.value)


def test_request_token_empty_body_is_protocol_error():
    session = FakeSession([Resp(200, None)])
    with pytest.raises(ProtocolError):
        rsc_token.request_token(Context.background(), session, "https://a.test/api/session", b"{}")


def test_request_token_transport_error_is_not_retried():
    session = FakeSession([requests.exceptions.ConnectionError("refused")] * 3)
    with pytest.raises(TransportError):
        rsc_token.request_token(Context.background(), session, "https://a.test/api/session", b"{}")
    assert len(session.calls) == 1


def test_request_token_error_body_is_api_error():
    session = FakeSession([Resp(401, {"error": "invalid_client", "error_description": "bad secret"})])
    with pytest.raises(ApiRequestError) as excinfo:
        rsc_token.request_token(Context.background(), session, "https://a.test/api/session", b"{}")
    assert excinfo.value.status_code == 401
    assert "token response body is an error (status code 401)" in str(excinfo.value)


def test_request_token_attempt_timeout_bounded_by_context():
    clock = [0.0]
    ctx = Context.background(clock=lambda: clock[0]).with_timeout(5)
    session = FakeSession([Resp(200, {"access_token": "t"})])
    rsc_token.request_token(ctx, session, "https://a.test/api/session", b"{}")
    assert session.calls[0]["timeout"] == 5


def test_request_token_canceled_context_makes_no_request():
    ctx = Context.background().with_cancel()
    ctx.cancel()
    session = FakeSession([])
    with pytest.raises(CanceledError):
        rsc_token.request_token(ctx, session, "https://a.test/api/session", b"{}")
    assert session.calls == []


def test_token_source_returns_cached_token_without_calls():
    source = CountingSource([rsc_token.Token.from_jwt(_jwt(exp=1000))])
    ts = rsc_token.TokenSource(source, clock=lambda: 0)
    first = ts.acquire(Context.background())
    second = ts.acquire(Context.background())
    assert first is second
    assert source.calls == 1


def test_token_source_refreshes_within_skew():
    tokens = [rsc_token.Token.from_jwt(_jwt(exp=100)), rsc_token.Token.from_jwt(_jwt(exp=1000))]
    source = CountingSource(tokens)
    now = [0]
    ts = rsc_token.TokenSource(source, clock=lambda: now[0])
    ts.acquire(Context.background())
    now[0] = 50
    token = ts.acquire(Context.background())
    assert token.expires_at == 1000
    assert source.calls == 2


def test_token_source_invalidate_forces_refresh():
    tokens = [rsc_token.Token.from_jwt(_jwt(exp=1000)), rsc_token.Token.from_jwt(_jwt(exp=2000))]
    source = CountingSource(tokens)
    ts = rsc_token.TokenSource(source, clock=lambda: 0)
    ts.acquire(Context.background())
    ts.invalidate()
    assert ts.acquire(Context.background()).expires_at == 2000


def test_token_source_concurrent_acquires_refresh_once():
    calls = []

    class SlowSource:
        def token(self, ctx):
            calls.append(1)
            time.sleep(0.05)
            return rsc_token.Token.from_jwt(_jwt(exp=10_000))

    ts = rsc_token.TokenSource(SlowSource(), clock=lambda: 0)
    got = []
    threads = [threading.Thread(target=lambda: got.append(ts.acquire(Context.background()))) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(calls) == 1
    assert len(got) == 5
    assert all(t is got[0] for t in got)


def test_service_account_source_checks_client_id():
    account = types.SimpleNamespace(
        client_id="client-1", client_secret="s", token_url="https://a.my.rubrik.com/api/client_token"
    )
    session = FakeSession([Resp(200, {"client_id": "other", "access_token": _jwt()})])
    with pytest.raises(ProtocolError):
        rsc_token.ServiceAccountSource(session, account).token(Context.background())

    body = json.loads(session.calls[0]["data"])
    assert body == {"grant_type": "client_credentials", "client_id": "client-1", "client_secret": "s"}


def test_service_account_source_returns_token():
    account = types.SimpleNamespace(
        client_id="client-1", client_secret="s", token_url="https://a.my.rubrik.com/api/client_token"
    )
    session = FakeSession([Resp(200, {"client_id": "client-1", "access_token": _jwt(exp=500)})])
    token = rsc_token.ServiceAccountSource(session, account).token(Context.background())
    assert token.expires_at == 500
    assert session.calls[0]["url"] == "https://a.my.rubrik.com/api/client_token"


def test_user_source_requires_access_token():
    account = types.SimpleNamespace(username="u", password="p", token_url="https://a.my.rubrik.com/api/session")
    session = FakeSession([Resp(200, {"access_token": ""})])
    with pytest.raises(ProtocolError):
        rsc_token.UserSource(session, account).token(Context.background())


def test_bearer_auth_sets_header():
    token = rsc_token.Token.from_jwt(_jwt(exp=1000))
    ts = rsc_token.TokenSource(CountingSource([token]), clock=lambda: 0)
    req = types.SimpleNamespace(headers={})
    rsc_token.BearerAuth(ts)(req)
    assert req.headers["Authorization"] == f"Bearer {token.raw}"
