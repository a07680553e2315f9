import json
import sys
import types
from pathlib import Path

import pytest
import requests


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import rsc_graphql  # noqa: E402
from rsc_context import Context  # noqa: E402
from rsc_errors import ApiRequestError, AttemptTimeoutError, ProtocolError, TransportError  # noqa: E402

QUERY = """query RscThing($id: UUID!) {
    result: thing(id: $id) {
        id
    }
}"""


class Resp:
    def __init__(self, status_code=200, body=None, content_type="application/json"):
        self.status_code = status_code
        if body is None:
            self.content = b""
        elif isinstance(body, bytes):
            self.content = body
        else:
            self.content = json.dumps(body).encode()
        self.headers = {"Content-Type": content_type}


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


class FakeTokens:
    def __init__(self):
        self.invalidated = 0

    def acquire(self, ctx):
        return types.SimpleNamespace(auth_header=lambda: f"Bearer t{self.invalidated}")

    def invalidate(self):
        self.invalidated += 1


def _client(outcomes, **kwargs):
    session = FakeSession(outcomes)
    tokens = FakeTokens()
    client = rsc_graphql.GraphQLClient("https://acme.my.rubrik.com/api/", tokens, session=session, **kwargs)
    return client, session, tokens


def test_query_name():
    assert rsc_graphql.query_name(QUERY) == "RscThing"
    assert rsc_graphql.query_name("mutation RscDo { result: x }") == "RscDo"
    assert rsc_graphql.query_name("{ x }") == ""


def test_request_posts_query_with_bearer_auth():
    client, session, _ = _client([Resp(200, {"data": {"result": {"id": "1"}}})])
    buf = client.request(Context.background(), QUERY, {"id": "1"})

    assert rsc_graphql.result(buf) == {"id": "1"}
    call = session.calls[0]
    assert call["url"] == "https://acme.my.rubrik.com/api/graphql"
    body = json.loads(call["data"])
    assert body["operationName"] == "RscThing"
    assert body["variables"] == {"id": "1"}

    req = types.SimpleNamespace(headers={})
    call["auth"](req)
    assert req.headers["Authorization"] == "Bearer t0"


def test_request_timeout_bounded_by_context():
    clock = [0.0]
    ctx = Context.background(clock=lambda: clock[0]).with_timeout(7)
    client, session, _ = _client([Resp(200, {"data": {"result": 1}})])
    client.request(ctx, QUERY)
    assert session.calls[0]["timeout"] == (7, 7)

    client, session, _ = _client([Resp(200, {"data": {"result": 1}})])
    client.request(Context.background(), QUERY)
    assert session.calls[0]["timeout"] == (10.0, 60.0)


def test_unauthorized_refreshes_token_once():
    client, session, tokens = _client(
        [
            Resp(401, {"code": 16, "message": "token expired"}),
            Resp(200, {"data": {"result": True}}),
        ]
    )
    buf = client.request(Context.background(), QUERY)
    assert rsc_graphql.result(buf) is True
    assert tokens.invalidated == 1
    assert len(session.calls) == 2


def test_unauthorized_twice_is_api_error():
    client, session, tokens = _client([Resp(401, {"code": 16, "message": "no"})] * 2)
    with pytest.raises(ApiRequestError) as excinfo:
        client.request(Context.background(), QUERY)
    assert excinfo.value.status_code == 401
    assert tokens.invalidated == 1


def test_graphql_errors_become_api_error_with_trace_id():
    body = {"errors": [{"message": "boom", "extensions": {"code": 500, "trace": {"traceId": "abc"}}}]}
    client, _, _ = _client([Resp(200, body)])
    with pytest.raises(ApiRequestError) as excinfo:
        client.request(Context.background(), QUERY)
    err = excinfo.value
    assert err.trace_id == "abc"
    assert err.operation == "RscThing"
    assert "boom" in str(err)


def test_wrong_content_type_and_empty_body():
    client, _, _ = _client([Resp(200, b"<html/>", content_type="text/html")])
    with pytest.raises(ProtocolError):
        client.request(Context.background(), QUERY)

    client, _, _ = _client([Resp(502, b"bad gateway", content_type="text/plain")])
    with pytest.raises(ApiRequestError) as excinfo:
        client.request(Context.background(), QUERY)
    assert excinfo.value.status_code == 502

    client, _, _ = _client([Resp(200, None)])
    with pytest.raises(ProtocolError):
        client.request(Context.background(), QUERY)


def test_timeouts_and_transport_errors_are_not_retried():
    client, session, _ = _client([requests.exceptions.ReadTimeout("slow")] * 2)
    with pytest.raises(AttemptTimeoutError):
        client.request(Context.background(), QUERY)
    assert len(session.calls) == 1

    client, session, _ = _client([requests.exceptions.ConnectionError("refused")] * 2)
    with pytest.raises(TransportError):
        client.request(Context.background(), QUERY)
    assert len(session.calls) == 1


def test_result_rejects_malformed_envelope():
    with pytest.raises(ProtocolError):
        rsc_graphql.result(b'{"data": {}}')
    with pytest.raises(ProtocolError):
        rsc_graphql.result(b"not json")
    assert rsc_graphql.result(b'{"data": {"result": null}}') is None
