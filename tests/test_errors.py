import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import rsc_errors  # noqa: E402
from rsc_errors import (  # noqa: E402
    ApiRequestError,
    CanceledError,
    DeadlineExceededError,
    JobFailedError,
    ProtocolError,
    RSCError,
    ValidationError,
)


def test_redact_sensitive_text_masks_bearer_tokens_fields_and_query_params():
    raw = (
        "Authorization: Bearer abc.def.ghi "
        "client_secret=supersecret "
        '{"access_token":"tok123","refresh_token":"ref456","password": "pw"} '
        "https://example.test/download?sig=verysecret&sv=2023-01-01"
    )
    cooked = rsc_errors.redact_sensitive_text(raw)
    assert "abc.def.ghi" not in cooked
    assert "supersecret" not in cooked
    assert "tok123" not in cooked
    assert "ref456" not in cooked
    assert '"pw"' not in cooked
    assert "verysecret" not in cooked
    assert "sv=2023-01-01" in cooked
    assert "[REDACTED]" in cooked


def test_snippet_truncates_after_redaction():
    body = b'{"access_token":"' + b"x" * 2000 + b'"}'
    s = rsc_errors.snippet(body)
    assert len(s) <= 512
    assert "xxxx" not in s
    assert rsc_errors.snippet("short") == "short"


def test_error_str_includes_operation_and_details():
    err = RSCError("boom", operation="remove subscription", account_id="a1", feature="")
    assert str(err) == "remove subscription(account_id=a1): boom"
    assert err.details == {"account_id": "a1"}
    assert str(RSCError("plain")) == "plain"


def test_wrap_keeps_class_and_inner_operation():
    inner = ProtocolError("bad body", operation="getKorgTaskchainStatus")
    outer = inner.wrap("wait for task chain", job_id="j1")

    assert isinstance(outer, ProtocolError)
    assert outer is not inner
    assert str(outer) == "wait for task chain(job_id=j1): getKorgTaskchainStatus: bad body"
    assert str(inner) == "getKorgTaskchainStatus: bad body"


def test_cancellation_is_not_a_business_error():
    assert issubclass(DeadlineExceededError, CanceledError)
    assert not issubclass(CanceledError, JobFailedError)
    assert not issubclass(JobFailedError, CanceledError)
    assert issubclass(ValidationError, ValueError)

    with pytest.raises(CanceledError):
        try:
            raise DeadlineExceededError("context deadline exceeded")
        except JobFailedError:
            pytest.fail("cancellation caught as job failure")


def test_job_failed_error_records_state_value():
    class State:
        value = "FAILED"

    err = JobFailedError("task chain did not succeed", job_id="j1", state=State())
    assert err.job_id == "j1"
    assert err.details["state"] == "FAILED"


def test_parse_error_body_oauth_shape():
    err = rsc_errors.parse_error_body(
        {"error": "invalid_client", "error_description": "bad secret"}, status_code=401
    )
    assert isinstance(err, ApiRequestError)
    assert err.code == "invalid_client"
    assert err.status_code == 401
    assert "bad secret" in err.message


def test_parse_error_body_graphql_shape():
    payload = {
        "data": None,
        "errors": [
            {
                "message": "not authorized",
                "extensions": {"code": 403, "trace": {"traceId": "tr-1"}},
            }
        ],
    }
    err = rsc_errors.parse_error_body(payload, status_code=200)
    assert err.code == 403
    assert err.trace_id == "tr-1"
    assert err.message == "not authorized (code: 403, traceId: tr-1)"


def test_parse_error_body_code_message_and_nested_error_shapes():
    err = rsc_errors.parse_error_body('{"code": 16, "message": "expired", "traceId": "t9"}')
    assert err.code == 16
    assert err.trace_id == "t9"

    err = rsc_errors.parse_error_body({"error": {"code": "Forbidden", "message": "nope"}})
    assert err.message == "nope (code: Forbidden)"


def test_parse_error_body_returns_none_for_regular_payloads():
    assert rsc_errors.parse_error_body({"data": {"result": []}}) is None
    assert rsc_errors.parse_error_body({"access_token": "x", "client_id": "c"}) is None
    assert rsc_errors.parse_error_body(b"not json") is None
    assert rsc_errors.parse_error_body([1, 2]) is None
