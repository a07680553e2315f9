import copy
import json
import re

_SNIPPET_LIMIT = 512

_REDACTED = "[REDACTED]"
_BEARER_RE = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9\-_.~+/=]+")
_JSON_SECRET_RE = re.compile(
    r'(?i)("(?:access_token|refresh_token|id_token|client_secret|password|token)"\s*:\s*")[^"]*(")'
)
_FORM_SECRET_RE = re.compile(
    r"(?i)\b(access_token|refresh_token|id_token|client_secret|password)=([^&\s\"']+)"
)
_QUERY_SECRET_RE = re.compile(r"(?i)([?&](?:sig|se|sp|skoid|sktid|skt|ske|sks|skv)=)[^&\s\"']+")


def redact_sensitive_text(text) -> str:
    """
    Mask credentials that commonly leak into error messages and debug logs:
    bearer tokens, token/secret/password fields (JSON and form encoded) and
    signed URL query parameters.
    """
    cooked = str(text or "")
    cooked = _BEARER_RE.sub(lambda m: f"{m.group(1)} {_REDACTED}", cooked)
    cooked = _JSON_SECRET_RE.sub(lambda m: f"{m.group(1)}{_REDACTED}{m.group(2)}", cooked)
    cooked = _FORM_SECRET_RE.sub(lambda m: f"{m.group(1)}={_REDACTED}", cooked)
    cooked = _QUERY_SECRET_RE.sub(lambda m: f"{m.group(1)}{_REDACTED}", cooked)
    return cooked


def snippet(text, limit: int = _SNIPPET_LIMIT) -> str:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    cooked = redact_sensitive_text(text)
    if len(cooked) > limit:
        return cooked[:limit]
    return cooked


class RSCError(Exception):
    """Base class for every error raised by the client."""

    def __init__(self, message: str = "", *, operation: str = "", **details):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.details = {k: v for k, v in details.items() if v is not None and v != ""}

    def wrap(self, operation: str, **details):
        """
        Return a copy of this error annotated with the calling operation and
        identifying values. The innermost operation is kept in the message.
        """
        clone = copy.copy(self)
        if self.operation:
            clone.message = f"{self._prefix()}: {self.message}"
        merged = {k: v for k, v in details.items() if v is not None and v != ""}
        for k, v in self.details.items():
            merged.setdefault(k, v)
        clone.operation = operation
        clone.details = merged
        clone.args = (clone.message,)
        return clone

    def _prefix(self) -> str:
        if not self.details:
            return self.operation
        kv = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.operation}({kv})"

    def __str__(self) -> str:
        if not self.operation:
            return self.message
        return f"{self._prefix()}: {self.message}"


class ValidationError(RSCError, ValueError):
    pass


class AttemptTimeoutError(RSCError):
    """A single attempt exceeded its own deadline."""


class ProtocolError(RSCError):
    """Empty, non-JSON or otherwise malformed response."""


class TransportError(RSCError):
    """The request never produced a response (connection refused, TLS, DNS)."""


class ApiRequestError(RSCError):
    """A well-formed error payload returned by the remote service."""

    def __init__(
        self,
        message: str = "",
        *,
        code=None,
        trace_id: str = "",
        status_code: int | None = None,
        operation: str = "",
        **details,
    ):
        super().__init__(message, operation=operation, **details)
        self.code = code
        self.trace_id = trace_id
        self.status_code = status_code


class NotFoundError(RSCError):
    pass


class NotUniqueError(RSCError):
    pass


class JobFailedError(RSCError):
    def __init__(self, message: str = "", *, job_id=None, state=None, operation: str = "", **details):
        super().__init__(message, operation=operation, job_id=job_id, state=_state_value(state), **details)
        self.job_id = job_id
        self.state = state


class CanceledError(RSCError):
    """The caller gave up: its context was canceled."""


class DeadlineExceededError(CanceledError):
    """The caller gave up: its context deadline passed."""


def _state_value(state):
    return getattr(state, "value", state)


def _error_message(message, code=None, trace_id: str = "") -> str:
    extras = []
    if code not in (None, "", 0):
        extras.append(f"code: {code}")
    if trace_id:
        extras.append(f"traceId: {trace_id}")
    if extras:
        return f"{message} ({', '.join(extras)})"
    return str(message)


def parse_error_body(payload, *, status_code: int | None = None) -> ApiRequestError | None:
    """
    Recognize the error shapes returned by the token and GraphQL endpoints:

      - {"error": "invalid_client", "error_description": "..."}
      - {"error": {"code": ..., "message": "..."}}
      - {"code": 16, "message": "...", "traceId": "..."}
      - {"errors": [{"message": "...", "extensions": {"code": 403, "trace": {...}}}]}

    Returns None when the payload does not describe an error.
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (TypeError, ValueError):
            return None
    if not isinstance(payload, dict):
        return None

    err = payload.get("error")
    if isinstance(err, dict):
        code = err.get("code")
        message = err.get("message") or err.get("description") or ""
        if code or message:
            return ApiRequestError(
                _error_message(message or "remote error", code),
                code=code,
                status_code=status_code,
            )
    elif err:
        description = payload.get("error_description") or payload.get("message") or ""
        message = f"{err}: {description}" if description else str(err)
        return ApiRequestError(message, code=err, status_code=status_code)

    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
        extensions = first.get("extensions") or {}
        code = extensions.get("code")
        trace_id = str((extensions.get("trace") or {}).get("traceId") or "")
        message = first.get("message") or "unknown GraphQL error"
        return ApiRequestError(
            _error_message(message, code, trace_id),
            code=code,
            trace_id=trace_id,
            status_code=status_code,
        )

    code = payload.get("code")
    message = payload.get("message")
    if code or message:
        trace_id = str(payload.get("traceId") or payload.get("trace_id") or "")
        return ApiRequestError(
            _error_message(message or "remote error", code, trace_id),
            code=code,
            trace_id=trace_id,
            status_code=status_code,
        )

    return None
