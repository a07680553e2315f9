import json
import logging
import re

import requests

from rsc_context import Context
from rsc_errors import (
    ApiRequestError,
    AttemptTimeoutError,
    DeadlineExceededError,
    ProtocolError,
    TransportError,
    parse_error_body,
    redact_sensitive_text,
    snippet,
)
from rsc_token import BearerAuth, TokenSource

_LOG = logging.getLogger("rsc.graphql")

_DEFAULT_HTTP_TIMEOUT = (10.0, 60.0)
_QUERY_NAME_RE = re.compile(r"^\s*(?:query|mutation)\s+([A-Za-z_][A-Za-z0-9_]*)")


def query_name(query: str) -> str:
    """Operation name of a GraphQL document, e.g. "RscTaskchainStatus"."""
    m = _QUERY_NAME_RE.match(query or "")
    return m.group(1) if m else ""


def result(buf: bytes, operation: str = ""):
    """Unwrap the `{"data": {"result": ...}}` envelope."""
    try:
        payload = json.loads(buf)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"failed to unmarshal response: {e}", operation=operation) from e
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict) or "result" not in data:
        raise ProtocolError(
            f"response has no data.result: {snippet(buf)!r}", operation=operation
        )
    return data["result"]


class GraphQLClient:
    """
    Sends GraphQL documents to the control plane. Each request carries a
    bearer token obtained from the shared TokenSource.
    """

    def __init__(
        self,
        api_url: str,
        token_source: TokenSource,
        *,
        session=None,
        http_timeout: tuple[float, float] = _DEFAULT_HTTP_TIMEOUT,
        logger: logging.Logger | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.gql_url = f"{self.api_url}/graphql"
        self._tokens = token_source
        self._session = session if session is not None else requests.Session()
        self._http_timeout = http_timeout
        self._log = logger or _LOG

    @property
    def log(self) -> logging.Logger:
        return self._log

    def _timeout(self, ctx: Context):
        connect_s, read_s = self._http_timeout
        remaining = ctx.remaining()
        if remaining is None:
            return (connect_s, read_s)
        if remaining <= 0:
            raise DeadlineExceededError("context deadline exceeded")
        return (min(connect_s, remaining), min(read_s, remaining))

    def request(self, ctx: Context, query: str, variables=None) -> bytes:
        operation = query_name(query)
        body = {"query": query}
        if variables:
            body["variables"] = variables
        if operation:
            body["operationName"] = operation
        data = json.dumps(body, default=str).encode()

        resp = self._post(ctx, data, operation)
        # A token revoked server side is only noticed here; refresh once.
        if int(getattr(resp, "status_code", 0) or 0) == 401:
            self._log.debug("%s: unauthorized, refreshing access token", operation)
            self._tokens.invalidate()
            resp = self._post(ctx, data, operation)
        return self._check_response(resp, operation)

    def _post(self, ctx: Context, data: bytes, operation: str):
        ctx.raise_if_done()
        try:
            return self._session.post(
                self.gql_url,
                data=data,
                headers={
                    "Content-Type": "application/json; charset=UTF-8",
                    "Accept": "application/json",
                },
                auth=BearerAuth(self._tokens, ctx),
                timeout=self._timeout(ctx),
            )
        except requests.exceptions.Timeout as e:
            # The HTTP timeout is bounded by the context deadline.
            ctx.raise_if_done()
            raise AttemptTimeoutError("request timed out", operation=operation) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"request failed: {snippet(e)}", operation=operation) from e

    def _check_response(self, resp, operation: str) -> bytes:
        status = int(getattr(resp, "status_code", 0) or 0)
        content = resp.content or b""

        if not content:
            if status == 200:
                raise ProtocolError("no body", operation=operation)
            raise ApiRequestError(f"status code {status}", status_code=status, operation=operation)

        content_type = str(resp.headers.get("Content-Type", "") or "")
        if not content_type.lower().startswith("application/json"):
            if status == 200:
                raise ProtocolError(f"wrong content-type: {content_type}", operation=operation)
            raise ApiRequestError(
                f"status code {status}: {snippet(content)!r}", status_code=status, operation=operation
            )

        try:
            payload = json.loads(content)
        except ValueError as e:
            raise ProtocolError(f"failed to unmarshal response: {e}", operation=operation) from e

        remote_err = parse_error_body(payload, status_code=status)
        if remote_err is not None:
            remote_err.operation = operation
            raise remote_err
        if status != 200:
            raise ApiRequestError(f"status code {status}", status_code=status, operation=operation)

        self._log.debug("%s: %s", operation, redact_sensitive_text(content.decode("utf-8", errors="replace")))
        return content
