import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

import jwt
import requests
from requests.auth import AuthBase

from rsc_context import Context
from rsc_errors import (
    ApiRequestError,
    AttemptTimeoutError,
    DeadlineExceededError,
    ProtocolError,
    RSCError,
    TransportError,
    parse_error_body,
    snippet,
)

_LOG = logging.getLogger("rsc.token")

# Per attempt timeout, in seconds.
REQUEST_TIMEOUT_S = 15.0

# Attempts before giving up on timed out token requests.
REQUEST_ATTEMPTS = 3

# A token is considered stale this many seconds before its expiry.
EXPIRY_SKEW_S = 60.0


@dataclass(frozen=True)
class Token:
    """
    A bearer token. The signature is not verified; trust is delegated to the
    issuer and the TLS channel.
    """

    raw: str = field(repr=False)
    claims: dict = field(default_factory=dict, repr=False, compare=False)
    expires_at: float | None = None

    @classmethod
    def from_jwt(cls, text: str):
        try:
            claims = jwt.decode(text, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise ProtocolError(f"failed to parse JWT token: {e}") from e
        exp = claims.get("exp")
        expires_at = float(exp) if isinstance(exp, (int, float)) and not isinstance(exp, bool) else None
        return cls(raw=text, claims=claims, expires_at=expires_at)

    def expired(self, now: float | None = None, skew: float = EXPIRY_SKEW_S) -> bool:
        # Tokens without an expiry are never trusted.
        if self.expires_at is None:
            return True
        if now is None:
            now = time.time()
        return self.expires_at <= now + skew

    def auth_header(self) -> str:
        return f"Bearer {self.raw}"


def _request_token_once(session, token_url: str, body: bytes, timeout: float) -> bytes:
    try:
        resp = session.post(
            token_url,
            data=body,
            headers={
                "Content-Type": "application/json; charset=UTF-8",
                "Accept": "application/json",
            },
            timeout=timeout,
        )
    except requests.exceptions.Timeout as e:
        raise AttemptTimeoutError(f"token request timeout after {timeout:g}s") from e
    except requests.exceptions.RequestException as e:
        raise TransportError(f"failed to request token: {snippet(e)}") from e

    status = int(getattr(resp, "status_code", 0) or 0)
    content = resp.content or b""

    # No body: for 200 the token is missing, for an error there are no details.
    if not content:
        raise ProtocolError(f"token response has no body (status code {status})", status_code=status)

    content_type = str(resp.headers.get("Content-Type", "") or "")
    if not content_type.lower().startswith("application/json"):
        raise ProtocolError(
            f"token response has Content-Type {content_type or '<none>'} "
            f"(status code {status}): {snippet(content)!r}",
            status_code=status,
        )

    try:
        payload = json.loads(content)
    except ValueError as e:
        raise ProtocolError(
            f"failed to unmarshal token response body (status code {status}): {e}",
            status_code=status,
        ) from e

    remote_err = parse_error_body(payload, status_code=status)
    if remote_err is not None:
        remote_err.message = (
            f"token response body is an error (status code {status}): {snippet(remote_err.message)}"
        )
        remote_err.args = (remote_err.message,)
        raise remote_err
    if status != 200:
        raise ApiRequestError(
            f"token response has status code {status}: {snippet(content)!r}", status_code=status
        )
    if not isinstance(payload, dict):
        raise ProtocolError("token response body is not a JSON object")

    return content


def request_token(
    ctx: Context,
    session,
    token_url: str,
    body: bytes,
    *,
    logger: logging.Logger | None = None,
    attempts: int = REQUEST_ATTEMPTS,
    attempt_timeout_s: float = REQUEST_TIMEOUT_S,
) -> bytes:
    """
    Request a token, retrying only attempts that time out. Every other failure
    is returned immediately.
    """
    log = logger or _LOG
    last_err: RSCError | None = None
    for attempt in range(1, attempts + 1):
        ctx.raise_if_done()
        timeout = ctx.bounded(attempt_timeout_s)
        if timeout <= 0:
            raise DeadlineExceededError("context deadline exceeded")

        log.debug("Acquire access token (attempt: %d)", attempt)
        try:
            return _request_token_once(session, token_url, body, timeout)
        except AttemptTimeoutError as e:
            last_err = e
            log.debug("Token request timed out (attempt: %d): %s", attempt, e)
        except RSCError as e:
            raise e.wrap("acquire access token", attempt=attempt) from e

    ctx.raise_if_done()
    raise AttemptTimeoutError(
        f"failed to acquire access token after {attempts} attempts: {last_err}",
        operation="acquire access token",
    )


class Source(Protocol):
    def token(self, ctx: Context) -> Token:
        ...


class ServiceAccountSource:
    """Obtains tokens with the OAuth client credentials grant."""

    def __init__(self, session, account, logger: logging.Logger | None = None):
        self._session = session
        self._account = account
        self._log = logger or _LOG

    def token(self, ctx: Context) -> Token:
        body = json.dumps(
            {
                "grant_type": "client_credentials",
                "client_id": self._account.client_id,
                "client_secret": self._account.client_secret,
            }
        ).encode()
        try:
            resp = request_token(ctx, self._session, self._account.token_url, body, logger=self._log)
        except RSCError as e:
            raise e.wrap("service account token", client_id=self._account.client_id) from e

        payload = json.loads(resp)
        if payload.get("client_id") != self._account.client_id:
            raise ProtocolError("invalid client id", operation="service account token")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProtocolError("invalid token", operation="service account token")
        return Token.from_jwt(access_token)


class UserSource:
    """Obtains tokens for a local user with username and password."""

    def __init__(self, session, account, logger: logging.Logger | None = None):
        self._session = session
        self._account = account
        self._log = logger or _LOG

    def token(self, ctx: Context) -> Token:
        body = json.dumps(
            {"username": self._account.username, "password": self._account.password}
        ).encode()
        try:
            resp = request_token(ctx, self._session, self._account.token_url, body, logger=self._log)
        except RSCError as e:
            raise e.wrap("local user token", username=self._account.username) from e

        access_token = json.loads(resp).get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProtocolError("invalid token", operation="local user token")
        return Token.from_jwt(access_token)


class TokenSource:
    """
    Caches a token and refreshes it through `source` once it is within
    EXPIRY_SKEW_S of expiring. Acquisitions serialize on one lock held across
    the expiry check and any refresh.
    """

    def __init__(self, source: Source, *, clock=None, logger: logging.Logger | None = None):
        self._source = source
        self._clock = clock or time.time
        self._log = logger or _LOG
        self._lock = threading.Lock()
        self._token: Token | None = None

    def acquire(self, ctx: Context) -> Token:
        remaining = ctx.remaining()
        if not self._lock.acquire(timeout=-1 if remaining is None else remaining):
            ctx.raise_if_done()
            raise DeadlineExceededError("timed out waiting for token lock")
        try:
            if self._token is not None and not self._token.expired(self._clock()):
                return self._token
            self._log.debug("Refreshing access token")
            token = self._source.token(ctx)
            self._token = token
            return token
        finally:
            self._lock.release()

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


class BearerAuth(AuthBase):
    """requests auth hook presenting the shared token on every request."""

    def __init__(self, token_source: TokenSource, ctx: Context | None = None):
        self.token_source = token_source
        self.ctx = ctx or Context.background()

    def __call__(self, r):
        r.headers["Authorization"] = self.token_source.acquire(self.ctx).auth_header()
        return r
