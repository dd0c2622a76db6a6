"""HTTP client shared by the connectors of one run.

``ApiClient`` wraps one ``httpx.Client`` (connection pool, timeouts,
auth headers, User-Agent) and turns every failure into the sync error
taxonomy, so the retry ladder and the runner never look at status codes:

    429, or 403 with an exhausted rate-limit budget -> RateLimitError
    408, 5xx, timeouts, connection errors            -> TransientError
    401, 403                                         -> PermissionDeniedError
    410 on a token-bearing request                   -> TokenExpiredError
    other 4xx                                        -> SyncError
    body that is not JSON                            -> MalformedResponseError

The client does not retry by itself; callers run requests under
``call_with_retry`` (the paginated fetcher and the job poller do).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx
import requests_toolbelt
import tenacity
from requests_toolbelt.utils.user_agent import user_agent

from syncs.lib.env import expand_env_vars
from syncs.lib.errors import (
    ConfigurationError,
    MalformedResponseError,
    PermissionDeniedError,
    RateLimitError,
    SyncError,
    TokenExpiredError,
    TransientError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ApiClient",
    "AuthConfig",
    "AuthType",
    "build_auth_headers",
    "classify_response",
    "parse_retry_after",
]

TRANSIENT_STATUS_CODES = {408, 500, 502, 503, 504}

_USER_AGENT = user_agent(
    "sync-foundry",
    "0.1.0",
    extras=[
        ("httpx", getattr(httpx, "__version__", "unknown")),
        ("tenacity", getattr(tenacity, "__version__", "unknown")),
        ("requests-toolbelt", getattr(requests_toolbelt, "__version__", "unknown")),
    ],
)


class AuthType(Enum):
    """Supported API authentication methods."""

    NONE = "none"
    BEARER = "bearer"
    API_KEY = "api_key"
    BASIC = "basic"


@dataclass
class AuthConfig:
    """Static API credentials.

    All credential fields support ${VAR_NAME} expansion; keep secrets in
    the environment or a .env file.

    Examples:
        AuthConfig(auth_type=AuthType.BEARER, token="${GITHUB_TOKEN}")
        AuthConfig(auth_type=AuthType.API_KEY, api_key="${CIRCLECI_TOKEN}", api_key_header="Circle-Token")
    """

    auth_type: AuthType = AuthType.NONE
    token: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: str = "X-API-Key"
    username: Optional[str] = None
    password: Optional[str] = None

    def __post_init__(self) -> None:
        if self.auth_type == AuthType.BEARER and not self.token:
            raise ConfigurationError("Bearer authentication requires 'token' to be set", field="token")
        if self.auth_type == AuthType.API_KEY and not self.api_key:
            raise ConfigurationError("API key authentication requires 'api_key' to be set", field="api_key")
        if self.auth_type == AuthType.BASIC and not (self.username and self.password):
            raise ConfigurationError(
                "Basic authentication requires both 'username' and 'password'",
                field="username",
            )


def build_auth_headers(
    config: Optional[AuthConfig],
    *,
    extra_headers: Optional[Dict[str, str]] = None,
) -> Tuple[Dict[str, str], Optional[Tuple[str, str]]]:
    """Build HTTP headers and the basic-auth tuple from ``config``.

    Raises:
        ConfigurationError: a referenced environment variable is unset or empty
    """
    headers: Dict[str, str] = {"Accept": "application/json", "User-Agent": _USER_AGENT}
    auth_tuple: Optional[Tuple[str, str]] = None

    if config is None or config.auth_type == AuthType.NONE:
        logger.debug("No authentication configured")

    elif config.auth_type == AuthType.BEARER:
        token = expand_env_vars(config.token or "", strict=True)
        if not token:
            raise ConfigurationError("Bearer token resolved to empty string", field="token")
        headers["Authorization"] = f"Bearer {token}"

    elif config.auth_type == AuthType.API_KEY:
        api_key = expand_env_vars(config.api_key or "", strict=True)
        if not api_key:
            raise ConfigurationError("API key resolved to empty string", field="api_key")
        headers[config.api_key_header] = api_key

    elif config.auth_type == AuthType.BASIC:
        username = expand_env_vars(config.username or "", strict=True)
        password = expand_env_vars(config.password or "", strict=True)
        if not (username and password):
            raise ConfigurationError("Basic auth username or password resolved to empty string", field="username")
        auth_tuple = (username, password)

    if extra_headers:
        for key, value in extra_headers.items():
            headers[key] = expand_env_vars(value, strict=False)

    return headers, auth_tuple


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable Retry-After header: %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def _rate_limit_reset(response: httpx.Response) -> Optional[float]:
    """Seconds until an exhausted X-RateLimit budget resets, if the response says so."""
    if response.headers.get("X-RateLimit-Remaining") != "0":
        return None
    reset = response.headers.get("X-RateLimit-Reset")
    if not reset:
        return None
    try:
        reset_at = float(reset)
    except ValueError:
        return None
    return max(reset_at - datetime.now(timezone.utc).timestamp(), 0.0)


def _describe(response: httpx.Response) -> str:
    try:
        request = response.request
    except RuntimeError:
        return "response"
    return f"{request.method} {request.url}"


def classify_response(
    response: httpx.Response,
    *,
    token_bearing: bool = False,
    partition: Optional[str] = None,
) -> None:
    """Raise the sync error matching an unsuccessful response; no-op on 2xx/3xx."""
    status = response.status_code
    if status < 400:
        return

    message = f"{_describe(response)} returned {status}"

    if status == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        raise RateLimitError(message, retry_after=retry_after, partition=partition)

    if status == 403:
        reset_in = _rate_limit_reset(response)
        if reset_in is not None:
            raise RateLimitError(message, retry_after=reset_in, status_code=403, partition=partition)

    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientError(message, status_code=status, partition=partition)

    if status in (401, 403):
        raise PermissionDeniedError(message, status_code=status, partition=partition)

    if status == 410 and token_bearing:
        raise TokenExpiredError(f"Change token rejected: {message}", partition=partition)

    raise SyncError(message, partition=partition, details={"status_code": status, "body": response.text[:200]})


class ApiClient:
    """One pooled HTTP client per run, passed explicitly to every connector.

    Example:
        with ApiClient("https://api.github.com", auth=AuthConfig(AuthType.BEARER, token="${GITHUB_TOKEN}")) as client:
            issues = GithubIssuesSource(client, ...)
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth: Optional[AuthConfig] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        max_connections: int = 10,
        max_keepalive_connections: int = 5,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        request_headers, auth_tuple = build_auth_headers(auth, extra_headers=headers)
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
        )
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=request_headers,
            auth=auth_tuple,
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        token_bearing: bool = False,
        partition: Optional[str] = None,
    ) -> httpx.Response:
        """Send one request; raise a sync error for anything but success."""
        logger.debug("%s %s params=%s", method, path, params)
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} {path} timed out", cause=e, partition=partition) from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}", cause=e, partition=partition) from e

        classify_response(response, token_bearing=token_bearing, partition=partition)
        return response

    def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self.request(method, path, **kwargs)
        return self.decode(response, partition=kwargs.get("partition"))

    def get_json(self, path: str, **kwargs: Any) -> Any:
        return self.request_json("GET", path, **kwargs)

    def post_json(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return self.request_json("POST", path, json=body, **kwargs)

    @staticmethod
    def decode(response: httpx.Response, *, partition: Optional[str] = None) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Response from {_describe(response)} is not valid JSON",
                payload=response.text,
                partition=partition,
            ) from e

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
