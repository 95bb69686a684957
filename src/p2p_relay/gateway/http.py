"""Rate-limited JSON HTTP client for platform gateways."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from p2p_relay.gateway.base import (
    GatewayError,
    GatewayUnavailableError,
    RateLimitedError,
    SessionExpiredError,
)
from p2p_relay.gateway.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_RETRY_AFTER_SECONDS = 60.0
DEFAULT_USER_AGENT = "p2p-relay/0.1"

Authenticator = Callable[[], dict[str, str]]


class PlatformHttpClient:
    """httpx client wrapper that every platform call goes through.

    Each request first takes a slot from the shared :class:`RateLimiter`. A 401
    triggers ``authenticate`` (which returns fresh auth headers) and one retry.
    A 429 is retried once after ``Retry-After``. Any remaining non-success
    status becomes a :class:`GatewayError`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        limiter: RateLimiter,
        authenticate: Authenticator | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_retry_after_seconds: float = DEFAULT_MAX_RETRY_AFTER_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._limiter = limiter
        self._authenticate = authenticate
        self._max_retry_after_seconds = max_retry_after_seconds
        self._sleep = sleep
        self._authenticated = authenticate is None
        base_headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, *, json: Any = None) -> Any:
        return self.request("POST", path, json=json)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and return its decoded JSON body (``None`` when empty)."""

        if not self._authenticated:
            self._refresh_session()

        response = self._send(method, path, params=params, json=json)

        if response.status_code == httpx.codes.UNAUTHORIZED and self._authenticate is not None:
            logger.info("Session expired on %s %s, re-authenticating", method, path)
            self._refresh_session()
            response = self._send(method, path, params=params, json=json)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                raise SessionExpiredError(
                    f"{method} {path}: still unauthorized after re-authentication",
                    status_code=response.status_code,
                )

        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            delay = self._retry_after(response)
            logger.warning("Rate limited on %s %s, retrying in %.1fs", method, path, delay)
            self._sleep(delay)
            response = self._send(method, path, params=params, json=json)
            if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
                raise RateLimitedError(
                    f"{method} {path}: rate limited",
                    retry_after_seconds=self._retry_after(response),
                )

        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise SessionExpiredError(
                f"{method} {path}: unauthorized",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise GatewayError(
                f"{method} {path}: HTTP {response.status_code} {_preview(response.text)}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as error:
            raise GatewayError(
                f"{method} {path}: response is not JSON",
                status_code=response.status_code,
            ) from error

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> PlatformHttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        self._limiter.acquire(identifier=f"{method} {path}")
        try:
            return self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as error:
            logger.warning("Timeout on %s %s", method, path)
            raise GatewayUnavailableError(f"{method} {path}: timeout") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error on %s %s: %s", method, path, error)
            raise GatewayUnavailableError(f"{method} {path}: {error}") from error

    def _refresh_session(self) -> None:
        if self._authenticate is None:
            return
        try:
            auth_headers = self._authenticate()
        except GatewayError:
            raise
        except Exception as error:
            raise SessionExpiredError(f"Re-authentication failed: {error}") from error
        self._client.headers.update(auth_headers)
        self._authenticated = True

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After", "").strip()
        try:
            delay = float(raw) if raw else 1.0
        except ValueError:
            delay = 1.0
        return min(max(delay, 0.0), self._max_retry_after_seconds)


def _preview(text: str, limit: int = 200) -> str:
    collapsed = " ".join(text.split())
    return collapsed[:limit]
