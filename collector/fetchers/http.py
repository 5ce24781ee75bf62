"""
Outbound HTTP for fetchers.

Every attempt, retries included, first waits on the source type's shared
token bucket. Transient failures (network errors, timeouts, 5xx, 429) are
retried with exponential back-off; a 429 honours Retry-After. Anything else
that is not 2xx fails immediately.
"""

from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from collector.config import Settings
from collector.errors import PermanentUpstreamError, TransientUpstreamError
from collector.ratelimit import TokenBucket
from collector.utils.logging import get_logger

logger = get_logger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_MAX_RETRY_AFTER_SECONDS = 60.0


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class _RetryAfterOrExponential:
    """Sleep for the server's Retry-After when given, else back off exponentially."""

    def __init__(self, base: float):
        self._exponential = wait_exponential(multiplier=base, min=base, max=30)

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientUpstreamError) and exc.retry_after is not None:
            return min(exc.retry_after, _MAX_RETRY_AFTER_SECONDS)
        return self._exponential(retry_state)


class UpstreamClient:
    """
    Thin wrapper over httpx.AsyncClient bound to one rate limiter.

    Use as an async context manager, one per fetch.
    """

    def __init__(
        self,
        limiter: TokenBucket,
        settings: Settings,
        name: str,
        headers: dict[str, str] | None = None,
    ):
        self.limiter = limiter
        self.settings = settings
        self.name = name
        self._headers = {"User-Agent": settings.http_user_agent, **(headers or {})}
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "UpstreamClient":
        self._client = httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds,
            headers=self._headers,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """GET with rate limiting and retries; returns a 2xx response."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.http_max_attempts),
            wait=_RetryAfterOrExponential(self.settings.http_backoff_seconds),
            retry=retry_if_exception_type(TransientUpstreamError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                n = attempt.retry_state.attempt_number
                if n > 1:
                    logger.info("upstream_retry", upstream=self.name, url=url, attempt=n)
                return await self._get_once(url, params, headers)
        raise AssertionError("unreachable")  # pragma: no cover

    async def get_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = await self.get(url, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentUpstreamError(
                f"{self.name} returned malformed JSON from {url}: {exc}",
                status_code=response.status_code,
            ) from exc

    async def get_text(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> str:
        response = await self.get(url, params=params, headers=headers)
        return response.text

    async def _get_once(
        self,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("UpstreamClient used outside of its context manager")

        await self.limiter.wait()
        try:
            response = await self._client.get(url, params=params, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientUpstreamError(f"{self.name} request failed: {exc!r}") from exc

        if 200 <= response.status_code < 300:
            return response

        body = response.text[:200]
        if response.status_code in _RETRYABLE_STATUS:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "upstream_transient_error",
                upstream=self.name,
                status_code=response.status_code,
                retry_after=retry_after,
            )
            if response.status_code == 429:
                message = f"{self.name} rate limited (429), retry after: {retry_after}"
            else:
                message = f"{self.name} returned {response.status_code}: {body}"
            raise TransientUpstreamError(
                message,
                status_code=response.status_code,
                retry_after=retry_after,
            )

        raise PermanentUpstreamError(
            f"{self.name} returned {response.status_code}: {body}",
            status_code=response.status_code,
        )
