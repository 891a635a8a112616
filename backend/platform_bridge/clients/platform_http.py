"""
Outbound HTTP for every platform adapter.

This is the single place that knows HTTP 429 semantics:
- every call waits for a token from the adapter's rate limiter first
- 429 -> wait for Retry-After (or the configured minimum delay) and
  retry exactly once; a second 429 raises RateLimitError
- 401/403 -> AuthenticationError
- any other 4xx/5xx -> PlatformAPIError carrying the platform's message
  (5xx is retryable by the caller's policy, never retried here)
- timeouts and connection failures -> NetworkError

Every request carries an explicit httpx timeout.
Version: 1.0.0
"""
import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from platform_bridge.core.exceptions import (
    AuthenticationError,
    NetworkError,
    PlatformAPIError,
    RateLimitError,
)

logger = logging.getLogger("platform_http")

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY_DELAY = 1.0
MAX_RETRY_AFTER = 300.0


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as delta-seconds or HTTP-date; None when absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def extract_error_message(response: httpx.Response) -> str:
    """Best-effort extraction of the platform's own error text."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or response.reason_phrase or "").strip()[:500]

    if isinstance(body, list) and body:
        body = body[0]
    if not isinstance(body, dict):
        return str(body)[:500]

    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            return str(first.get("message") or first.get("longMessage") or first)
        return str(first)
    if isinstance(errors, dict):
        return "; ".join(f"{k}: {v}" for k, v in errors.items())
    if isinstance(errors, str):
        return errors

    for key in ("message", "error_description", "title", "detail", "error"):
        if body.get(key):
            return str(body[key])
    return str(body)[:500]


def json_body(response: httpx.Response) -> Any:
    """Parsed JSON body, or {} for empty / non-JSON responses (204, HTML error pages)."""
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        logger.warning("non-json response status=%s url=%s", response.status_code, response.request.url)
        return {}


class PlatformHttpClient:
    """Rate-limited, deadline-bound HTTP transport for one adapter instance."""

    def __init__(
        self,
        platform: str,
        base_url: str = "",
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        limiter=None,
        default_retry_delay: float = DEFAULT_RETRY_DELAY,
        max_rate_limit_retries: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.platform = platform
        self.base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._limiter = limiter
        self._default_retry_delay = default_retry_delay
        self._max_rate_limit_retries = max_rate_limit_retries
        self._transport = transport
        self._sleep = sleep

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _retry_delay(self, response: httpx.Response) -> float:
        delay = parse_retry_after(response.headers.get("Retry-After"))
        if delay is None:
            return self._default_retry_delay
        return min(delay, MAX_RETRY_AFTER)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(
                f"{self.platform} request timed out after {self._timeout}s: {method} {url}",
                platform=self.platform,
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{self.platform} connection failed: {method} {url}: {exc}",
                platform=self.platform,
            ) from exc

    def _raise_for_status(self, method: str, path: str, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        message = extract_error_message(response)
        logger.info(
            "%s error method=%s path=%s status=%s detail=%s",
            self.platform, method, path, response.status_code, message,
        )
        if response.status_code in (401, 403):
            raise AuthenticationError(f"{self.platform} rejected credentials: {message}", platform=self.platform)
        body = json_body(response) if response.content else None
        raise PlatformAPIError(self.platform, message, status_code=response.status_code, body=body)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Any = None,
    ) -> httpx.Response:
        url = self._url(path)
        merged_headers: Dict[str, str] = {**self._headers, **(headers or {})}
        kwargs: Dict[str, Any] = {"params": params, "headers": merged_headers}
        if json is not None:
            kwargs["json"] = json
        if data is not None:
            kwargs["data"] = data
        if auth is not None:
            kwargs["auth"] = auth

        logger.info("%s request method=%s path=%s params=%s", self.platform, method, path, params)

        retries = 0
        while True:
            if self._limiter is not None:
                await self._limiter.acquire()
            response = await self._send(method, url, **kwargs)
            if response.status_code != 429:
                break
            delay = self._retry_delay(response)
            if retries >= self._max_rate_limit_retries:
                logger.warning("%s rate limit exhausted method=%s path=%s", self.platform, method, path)
                raise RateLimitError(self.platform, retry_after=delay)
            logger.warning(
                "%s rate limited method=%s path=%s retry_in=%.2fs", self.platform, method, path, delay
            )
            await self._sleep(delay)
            retries += 1

        self._raise_for_status(method, path, response)
        return response

    async def request_json(self, method: str, path: str, **kwargs) -> Any:
        response = await self.request(method, path, **kwargs)
        return json_body(response)
