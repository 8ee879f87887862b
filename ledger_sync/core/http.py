from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from ledger_sync.core.config import Settings, get_settings


class RetryableHTTPException(Exception):
    def __init__(self, response: httpx.Response, retry_after: Optional[float] = None):
        self.response = response
        self.retry_after = retry_after
        super().__init__(f"Retryable HTTP error: {response.status_code}")


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        pass
    try:
        retry_time = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if retry_time.tzinfo is None:
        retry_time = retry_time.replace(tzinfo=timezone.utc)
    delta = (retry_time - datetime.now(timezone.utc)).total_seconds()
    return max(delta, 0.0)


def _calculate_wait(settings: Settings, retry_state: RetryCallState) -> float:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RetryableHTTPException) and exc.retry_after is not None:
            return min(exc.retry_after, settings.retry_max_wait_seconds)
    attempt = retry_state.attempt_number
    return min(settings.retry_max_wait_seconds, 2 ** (attempt - 1))


def _should_retry(response: httpx.Response) -> bool:
    return response.status_code == 429 or 500 <= response.status_code < 600


def get_async_client(settings: Settings | None = None) -> httpx.AsyncClient:
    settings = settings or get_settings()
    timeout = httpx.Timeout(settings.http_timeout_seconds)
    return httpx.AsyncClient(timeout=timeout)


async def request_with_retry_and_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    settings: Settings | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying throttled and 5xx responses.

    The last retryable response is returned once attempts are exhausted so the
    caller can report the upstream status and body.
    """
    settings = settings or get_settings()

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.retry_max_attempts),
            retry=retry_if_exception_type(RetryableHTTPException),
            wait=lambda retry_state: _calculate_wait(settings, retry_state),
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, **kwargs)
                if _should_retry(response):
                    raise RetryableHTTPException(response, _parse_retry_after(response))
                return response
    except RetryableHTTPException as exc:
        return exc.response
    raise RuntimeError("retry loop exited without a response")
