"""Resilient async HTTP client: hard timeouts, bounded retries, backoff with jitter."""

import asyncio
import logging
import random
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt

from ..exceptions import AppError, Err, ErrorCategory, Ok, Result
from ..monitoring_metrics import PROVIDER_ERRORS, PROVIDER_LATENCY, PROVIDER_REQUESTS, PROVIDER_RETRIES

logger = logging.getLogger(__name__)

RETRY_STATUSES = {408, 429}
Sleep = Callable[[float], Awaitable[None]]


def is_retryable_status(status: int) -> bool:
    return status in RETRY_STATUSES or status >= 500


def parse_retry_after(value: Optional[str], now: float) -> Optional[float]:
    """
    Parse a Retry-After header into seconds to wait.

    Args:
        value: Header value, either delta-seconds or an HTTP-date
        now: Current wall-clock time in epoch seconds

    Returns:
        Non-negative delay in seconds, or None when absent or unparseable
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, when.timestamp() - now)


def _should_retry(result: Result) -> bool:
    return isinstance(result, Err) and result.retryable


class ResilientClient:
    """
    JSON-over-HTTPS client shared by every upstream provider.

    Each attempt returns Ok(payload) or Err(AppError); the retry loop only looks
    at the Err's retryable flag. Retryable: HTTP 408/429/5xx, timeouts and httpx request errors
    (transport, decoding, redirects). Everything else (other 4xx, invalid
    URLs, invalid JSON) fails immediately.
    """

    def __init__(self, provider: str, base_url: str, error_code: str,
                 timeout: float = 15.0, retries: int = 3, backoff_base: float = 0.3,
                 http: Optional[httpx.AsyncClient] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 headers: Optional[Dict[str, str]] = None,
                 sleep: Sleep = asyncio.sleep,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        """
        Args:
            provider: Short provider label for logs and metrics
            base_url: Prefix for relative request paths
            error_code: Code stamped on surfaced request failures
            timeout: Hard per-attempt timeout in seconds
            retries: Retries after the first attempt
            backoff_base: Base delay in seconds, doubled per attempt
            http: Shared AsyncClient; when omitted one is created and owned
            transport: Transport for an owned client (tests use httpx.MockTransport)
            sleep: Awaitable sleep used between attempts
            clock: Wall clock in epoch seconds, used for HTTP-date Retry-After
            rng: Random source for jitter
        """
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.error_code = error_code
        self.timeout = timeout
        self.retries = max(0, retries)
        self.backoff_base = backoff_base
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
            headers=headers,
        )
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def fetch_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON payload, raising AppError once the retry budget is spent."""
        result = await self.request("GET", path, params=params)
        return result.unwrap()

    async def fetch_text(self, url: str) -> str:
        """GET a page body as text (HTML, plain text) with the same retry policy."""
        result = await self.request("GET", url, as_text=True)
        return result.unwrap()

    async def post_json(self, path: str, body: Dict[str, Any],
                        headers: Optional[Dict[str, str]] = None) -> Any:
        result = await self.request("POST", path, json=body, headers=headers)
        return result.unwrap()

    async def request(self, method: str, path: str, *,
                      params: Optional[Dict[str, Any]] = None,
                      json: Optional[Dict[str, Any]] = None,
                      headers: Optional[Dict[str, str]] = None,
                      as_text: bool = False) -> Result:
        """Run one logical request with retries and return Ok(payload) or the last Err."""
        url = self.build_url(path)
        attempts = 0

        async def attempt() -> Result:
            nonlocal attempts
            attempts += 1
            return await self._attempt(method, url, params, json, headers, as_text)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=self._wait,
            retry=retry_if_result(_should_retry),
            sleep=self._sleep_before_retry,
            before_sleep=self._log_retry,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        result = await retrying(attempt)

        if isinstance(result, Err):
            result.error.details["attempts"] = attempts
            PROVIDER_ERRORS.labels(provider=self.provider, category=result.error.category.value).inc()
            logger.warning(
                f"{self.provider} {method} {url} failed after {attempts} attempt(s): "
                f"{result.error.message}"
            )
        return result

    async def _attempt(self, method: str, url: str,
                       params: Optional[Dict[str, Any]],
                       json: Optional[Dict[str, Any]],
                       headers: Optional[Dict[str, str]],
                       as_text: bool = False) -> Result:
        PROVIDER_REQUESTS.labels(provider=self.provider).inc()
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._http.request(method, url, params=params, json=json, headers=headers),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return self._failure(f"{self.provider} request timed out after {self.timeout}s",
                                 url, status=None, retryable=True)
        except httpx.InvalidURL as e:
            return self._failure(f"{self.provider} invalid URL: {e}", url, status=None, retryable=False)
        except httpx.HTTPError as e:
            # transport, decoding and redirect failures alike
            return self._failure(f"{self.provider} request failed: {e.__class__.__name__}: {e}",
                                 url, status=None, retryable=True)
        finally:
            PROVIDER_LATENCY.labels(provider=self.provider).observe(time.perf_counter() - started)

        status = response.status_code
        if not response.is_success:
            retryable = is_retryable_status(status)
            retry_after = None
            if retryable:
                retry_after = parse_retry_after(response.headers.get("retry-after"), self._clock())
            return self._failure(f"{self.provider} responded with HTTP {status}",
                                 url, status=status, retryable=retryable, retry_after=retry_after)

        if as_text:
            return Ok(response.text)
        try:
            return Ok(response.json())
        except ValueError:
            return self._failure(f"{self.provider} returned invalid JSON",
                                 url, status=status, retryable=False)

    def _failure(self, message: str, url: str, status: Optional[int], retryable: bool,
                 retry_after: Optional[float] = None) -> Err:
        category = ErrorCategory.RATE_LIMIT if status == 429 else ErrorCategory.PROVIDER
        error = AppError(
            code=self.error_code,
            message=message,
            category=category,
            retryable=retryable,
            details={"provider": self.provider, "url": url, "status": status},
        )
        return Err(error, meta={"retry_after": retry_after})

    def _wait(self, retry_state: RetryCallState) -> float:
        """Server hint when present, else exponential backoff plus jitter."""
        outcome = retry_state.outcome.result()
        retry_after = outcome.meta.get("retry_after") if isinstance(outcome, Err) else None
        if retry_after is not None:
            return retry_after
        attempt = retry_state.attempt_number - 1
        return self.backoff_base * (2 ** attempt) + self._rng.uniform(0, self.backoff_base)

    async def _sleep_before_retry(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        PROVIDER_RETRIES.labels(provider=self.provider).inc()
        outcome = retry_state.outcome.result()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.debug(
            f"Retrying {self.provider} in {delay:.2f}s "
            f"(attempt {retry_state.attempt_number}/{self.retries + 1}): {outcome.error.message}"
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
