"""
Retryable outbound HTTP client.

A single RetryPolicy drives every provider call: which methods may be
retried, which statuses count as transient, and how long to back off.
Each attempt runs under its own deadline and can be aborted by the
caller's cancellation signal (an ``asyncio.Event``).
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from app.core.exceptions import RequestCancelledError, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# שגיאות רשת/זמן שנחשבות חולפות
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ServiceTimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_seconds: float = 10.0
    max_retries: int = 2
    base_delay_seconds: float = 0.25
    max_delay_seconds: float = 2.0
    jitter_seconds: float = 0.15
    retry_on_statuses: frozenset[int] = field(default=DEFAULT_RETRY_STATUSES)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
            max_retries=settings.HTTP_MAX_RETRIES,
            base_delay_seconds=settings.HTTP_RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.HTTP_RETRY_MAX_DELAY_SECONDS,
            jitter_seconds=settings.HTTP_RETRY_JITTER_SECONDS,
            retry_on_statuses=frozenset(settings.retryable_status_codes),
        )

    def allows_retry(self, method: str, idempotent: bool = False) -> bool:
        return idempotent or method.upper() in SAFE_METHODS

    def backoff_seconds(
        self,
        attempt: int,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> float:
        """
        Delay before the retry that follows ``attempt`` (1-based).

        min(max_delay, base * 2^(attempt-1)) + uniform(0, jitter)
        """
        # מגבילים את החזקה כדי לא לחשב מספרים ענקיים
        exponent = min(max(attempt - 1, 0), 30)
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** exponent))
        jitter = rand(0.0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return max(0.0, delay) + jitter


class RetryableHttpClient:
    """
    httpx.AsyncClient wrapper that applies a RetryPolicy.

    - Only GET/HEAD/OPTIONS, or calls marked ``idempotent=True``, are retried.
    - A retryable status closes the streamed body before backing off.
    - When retries run out on a retryable status the last response is returned;
      when they run out on a transient error that error propagates unchanged.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        *,
        service_name: str = "provider",
        base_url: str = "",
        headers: dict[str, str] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.service_name = service_name
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(self.policy.timeout_seconds),
        )
        self._sleep = sleep
        self._rand = rand

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        idempotent: bool = False,
        cancel_event: asyncio.Event | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        method = method.upper()
        retryable = self.policy.allows_retry(method, idempotent)
        attempts = self.policy.max_retries + 1 if retryable else 1

        for attempt in range(1, attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError(self.service_name)

            is_last = attempt == attempts
            request = self._client.build_request(method, url, **kwargs)
            try:
                response, should_retry = await self._race(
                    self._attempt(request, retry_status=not is_last),
                    timeout=self.policy.timeout_seconds,
                    cancel_event=cancel_event,
                )
            except TRANSIENT_ERRORS as e:
                if is_last:
                    logger.warning(
                        f"{self.service_name} request failed after {attempt} attempt(s)",
                        extra_data={
                            "service": self.service_name,
                            "method": method,
                            "url": str(request.url.copy_with(query=None)),
                            "attempt": attempt,
                            "error": type(e).__name__,
                        },
                    )
                    raise
                await self._backoff(method, request, attempt, type(e).__name__, cancel_event)
                continue

            if should_retry:
                await self._backoff(
                    method, request, attempt, f"status {response.status_code}", cancel_event
                )
                continue

            if response.status_code in self.policy.retry_on_statuses and retryable:
                logger.warning(
                    f"{self.service_name} retries exhausted on status {response.status_code}",
                    extra_data={
                        "service": self.service_name,
                        "method": method,
                        "status_code": response.status_code,
                        "attempts": attempt,
                    },
                )
            return response

        # לא אמור לקרות - הלולאה תמיד מחזירה או זורקת
        raise RuntimeError("retry loop exited without a result")

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def _attempt(
        self, request: httpx.Request, *, retry_status: bool
    ) -> tuple[httpx.Response, bool]:
        response = await self._client.send(request, stream=True)
        if retry_status and response.status_code in self.policy.retry_on_statuses:
            await response.aclose()
            return response, True
        try:
            await response.aread()
        finally:
            await response.aclose()
        return response, False

    async def _backoff(
        self,
        method: str,
        request: httpx.Request,
        attempt: int,
        cause: str,
        cancel_event: asyncio.Event | None,
    ) -> None:
        delay = self.policy.backoff_seconds(attempt, self._rand)
        logger.info(
            f"Retrying {self.service_name} request",
            extra_data={
                "service": self.service_name,
                "method": method,
                "url": str(request.url.copy_with(query=None)),
                "attempt": attempt,
                "cause": cause,
                "delay_seconds": round(delay, 3),
            },
        )
        await self._race(self._sleep(delay), timeout=None, cancel_event=cancel_event)

    async def _race(
        self,
        coro: Awaitable[T],
        *,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> T:
        """Await ``coro`` under a deadline, aborting early if ``cancel_event`` fires."""
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        waitables = {task} if waiter is None else {task, waiter}
        try:
            done, _ = await asyncio.wait(
                waitables, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            if waiter is not None and waiter in done:
                raise RequestCancelledError(self.service_name)
            raise ServiceTimeoutError(self.service_name, timeout or 0.0)
        finally:
            if waiter is not None and not waiter.done():
                waiter.cancel()
            if not task.done():
                task.cancel()
                # מחכים לביטול כדי ש-httpx ישחרר את החיבור
                await asyncio.gather(task, return_exceptions=True)
