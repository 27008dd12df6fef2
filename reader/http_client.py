import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from reader.config import ReaderConfig
from reader.exceptions import (
    AuthError,
    HTTPError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ResponseFormatError,
    ServerError,
)

logger = logging.getLogger(__name__)

USER_AGENT = "CurrentsNewsApp/1.0"

# Pause between two queued requests so a backlog does not go out as a burst
QUEUE_GAP = 0.05

TRANSIENT_ERRORS = (RateLimitError, ServerError, NetworkError)

Sleep = Callable[[float], Awaitable[Any]]


def redact(url: str) -> str:
    """Strip the API key from a URL before it reaches the logs."""
    try:
        return str(httpx.URL(url).copy_remove_param("apiKey"))
    except httpx.InvalidURL:
        return url


@dataclass
class QueueItem:
    url: str
    future: "asyncio.Future[Dict[str, Any]]"
    attempts: int = 0


class RequestQueue:
    """
    Serializes calls to the news API.

    A single consumer task drains a FIFO deque, so at most one request is in
    flight. Consecutive dispatches are spaced by ``min_request_interval`` and
    transient failures (429, 5xx, timeouts, transport errors) are retried with
    exponential backoff.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        min_request_interval: float = 0.1,
        timeout: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client or httpx.AsyncClient(http2=False, follow_redirects=True)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.backoff_multiplier = backoff_multiplier
        self.min_request_interval = min_request_interval
        self.timeout = timeout
        self._sleep = sleep

        self._queue: Deque[QueueItem] = deque()
        self._wake: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._last_dispatch: Optional[float] = None
        self._current: Optional[QueueItem] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: ReaderConfig, client: Optional[httpx.AsyncClient] = None,
                    sleep: Sleep = asyncio.sleep) -> "RequestQueue":
        return cls(
            client,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            backoff_multiplier=config.backoff_multiplier,
            min_request_interval=config.min_request_interval,
            timeout=config.request_timeout,
            sleep=sleep,
        )

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def submit(self, url: str) -> Dict[str, Any]:
        """
        Queue a GET request and wait for its decoded JSON object.
        Raises one of the classified ReaderError subclasses on failure.
        """
        if self._closed:
            raise NetworkError("Request queue is closed")

        item = QueueItem(url=url, future=asyncio.get_running_loop().create_future())
        self._queue.append(item)
        if self._worker is None or self._worker.done():
            # The wake signal belongs to the loop that runs the consumer
            self._wake = asyncio.Event()
            self._worker = asyncio.create_task(self._run(self._wake))
        self._wake.set()
        return await item.future

    async def _run(self, wake: asyncio.Event):
        while True:
            await wake.wait()
            wake.clear()
            while self._queue:
                item = self._queue.popleft()
                self._current = item
                await self._dispatch(item)
                self._current = None
                if self._queue:
                    await self._sleep(QUEUE_GAP)

    async def _dispatch(self, item: QueueItem):
        loop = asyncio.get_running_loop()
        if self._last_dispatch is not None:
            wait = self.min_request_interval - (loop.time() - self._last_dispatch)
            if wait > 0:
                await self._sleep(wait)

        try:
            result = await self._execute_with_retry(item)
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._last_dispatch = loop.time()

    async def _execute_with_retry(self, item: QueueItem) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._backoff,
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                item.attempts = attempt.retry_state.attempt_number
                return await self.execute(item.url, item.attempts)
        raise NetworkError(f"No attempt was made for {redact(item.url)}")  # pragma: no cover

    def _backoff(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError):
            return self.retry_delay * self.backoff_multiplier ** attempt
        return self.retry_delay * self.backoff_multiplier ** (attempt - 1)

    def _log_retry(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(f"{error} (attempt {retry_state.attempt_number}), retrying in {delay:.2f}s")

    async def execute(self, url: str, attempt: int = 1) -> Dict[str, Any]:
        """Perform one GET and classify the outcome. No retries happen here."""
        safe_url = redact(url)
        logger.info(f"Request attempt {attempt}: {safe_url}")
        try:
            # httpx applies its timeout per phase; wait_for bounds the whole call
            response = await asyncio.wait_for(
                self.client.get(url, headers=self._get_headers(), timeout=self.timeout),
                self.timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise RequestTimeoutError(f"Request timed out after {self.timeout}s: {safe_url}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error for {safe_url}: {e}") from e

        status = response.status_code
        if status == 401:
            raise AuthError("Invalid API key", status_code=status, url=safe_url)
        if status == 429:
            raise RateLimitError("Rate limit exceeded", status_code=status, url=safe_url)
        if status >= 500:
            raise ServerError(f"API Error: {status} {response.reason_phrase}", status_code=status, url=safe_url)
        if not response.is_success:
            raise HTTPError(f"API Error: {status} {response.reason_phrase}", status_code=status, url=safe_url)

        try:
            data = response.json()
        except ValueError as e:
            raise ResponseFormatError(f"Invalid API response format from {safe_url}") from e
        if not isinstance(data, dict):
            raise ResponseFormatError(f"Invalid API response format from {safe_url}: expected a JSON object")

        logger.info(f"Successfully fetched {safe_url}")
        return data

    async def close(self):
        self._closed = True
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._current is not None and not self._current.future.done():
            self._current.future.set_exception(NetworkError("Request queue closed during dispatch"))
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(NetworkError("Request queue closed before dispatch"))
        await self.client.aclose()
