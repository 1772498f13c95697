"""Rate-limited HTTP POST delivery with retries for notification webhooks."""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union

import httpx

from .errors import Cancelled

HTTP_ERROR_BODY_LIMIT = 1024

_INTEGER = re.compile(r"[+-]?\d+")


@dataclass
class Timing:
    """Timeouts, rate limits and backoff settings, in seconds."""

    timeout: float = 10.0
    rate_interval: float = 1.0
    rate_burst: int = 1
    backoff_max_elapsed: float = 30.0
    backoff_max: float = 10.0
    backoff_initial: float = 1.0


class NotificationError(Exception):
    """A notification could not be delivered."""


class RetryableError(NotificationError):
    """A delivery failure that may succeed when tried again."""


def _format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    return f"{seconds:g}s"


class RetryAfterError(NotificationError):
    """The receiver asked to wait before trying again."""

    def __init__(self, duration: float, message: str):
        super().__init__(message)
        self.duration = duration
        self.message = message

    def __str__(self) -> str:
        return f"rate limited; retry after {_format_duration(self.duration)}"


def _deadline_exceeded() -> TimeoutError:
    return TimeoutError("context deadline exceeded")


class RateLimiter:
    """Token bucket refilling one token per interval, holding at most burst tokens."""

    def __init__(self, interval: float, burst: int):
        self.interval = interval
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def _reserve(self, now: float) -> float:
        elapsed = max(now - self._last, 0.0)
        self._tokens = min(float(self.burst), self._tokens + elapsed / self.interval)
        self._last = now
        self._tokens -= 1
        return max(0.0, -self._tokens * self.interval)

    def wait(
        self, cancel: Optional[threading.Event] = None, deadline: Optional[float] = None
    ) -> None:
        """Block until a token is available.

        ``deadline`` is a ``time.monotonic()`` value; if the wait would pass it,
        TimeoutError is raised at once. A set ``cancel`` raises Cancelled.
        """
        if cancel is not None and cancel.is_set():
            raise Cancelled()
        if self.interval <= 0:
            return
        if self.burst <= 0:
            raise ValueError(f"rate: Wait(n=1) exceeds limiter's burst {self.burst}")
        with self._lock:
            now = time.monotonic()
            delay = self._reserve(now)
            if deadline is not None and now + delay > deadline:
                self._tokens += 1
                raise TimeoutError("rate: Wait(n=1) would exceed context deadline")
        if delay <= 0:
            return
        if cancel is not None:
            if cancel.wait(delay):
                with self._lock:
                    self._tokens += 1
                raise Cancelled()
        else:
            time.sleep(delay)


class _ExponentialBackoff:
    randomization = 0.5
    multiplier = 1.5

    def __init__(self, initial: float, maximum: float, max_elapsed: float):
        self.maximum = maximum
        self.max_elapsed = max_elapsed
        self._current = initial
        self._start = time.monotonic()

    def next_backoff(self) -> Optional[float]:
        elapsed = time.monotonic() - self._start
        delta = self.randomization * self._current
        wait = random.uniform(self._current - delta, self._current + delta)
        if self._current >= self.maximum / self.multiplier:
            self._current = self.maximum
        else:
            self._current *= self.multiplier
        if self.max_elapsed and elapsed + wait > self.max_elapsed:
            return None
        return wait


def _sleep(wait: float, cancel: Optional[threading.Event], deadline: Optional[float]) -> None:
    pause = wait
    if deadline is not None:
        pause = min(wait, max(deadline - time.monotonic(), 0.0))
    if cancel is not None:
        if cancel.wait(pause):
            raise Cancelled()
    else:
        time.sleep(pause)
    if pause < wait:
        raise _deadline_exceeded()


class HttpPoster:
    """Posts payloads to a webhook, with per-stack rate limits and retries."""

    def __init__(
        self,
        service_name: str,
        webhook_url: str,
        content_type: str = "application/json",
        timing: Optional[Timing] = None,
        logger: Optional[logging.Logger] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.service_name = service_name
        self.webhook_url = webhook_url
        self.content_type = content_type
        self.timing = timing if timing is not None else Timing()
        self.logger = logger or logging.getLogger(__name__)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=self.timing.timeout)
        self._limiters: dict[str, RateLimiter] = {}
        self._limiter_lock = threading.Lock()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpPoster":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _limiter(self, stack: str) -> RateLimiter:
        with self._limiter_lock:
            limiter = self._limiters.get(stack)
            if limiter is None:
                limiter = RateLimiter(self.timing.rate_interval, self.timing.rate_burst)
                self._limiters[stack] = limiter
            return limiter

    def wait_for_rate_limit(
        self,
        stack: str,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> None:
        """Wait for the rate limiter of the given stack."""
        self._limiter(stack).wait(cancel, deadline)

    def post_with_retry(
        self,
        payload: Union[bytes, str],
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> None:
        """Post the payload, retrying server errors and rate limits with backoff."""
        timing = self.timing
        backoff = _ExponentialBackoff(
            timing.backoff_initial, timing.backoff_max, timing.backoff_max_elapsed
        )
        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled()
            timeout = timing.timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise _deadline_exceeded()
                timeout = min(timeout, remaining)
            try:
                self._send(payload, timeout)
                return
            except RetryAfterError as exc:
                _sleep(exc.duration, cancel, deadline)
            except RetryableError:
                wait = backoff.next_backoff()
                if wait is None:
                    raise
                _sleep(wait, cancel, deadline)

    def post_once(self, payload: Union[bytes, str]) -> None:
        """Post the payload once, raising a NotificationError subclass on failure."""
        self._send(payload, self.timing.timeout)

    def _send(self, payload: Union[bytes, str], timeout: float) -> None:
        content = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        name = self.service_name
        try:
            request = self._client.build_request(
                "POST",
                self.webhook_url,
                content=content,
                headers={"Content-Type": self.content_type},
                timeout=timeout,
            )
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            raise NotificationError(f"build {name} request: {exc}") from exc

        try:
            response = self._client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise RetryableError(f"{name} request failed: {exc}") from exc
        try:
            body_text = _read_limited(response).decode("utf-8", errors="replace").strip()
        finally:
            response.close()

        status = f"{response.status_code} {response.reason_phrase}".strip()
        code = response.status_code
        if 200 <= code < 300:
            return
        if code == 429:
            wait = parse_retry_after(response.headers.get("Retry-After", ""))
            if wait is not None:
                raise RetryAfterError(wait, f"{name} rate limited: {status}")
            raise RetryableError(f"{name} rate limited: {status}")
        if code >= 500:
            raise RetryableError(f"{name} server error: {status}")
        if body_text:
            raise NotificationError(f"{name} request failed: {status} ({body_text})")
        raise NotificationError(f"{name} request failed: {status}")


def _read_limited(response: httpx.Response) -> bytes:
    data = bytearray()
    try:
        for chunk in response.iter_bytes():
            data.extend(chunk)
            if len(data) >= HTTP_ERROR_BODY_LIMIT:
                break
    except httpx.HTTPError:
        pass
    return bytes(data[:HTTP_ERROR_BODY_LIMIT])


def parse_retry_after(value: str) -> Optional[float]:
    """Parse a Retry-After header into seconds; None when absent or not in the future."""
    if not value:
        return None
    if _INTEGER.fullmatch(value):
        seconds = int(value)
        return float(seconds) if seconds > 0 else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    wait = (when - datetime.now(timezone.utc)).total_seconds()
    return wait if wait > 0 else None