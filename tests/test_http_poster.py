import threading
import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from swarmsentinel.errors import Cancelled
from swarmsentinel.http_poster import (
    HttpPoster,
    NotificationError,
    RateLimiter,
    RetryableError,
    RetryAfterError,
    Timing,
    parse_retry_after,
)

URL = "http://hooks.example.com/notify"


class Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses[min(len(self.requests) - 1, len(self.responses) - 1)]
        if isinstance(response, Exception):
            raise response
        return response


def make_poster(handler, timing=None):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpPoster("slack", URL, "application/json", timing or fast_timing(), client=client)


def fast_timing(**overrides):
    values = dict(
        timeout=2.0,
        rate_interval=0.001,
        rate_burst=1,
        backoff_initial=0.005,
        backoff_max=0.01,
        backoff_max_elapsed=0.5,
    )
    values.update(overrides)
    return Timing(**values)


def test_post_once_success_sends_payload_and_content_type():
    recorder = Recorder([httpx.Response(200)])
    poster = make_poster(recorder)

    poster.post_once(b'{"text":"hi"}')

    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.content == b'{"text":"hi"}'
    assert request.headers["Content-Type"] == "application/json"


def test_post_once_server_error_is_retryable():
    poster = make_poster(Recorder([httpx.Response(500)]))
    with pytest.raises(RetryableError, match="slack server error: 500"):
        poster.post_once(b"{}")


def test_post_once_retry_after_header():
    poster = make_poster(Recorder([httpx.Response(429, headers={"Retry-After": "1"})]))
    with pytest.raises(RetryAfterError) as info:
        poster.post_once(b"{}")
    assert info.value.duration == 1.0
    assert str(info.value) == "rate limited; retry after 1s"


def test_post_once_rate_limited_without_header_is_retryable():
    poster = make_poster(Recorder([httpx.Response(429)]))
    with pytest.raises(RetryableError, match="rate limited"):
        poster.post_once(b"{}")


def test_post_once_client_error_includes_status_and_body():
    poster = make_poster(Recorder([httpx.Response(400, content=b"invalid_payload")]))
    with pytest.raises(NotificationError) as info:
        poster.post_once(b"{}")
    assert not isinstance(info.value, RetryableError)
    assert "400" in str(info.value)
    assert "invalid_payload" in str(info.value)


def test_post_once_transport_error_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    poster = make_poster(handler)
    with pytest.raises(RetryableError, match="connection refused"):
        poster.post_once(b"{}")


def test_post_with_retry_recovers_after_server_errors():
    recorder = Recorder([httpx.Response(500), httpx.Response(500), httpx.Response(200)])
    poster = make_poster(recorder)

    poster.post_with_retry(b"{}", deadline=time.monotonic() + 2)

    assert len(recorder.requests) == 3


def test_post_with_retry_does_not_retry_client_errors():
    recorder = Recorder([httpx.Response(400, content=b"invalid_payload")])
    poster = make_poster(recorder)

    with pytest.raises(NotificationError, match="invalid_payload"):
        poster.post_with_retry(b"{}")
    assert len(recorder.requests) == 1


def test_post_with_retry_stops_when_backoff_budget_spent():
    recorder = Recorder([httpx.Response(500)])
    poster = make_poster(
        recorder, fast_timing(backoff_initial=0.05, backoff_max=0.05, backoff_max_elapsed=0.001)
    )

    with pytest.raises(RetryableError):
        poster.post_with_retry(b"{}")
    assert len(recorder.requests) == 1


def test_post_with_retry_cancelled_during_backoff():
    cancel = threading.Event()

    def handler(request):
        cancel.set()
        return httpx.Response(500)

    poster = make_poster(handler, fast_timing(backoff_initial=0.2, backoff_max=0.2))
    with pytest.raises(Cancelled):
        poster.post_with_retry(b"{}", cancel=cancel)


def test_post_with_retry_respects_deadline():
    recorder = Recorder([httpx.Response(500)])
    poster = make_poster(
        recorder, fast_timing(backoff_initial=0.2, backoff_max=0.2, backoff_max_elapsed=5)
    )
    with pytest.raises(TimeoutError):
        poster.post_with_retry(b"{}", deadline=time.monotonic() + 0.05)
    assert len(recorder.requests) == 1


def test_rate_limit_blocks_second_call_past_deadline():
    poster = make_poster(Recorder([httpx.Response(200)]), fast_timing(rate_interval=0.5))

    poster.wait_for_rate_limit("alpha")
    start = time.monotonic()
    with pytest.raises(TimeoutError):
        poster.wait_for_rate_limit("alpha", deadline=time.monotonic() + 0.02)
    assert time.monotonic() - start < 0.4


def test_rate_limits_are_per_stack():
    poster = make_poster(Recorder([httpx.Response(200)]), fast_timing(rate_interval=5))

    poster.wait_for_rate_limit("alpha")
    start = time.monotonic()
    poster.wait_for_rate_limit("beta", deadline=time.monotonic() + 0.5)
    assert time.monotonic() - start < 0.5


def test_rate_limiter_waits_for_next_token():
    limiter = RateLimiter(0.05, 1)
    assert limiter.wait() is None
    start = time.monotonic()
    assert limiter.wait() is None
    assert time.monotonic() - start >= 0.04


def test_rate_limiter_cancelled():
    limiter = RateLimiter(5, 1)
    limiter.wait()
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        limiter.wait(cancel=cancel)


@pytest.mark.parametrize("value", ["", "0", "-5", "abc"])
def test_parse_retry_after_rejects(value):
    assert parse_retry_after(value) is None


def test_parse_retry_after_seconds():
    assert parse_retry_after("5") == 5.0


def test_parse_retry_after_http_dates():
    past = format_datetime(datetime.now(timezone.utc) - timedelta(seconds=60), usegmt=True)
    future = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=120), usegmt=True)

    assert parse_retry_after(past) is None
    wait = parse_retry_after(future)
    assert wait is not None
    assert 100 < wait <= 120