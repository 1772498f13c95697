import json
import threading

import httpx
import pytest

from swarmsentinel.errors import Cancelled
from swarmsentinel.http_poster import NotificationError, RetryAfterError, Timing
from swarmsentinel.models import DriftDetail, ServiceStatus
from swarmsentinel.notifier import NoopNotifier
from swarmsentinel.slack import (
    SLACK_MAX_BLOCKS,
    SLACK_MAX_TRANSITIONS,
    SLACK_RESERVED_BLOCKS,
    SlackNotifier,
    build_slack_messages,
    build_transition_block,
    format_drift,
    format_image_change,
    format_replica_change,
    new_slack_notifier,
    status_label,
)
from swarmsentinel.transition import ImageChange, ReplicaChange, ServiceTransition

URL = "http://hooks.example.com/slack"


def make_transitions(count):
    return [
        ServiceTransition(
            name=f"svc-{i:02d}",
            previous_status=ServiceStatus.OK,
            current_status=ServiceStatus.FAILED,
            reasons=["missing service"],
        )
        for i in range(1, count + 1)
    ]


class Recorder:
    def __init__(self, responder):
        self.calls = 0
        self.bodies = []
        self.responder = responder

    def __call__(self, request):
        self.calls += 1
        self.bodies.append(request.content)
        return self.responder(self.calls)


def make_notifier(responder, timing):
    recorder = Recorder(responder)
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return SlackNotifier(URL, timing=timing, client=client), recorder


def fast_timing(**overrides):
    values = dict(
        rate_interval=0.001,
        rate_burst=1,
        backoff_initial=0.001,
        backoff_max=0.002,
        backoff_max_elapsed=0.02,
    )
    values.update(overrides)
    return Timing(**values)


def test_build_slack_messages_single():
    messages = build_slack_messages("alpha", make_transitions(2))
    assert len(messages) == 1
    msg = messages[0]
    assert "Stack alpha" in msg["text"]
    assert "2 service transition" in msg["text"]
    assert len(msg["blocks"]) == SLACK_RESERVED_BLOCKS + 2


def test_build_slack_messages_chunking():
    total = SLACK_MAX_TRANSITIONS * 2 + 3
    messages = build_slack_messages("beta", make_transitions(total))
    assert len(messages) == 3
    for i, msg in enumerate(messages):
        assert len(msg["blocks"]) <= SLACK_MAX_BLOCKS
        assert f"part {i + 1}/3" in msg["text"]
        assert f"{total} service transition" in msg["text"]
    assert sum(len(m["blocks"]) - SLACK_RESERVED_BLOCKS for m in messages) == total


def test_build_slack_messages_empty():
    assert build_slack_messages("alpha", []) == []


def test_message_header_and_context():
    msg = build_slack_messages("alpha", make_transitions(1))[0]
    assert msg["text"] == "Stack alpha: 1 service transition(s)"
    assert msg["blocks"][0] == {
        "type": "header",
        "text": {"type": "plain_text", "text": "Stack alpha: 1 service transition(s)"},
    }
    assert msg["blocks"][1] == {
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": "Stack: *alpha*"}],
    }


def test_transition_block_fields():
    change = ServiceTransition(
        name="api",
        previous_status=ServiceStatus.OK,
        current_status=ServiceStatus.DEGRADED,
        reasons=["a", "b"],
        replica_change=ReplicaChange(current_desired=2, desired_delta=0, current_running=1, running_delta=-1),
    )
    block = build_transition_block(change)
    assert block["text"]["text"] == "*api*: `OK` → `DEGRADED`"
    assert [f["text"] for f in block["fields"]] == [
        "*Reasons:*\na, b",
        "*Replicas:*\nDesired 2 (Δ 0), Running 1 (Δ -1)",
    ]


def test_transition_block_without_fields():
    block = build_transition_block(ServiceTransition(name="api"))
    assert block["text"]["text"] == "*api*: `UNKNOWN` → `UNKNOWN`"
    assert "fields" not in block


def test_format_replica_change():
    change = ReplicaChange(current_desired=3, desired_delta=1, current_running=0, running_delta=-2)
    assert format_replica_change(change) == "*Replicas:*\nDesired 3 (Δ 1), Running 0 (Δ -2)"


def test_format_image_change_unknown():
    assert format_image_change(ImageChange()) == "*Image:*\nDesired `unknown`\nActual `unknown`"
    change = ImageChange(current_desired="app:v1", current_actual="app:v2")
    assert format_image_change(change) == "*Image:*\nDesired `app:v1`\nActual `app:v2`"


def test_format_drift():
    drift = [
        DriftDetail(kind="missing", resource="secret", name="token"),
        DriftDetail(kind="extra", name="cfg"),
        DriftDetail(kind="image"),
    ]
    assert format_drift(drift) == "*Drift:*\n• missing secret/token\n• extra cfg\n• image"


def test_status_label():
    assert status_label(ServiceStatus.UNKNOWN) == "UNKNOWN"
    assert status_label(ServiceStatus.FAILED) == "FAILED"


def test_new_slack_notifier_without_url_is_noop():
    noop = new_slack_notifier("")
    assert isinstance(noop, NoopNotifier)
    assert noop.notify("alpha", make_transitions(1)) is None

    slack = new_slack_notifier(URL)
    assert isinstance(slack, SlackNotifier)
    assert slack.notify("alpha", []) is None


def test_notify_posts_json_payload():
    notifier, recorder = make_notifier(lambda n: httpx.Response(200), fast_timing())
    notifier.notify("", make_transitions(1))
    assert recorder.calls == 1
    body = json.loads(recorder.bodies[0])
    assert body["text"] == "Stack default: 1 service transition(s)"


def test_notify_no_transitions_sends_nothing():
    notifier, recorder = make_notifier(lambda n: httpx.Response(200), fast_timing())
    notifier.notify("alpha", [])
    assert recorder.calls == 0


def test_retries_on_server_error():
    notifier, recorder = make_notifier(
        lambda n: httpx.Response(500 if n <= 2 else 200),
        fast_timing(backoff_initial=0.005, backoff_max=0.01, backoff_max_elapsed=0.05),
    )
    notifier.notify("alpha", make_transitions(1), timeout=0.5)
    assert recorder.calls == 3


def test_retry_after_error():
    notifier, _ = make_notifier(
        lambda n: httpx.Response(429, headers={"Retry-After": "1"}), fast_timing()
    )
    with pytest.raises(RetryAfterError) as info:
        notifier.post_once(b"{}")
    assert info.value.duration == 1.0


def test_rate_limit_blocks():
    notifier, recorder = make_notifier(lambda n: httpx.Response(200), fast_timing(rate_interval=0.5))
    notifier.notify("alpha", make_transitions(1))
    with pytest.raises(TimeoutError):
        notifier.notify("alpha", make_transitions(1), timeout=0.02)
    assert recorder.calls == 1


def test_client_error_not_retried():
    notifier, recorder = make_notifier(
        lambda n: httpx.Response(400, content=b"invalid_payload"), fast_timing()
    )
    with pytest.raises(NotificationError) as info:
        notifier.notify("alpha", make_transitions(1))
    assert "400" in str(info.value)
    assert "invalid_payload" in str(info.value)
    assert recorder.calls == 1


def test_cancellation():
    notifier, _ = make_notifier(
        lambda n: httpx.Response(500),
        fast_timing(backoff_initial=0.1, backoff_max=0.2, backoff_max_elapsed=1.0),
    )
    cancel = threading.Event()
    timer = threading.Timer(0.01, cancel.set)
    timer.start()
    try:
        with pytest.raises(Cancelled):
            notifier.notify("alpha", make_transitions(1), cancel=cancel)
    finally:
        timer.cancel()