import json

import httpx
import pytest

from swarmsentinel.http_poster import Timing
from swarmsentinel.models import ServiceStatus
from swarmsentinel.transition import ServiceTransition
from swarmsentinel.webhook import WebhookNotifier, new_webhook_notifier, to_json

URL = "http://hooks.example.com/webhook"


class Recorder:
    def __init__(self, responder):
        self.calls = 0
        self.bodies = []
        self.responder = responder

    def __call__(self, request):
        self.calls += 1
        self.bodies.append(request.content.decode("utf-8"))
        return self.responder(self.calls)


def make_notifier(responder, template="", timing=None):
    recorder = Recorder(responder)
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return WebhookNotifier(URL, template, timing=timing, client=client), recorder


def failed(name="api"):
    return [ServiceTransition(name=name, current_status=ServiceStatus.FAILED)]


def test_template_rendering():
    notifier, recorder = make_notifier(
        lambda n: httpx.Response(200),
        '{"stack":"{{ stack }}","count":{{ transitions | length }}}',
    )
    notifier.notify("alpha", failed())
    assert recorder.calls == 1
    assert '"stack":"alpha"' in recorder.bodies[0]
    assert '"count":1' in recorder.bodies[0]


def test_default_template_is_json():
    notifier, recorder = make_notifier(lambda n: httpx.Response(200))
    notifier.notify("", failed())
    body = json.loads(recorder.bodies[0])
    assert body["stack"] == "default"
    assert body["transitions"][0]["name"] == "api"
    assert body["transitions"][0]["current_status"] == "FAILED"


def test_retries_on_server_error():
    timing = Timing(backoff_initial=0.001, backoff_max=0.002, backoff_max_elapsed=0.02)
    notifier, recorder = make_notifier(
        lambda n: httpx.Response(500 if n <= 2 else 200), timing=timing
    )
    notifier.notify("alpha", failed(), timeout=0.2)
    assert recorder.calls == 3


def test_invalid_template():
    with pytest.raises(ValueError, match="parse webhook template"):
        new_webhook_notifier("http://example.com", "{{")


def test_missing_template_value_fails_render():
    notifier, _ = make_notifier(lambda n: httpx.Response(200), "{{ missing }}")
    with pytest.raises(ValueError, match="render webhook template"):
        notifier.render("alpha", failed())


def test_empty_url_returns_none():
    assert new_webhook_notifier("") is None


def test_no_transitions_sends_nothing():
    notifier, recorder = make_notifier(lambda n: httpx.Response(200))
    notifier.notify("alpha", [])
    assert recorder.calls == 0


def test_to_json_escapes_html_characters():
    text = to_json(failed("<a&b>"))
    assert "<" not in text and ">" not in text and "&" not in text
    assert json.loads(text)[0]["name"] == "<a&b>"


def test_render_generated_at_available():
    notifier, _ = make_notifier(lambda n: httpx.Response(200), "{{ generated_at | to_json }}")
    rendered = json.loads(notifier.render("alpha", failed()))
    assert rendered.endswith("Z")