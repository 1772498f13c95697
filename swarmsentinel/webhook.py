"""Generic webhook notifier with a user-supplied payload template."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import jinja2

from .http_poster import HttpPoster, Timing
from .notifier import Notifier
from .transition import ServiceTransition

DEFAULT_WEBHOOK_TEMPLATE = (
    '{"stack":"{{ stack }}","transitions":{{ transitions | to_json }}}'
)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, datetime):
        return _format_time(value)
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def to_json(value: Any) -> str:
    """Encode a value as compact JSON with HTML-sensitive characters escaped."""
    text = json.dumps(value, default=_json_default, ensure_ascii=False, separators=(",", ":"))
    return text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


_ENVIRONMENT = jinja2.Environment(
    autoescape=False,
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)
_ENVIRONMENT.filters["to_json"] = to_json
_ENVIRONMENT.globals["to_json"] = to_json


@dataclass
class WebhookPayload:
    """The values a webhook template is rendered with."""

    stack: str
    transitions: list[ServiceTransition] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def context(self) -> dict[str, Any]:
        return {
            "stack": self.stack,
            "transitions": self.transitions,
            "generated_at": self.generated_at,
        }


class WebhookNotifier(Notifier):
    """Posts transitions to a generic webhook, rendered through a template."""

    def __init__(
        self,
        webhook_url: str,
        template: str = "",
        timing: Optional[Timing] = None,
        logger: Optional[logging.Logger] = None,
        client: Optional[httpx.Client] = None,
    ):
        try:
            self.template = _ENVIRONMENT.from_string(template or DEFAULT_WEBHOOK_TEMPLATE)
        except jinja2.TemplateSyntaxError as exc:
            raise ValueError(f"parse webhook template: {exc}") from exc
        self.logger = logger or logging.getLogger(__name__)
        self.poster = HttpPoster(
            "webhook",
            webhook_url,
            "application/json",
            timing if timing is not None else Timing(),
            self.logger,
            client,
        )

    def close(self) -> None:
        self.poster.close()

    def render(self, stack: str, transitions: Sequence[ServiceTransition]) -> str:
        """Render the payload for a stack's transitions."""
        payload = WebhookPayload(stack=stack or "default", transitions=list(transitions))
        try:
            return self.template.render(payload.context())
        except (jinja2.TemplateError, TypeError, ValueError) as exc:
            raise ValueError(f"render webhook template: {exc}") from exc

    def notify(
        self,
        stack: str,
        transitions: Sequence[ServiceTransition],
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if not transitions:
            return
        stack_name = stack or "default"
        deadline = time.monotonic() + timeout if timeout is not None else None
        self.poster.wait_for_rate_limit(stack_name, cancel, deadline)

        body = self.render(stack_name, transitions)
        self.poster.post_with_retry(body, cancel, deadline)

        self.logger.debug(
            "webhook notification sent (stack=%s transitions=%d)", stack_name, len(transitions)
        )


def new_webhook_notifier(
    webhook_url: str,
    template: str = "",
    timing: Optional[Timing] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[WebhookNotifier]:
    """Return a WebhookNotifier, or None when no webhook URL is configured."""
    if not webhook_url:
        return None
    return WebhookNotifier(webhook_url, template, timing=timing, logger=logger)