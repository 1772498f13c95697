"""Slack incoming-webhook notifier using Block Kit messages."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from .http_poster import HttpPoster, Timing
from .models import DriftDetail, ServiceStatus
from .notifier import Notifier, NoopNotifier
from .transition import ImageChange, ReplicaChange, ServiceTransition

SLACK_MAX_BLOCKS = 50
# Each message carries a header block and a context block.
SLACK_RESERVED_BLOCKS = 2
SLACK_MAX_TRANSITIONS = SLACK_MAX_BLOCKS - SLACK_RESERVED_BLOCKS


def _text(kind: str, text: str) -> dict[str, str]:
    return {"type": kind, "text": text}


class SlackNotifier(Notifier):
    """Sends transition alerts to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        timing: Optional[Timing] = None,
        logger: Optional[logging.Logger] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.webhook_url = webhook_url
        self.timing = timing if timing is not None else Timing()
        self.logger = logger or logging.getLogger(__name__)
        self.poster = HttpPoster(
            "slack", webhook_url, "application/json", self.timing, self.logger, client
        )

    def close(self) -> None:
        self.poster.close()

    def notify(
        self,
        stack: str,
        transitions: Sequence[ServiceTransition],
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Post the transitions as one or more Slack messages.

        ``timeout`` bounds the whole delivery, rate-limit wait included.
        """
        if not transitions:
            return
        stack_name = stack or "default"
        deadline = time.monotonic() + timeout if timeout is not None else None
        self.poster.wait_for_rate_limit(stack_name, cancel, deadline)

        messages = build_slack_messages(stack_name, transitions)
        for message in messages:
            payload = json.dumps(message, ensure_ascii=False)
            self.poster.post_with_retry(payload, cancel, deadline)

        self.logger.debug(
            "slack notification sent (stack=%s transitions=%d messages=%d)",
            stack_name,
            len(transitions),
            len(messages),
        )

    def post_once(self, payload: bytes | str) -> None:
        """Post a raw payload once without retrying."""
        self.poster.post_once(payload)


def new_slack_notifier(
    webhook_url: str,
    timing: Optional[Timing] = None,
    logger: Optional[logging.Logger] = None,
) -> Notifier:
    """Return a SlackNotifier, or a NoopNotifier when no webhook is configured."""
    if not webhook_url:
        return NoopNotifier(logger, "slack webhook not configured; notifications disabled")
    return SlackNotifier(webhook_url, timing=timing, logger=logger)


def build_slack_messages(
    stack: str, transitions: Sequence[ServiceTransition]
) -> list[dict[str, Any]]:
    """Split transitions into webhook messages that respect Slack's block limit."""
    if not transitions:
        return []
    total = len(transitions)
    chunks = [
        transitions[start:start + SLACK_MAX_TRANSITIONS]
        for start in range(0, total, SLACK_MAX_TRANSITIONS)
    ]
    return [
        _build_message(stack, chunk, total, index, len(chunks))
        for index, chunk in enumerate(chunks, 1)
    ]


def _build_message(
    stack: str,
    transitions: Sequence[ServiceTransition],
    total: int,
    part_index: int,
    part_total: int,
) -> dict[str, Any]:
    summary = f"Stack {stack}: {total} service transition(s)"
    if part_total > 1:
        summary = f"{summary} (part {part_index}/{part_total})"

    elements = [_text("mrkdwn", f"Stack: *{stack}*")]
    if part_total > 1:
        elements.append(_text("mrkdwn", f"Batch: {part_index}/{part_total}"))

    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": _text("plain_text", summary)},
        {"type": "context", "elements": elements},
    ]
    blocks.extend(build_transition_block(change) for change in transitions)
    return {"text": summary, "blocks": blocks}


def build_transition_block(change: ServiceTransition) -> dict[str, Any]:
    """Build the section block describing one transition."""
    title = (
        f"*{change.name}*: `{status_label(change.previous_status)}` → "
        f"`{status_label(change.current_status)}`"
    )
    fields = []
    if change.reasons:
        fields.append(_text("mrkdwn", "*Reasons:*\n" + ", ".join(change.reasons)))
    if change.replica_change is not None:
        fields.append(_text("mrkdwn", format_replica_change(change.replica_change)))
    if change.image_change is not None:
        fields.append(_text("mrkdwn", format_image_change(change.image_change)))
    if change.drift:
        fields.append(_text("mrkdwn", format_drift(change.drift)))

    block: dict[str, Any] = {"type": "section", "text": _text("mrkdwn", title)}
    if fields:
        block["fields"] = fields
    return block


def format_replica_change(change: ReplicaChange) -> str:
    return (
        f"*Replicas:*\nDesired {change.current_desired} (Δ {change.desired_delta}), "
        f"Running {change.current_running} (Δ {change.running_delta})"
    )


def format_image_change(change: ImageChange) -> str:
    desired = change.current_desired or "unknown"
    actual = change.current_actual or "unknown"
    return f"*Image:*\nDesired `{desired}`\nActual `{actual}`"


def _drift_label(detail: DriftDetail) -> str:
    if detail.resource and detail.name:
        return f"{detail.kind} {detail.resource}/{detail.name}"
    if detail.name:
        return f"{detail.kind} {detail.name}"
    return str(detail.kind)


def format_drift(drift: Sequence[DriftDetail]) -> str:
    return "*Drift:*\n• " + "\n• ".join(_drift_label(detail) for detail in drift)


def status_label(status: ServiceStatus | str) -> str:
    value = status.value if isinstance(status, ServiceStatus) else status
    return value or "UNKNOWN"