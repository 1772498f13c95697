"""Notifier interface and the simple notifiers: no-op, fan-out and dry-run."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Optional

from .transition import ServiceTransition


class Notifier(ABC):
    """Delivers transition alerts to an external system."""

    @abstractmethod
    def notify(
        self,
        stack: str,
        transitions: Sequence[ServiceTransition],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Send alerts for the given transitions of a stack; raise on failure."""


class NoopNotifier(Notifier):
    """Drops every notification; logs its reason once when created."""

    def __init__(self, logger: Optional[logging.Logger] = None, reason: str = ""):
        self.logger = logger or logging.getLogger(__name__)
        self.reason = reason
        if reason:
            self.logger.info(reason)

    def notify(
        self,
        stack: str,
        transitions: Sequence[ServiceTransition],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        return None


class MultiNotifier(Notifier):
    """Fans notifications out to several notifiers."""

    def __init__(self, *notifiers: Optional[Notifier]):
        self.notifiers: list[Notifier] = [n for n in notifiers if n is not None]

    def notify(
        self,
        stack: str,
        transitions: Sequence[ServiceTransition],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Notify every notifier, then raise the first error any of them raised."""
        first_error: Optional[Exception] = None
        for notifier in self.notifiers:
            try:
                notifier.notify(stack, transitions, cancel)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


class DryRunNotifier(Notifier):
    """Logs the transitions it would send instead of delivering them."""

    def __init__(self, inner: Optional[Notifier] = None, logger: Optional[logging.Logger] = None):
        self.inner = inner
        self.logger = logger or logging.getLogger(__name__)

    def notify(
        self,
        stack: str,
        transitions: Sequence[ServiceTransition],
        cancel: Optional[threading.Event] = None,
    ) -> None:
        for change in transitions:
            self.logger.info(
                "[DRY-RUN] Would notify (stack=%s service=%s previous_status=%s "
                "current_status=%s reasons=%s)",
                stack,
                change.name,
                change.previous_status.value,
                change.current_status.value,
                list(change.reasons),
            )