"""Errors raised during a monitoring cycle."""

from __future__ import annotations

from typing import Optional


class CycleError(Exception):
    """A failure inside one cycle that should not stop the monitoring loop."""

    def __init__(self, op: str, err: BaseException):
        super().__init__(op, err)
        self.op = op
        self.err = err
        self.__cause__ = err

    def __str__(self) -> str:
        return f"{self.op}: {self.err}"


class Cancelled(Exception):
    """Raised when an operation is cancelled before it completes."""

    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


def wrap_runtime(op: str, err: Optional[BaseException]) -> Optional[CycleError]:
    """Wrap an error as a CycleError for the named operation; None stays None."""
    if err is None:
        return None
    return CycleError(op, err)