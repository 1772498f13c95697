"""Health and persisted-state data types shared across the monitor."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

CURRENT_STATE_VERSION = 1

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIME_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


class ServiceStatus(str, Enum):
    """Health status of a single service; UNKNOWN means no status recorded."""

    UNKNOWN = ""
    OK = "OK"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"

    def __str__(self) -> str:
        return self.value


def _ensure_mapping(data: Any, what: str) -> Mapping:
    if not isinstance(data, Mapping):
        raise TypeError(f"{what}: expected an object, got {type(data).__name__}")
    return data


def _field(data: Mapping, key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise TypeError(
            f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _str_list(data: Mapping, key: str) -> list[str]:
    values = _field(data, key, list, [])
    for value in values:
        if not isinstance(value, str):
            raise TypeError(f"field {key!r}: expected a list of strings")
    return list(values)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def _parse_time(text: str) -> Optional[datetime]:
    match = _TIME_PATTERN.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    base, fraction, zone = match.groups()
    micro = (fraction or "")[:6].ljust(6, "0")
    offset = "+00:00" if zone == "Z" else zone
    parsed = datetime.fromisoformat(f"{base}.{micro}{offset}")
    if parsed.year == 1 and parsed == datetime(1, 1, 1, tzinfo=timezone.utc):
        return None
    return parsed


@dataclass
class DriftDetail:
    """One configuration drift found on a service."""

    kind: str = ""
    resource: str = ""
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "resource": self.resource, "name": self.name}

    @classmethod
    def from_dict(cls, data: Any) -> "DriftDetail":
        data = _ensure_mapping(data, "drift detail")
        return cls(
            kind=_field(data, "kind", str, ""),
            resource=_field(data, "resource", str, ""),
            name=_field(data, "name", str, ""),
        )


@dataclass
class ServiceHealth:
    """Evaluated health of a service, plus alert bookkeeping."""

    name: str = ""
    status: ServiceStatus = ServiceStatus.UNKNOWN
    reasons: list[str] = field(default_factory=list)
    drift: list[DriftDetail] = field(default_factory=list)
    desired_replicas: int = 0
    running_replicas: int = 0
    desired_image: str = ""
    actual_image: str = ""
    consecutive_cycles: int = 0
    last_notified_status: ServiceStatus = ServiceStatus.UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "reasons": list(self.reasons),
            "drift": [detail.to_dict() for detail in self.drift],
            "desired_replicas": self.desired_replicas,
            "running_replicas": self.running_replicas,
            "desired_image": self.desired_image,
            "actual_image": self.actual_image,
            "consecutive_cycles": self.consecutive_cycles,
            "last_notified_status": self.last_notified_status.value,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ServiceHealth":
        data = _ensure_mapping(data, "service health")
        return cls(
            name=_field(data, "name", str, ""),
            status=ServiceStatus(_field(data, "status", str, "")),
            reasons=_str_list(data, "reasons"),
            drift=[DriftDetail.from_dict(item) for item in _field(data, "drift", list, [])],
            desired_replicas=_field(data, "desired_replicas", int, 0),
            running_replicas=_field(data, "running_replicas", int, 0),
            desired_image=_field(data, "desired_image", str, ""),
            actual_image=_field(data, "actual_image", str, ""),
            consecutive_cycles=_field(data, "consecutive_cycles", int, 0),
            last_notified_status=ServiceStatus(_field(data, "last_notified_status", str, "")),
        )


@dataclass
class StackHealth:
    """Health of every service in a stack."""

    status: ServiceStatus = ServiceStatus.UNKNOWN
    services: dict[str, ServiceHealth] = field(default_factory=dict)


@dataclass
class StackSnapshot:
    """Persisted health state of one stack."""

    desired_fingerprint: str = ""
    services: dict[str, ServiceHealth] = field(default_factory=dict)
    evaluated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "desired_fingerprint": self.desired_fingerprint,
            "services": {name: svc.to_dict() for name, svc in self.services.items()},
            "evaluated_at": _format_time(self.evaluated_at),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StackSnapshot":
        data = _ensure_mapping(data, "stack snapshot")
        services = _field(data, "services", Mapping, {})
        evaluated = _field(data, "evaluated_at", str, None)
        return cls(
            desired_fingerprint=_field(data, "desired_fingerprint", str, ""),
            services={name: ServiceHealth.from_dict(svc) for name, svc in services.items()},
            evaluated_at=_parse_time(evaluated) if evaluated is not None else None,
        )


@dataclass
class State:
    """Snapshots for all stacks, with a schema version."""

    version: int = 0
    stacks: dict[str, StackSnapshot] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "stacks": {name: snap.to_dict() for name, snap in self.stacks.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "State":
        data = _ensure_mapping(data, "state")
        stacks = _field(data, "stacks", Mapping, {})
        return cls(
            version=_field(data, "version", int, 0),
            stacks={name: StackSnapshot.from_dict(snap) for name, snap in stacks.items()},
        )


class Store(ABC):
    """Persistence for the monitor state."""

    @abstractmethod
    def load(self) -> State:
        """Return the stored state."""

    @abstractmethod
    def save(self, state: State) -> None:
        """Persist the given state."""