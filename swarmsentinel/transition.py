"""Detection of service status transitions between health snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .models import DriftDetail, ServiceHealth, ServiceStatus, StackHealth, StackSnapshot


@dataclass
class ReplicaChange:
    """Replica counts before and after a transition."""

    previous_desired: int = 0
    current_desired: int = 0
    previous_running: int = 0
    current_running: int = 0
    desired_delta: int = 0
    running_delta: int = 0


@dataclass
class ImageChange:
    """Image references before and after a transition."""

    previous_desired: str = ""
    current_desired: str = ""
    previous_actual: str = ""
    current_actual: str = ""


@dataclass
class ServiceTransition:
    """A change of a service's status, with supporting details."""

    name: str
    previous_status: ServiceStatus = ServiceStatus.UNKNOWN
    current_status: ServiceStatus = ServiceStatus.UNKNOWN
    reasons: list[str] = field(default_factory=list)
    drift: list[DriftDetail] = field(default_factory=list)
    replica_change: Optional[ReplicaChange] = None
    image_change: Optional[ImageChange] = None

    def to_dict(self) -> dict[str, Any]:
        replica = self.replica_change
        image = self.image_change
        return {
            "name": self.name,
            "previous_status": self.previous_status.value,
            "current_status": self.current_status.value,
            "reasons": list(self.reasons),
            "drift": [detail.to_dict() for detail in self.drift],
            "replica_change": None
            if replica is None
            else {
                "previous_desired": replica.previous_desired,
                "current_desired": replica.current_desired,
                "previous_running": replica.previous_running,
                "current_running": replica.current_running,
                "desired_delta": replica.desired_delta,
                "running_delta": replica.running_delta,
            },
            "image_change": None
            if image is None
            else {
                "previous_desired": image.previous_desired,
                "current_desired": image.current_desired,
                "previous_actual": image.previous_actual,
                "current_actual": image.current_actual,
            },
        }


def detect_service_transitions(
    prev: Optional[StackSnapshot], current: StackHealth
) -> list[ServiceTransition]:
    """Compare a previous snapshot with current health; return transitions sorted by name."""
    prev_services = prev.services if prev is not None and prev.services else {}
    first_run = not prev_services

    transitions = []
    for name, service in current.services.items():
        had_prev = name in prev_services
        prev_service = prev_services.get(name, ServiceHealth())
        prev_status = prev_service.status
        if prev_service.last_notified_status != ServiceStatus.UNKNOWN:
            prev_status = prev_service.last_notified_status

        if first_run or not had_prev:
            if service.status == ServiceStatus.OK:
                continue
        elif prev_status == service.status:
            continue

        transitions.append(
            ServiceTransition(
                name=name,
                previous_status=prev_status,
                current_status=service.status,
                reasons=list(service.reasons),
                drift=list(service.drift),
                replica_change=_replica_change(prev_service, service, had_prev),
                image_change=_image_change(prev_service, service, had_prev),
            )
        )

    transitions.sort(key=lambda change: change.name)
    return transitions


def _replica_change(
    prev: ServiceHealth, current: ServiceHealth, had_prev: bool
) -> Optional[ReplicaChange]:
    if not had_prev and current.desired_replicas == 0 and current.running_replicas == 0:
        return None
    return ReplicaChange(
        previous_desired=prev.desired_replicas,
        current_desired=current.desired_replicas,
        previous_running=prev.running_replicas,
        current_running=current.running_replicas,
        desired_delta=current.desired_replicas - prev.desired_replicas,
        running_delta=current.running_replicas - prev.running_replicas,
    )


def _image_change(
    prev: ServiceHealth, current: ServiceHealth, had_prev: bool
) -> Optional[ImageChange]:
    if not had_prev and not current.desired_image and not current.actual_image:
        return None
    return ImageChange(
        previous_desired=prev.desired_image,
        current_desired=current.desired_image,
        previous_actual=prev.actual_image,
        current_actual=current.actual_image,
    )