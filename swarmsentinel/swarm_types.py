"""Runtime view of Swarm services and the client interface that collects it."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ActualService:
    """A service's runtime state as reported by Swarm.

    For global and job modes desired_replicas comes from Swarm's own count of
    desired tasks. Compare images with normalize_image to ignore digests.
    """

    name: str
    image: str = ""
    mode: str = ""
    desired_replicas: int = 0
    running_replicas: int = 0
    configs: list[str] = field(default_factory=list)
    secrets: list[str] = field(default_factory=list)
    update_state: str = ""


@dataclass
class ActualState:
    """Runtime state of all services in scope, keyed by service name."""

    services: dict[str, ActualService] = field(default_factory=dict)

    def running_replicas(self) -> int:
        """Total running replicas across all services."""
        return sum(service.running_replicas for service in self.services.values())


class SwarmClient(ABC):
    """Access to the Swarm API."""

    @abstractmethod
    def ping(self, cancel: Optional[threading.Event] = None) -> None:
        """Check connectivity to the daemon; raise on failure."""

    @abstractmethod
    def get_actual_state(
        self, stack_name: str = "", cancel: Optional[threading.Event] = None
    ) -> ActualState:
        """Collect service state, optionally scoped to a stack."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the client."""