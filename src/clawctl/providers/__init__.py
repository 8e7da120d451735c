"""Provider interfaces for clawctl."""
from __future__ import annotations

from .instance_status_provider import InstanceStatus, InstanceStatusProvider
from .podman import ContainerSummary, PodmanError, PodmanProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ContainerSummary",
    "InstanceStatus",
    "InstanceStatusProvider",
    "PodmanError",
    "PodmanProvider",
    "SystemdError",
    "SystemdProvider",
]
