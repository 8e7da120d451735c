"""Instance state derivation from the user service manager."""
from __future__ import annotations

from dataclasses import dataclass

from .systemd import SystemdProvider

STATE_RUNNING = "running"
STATE_FAILED = "failed"
STATE_STOPPED = "stopped"


@dataclass(frozen=True)
class InstanceStatus:
    """Represents the derived state of an OpenClaw instance."""

    state: str
    detail: str = ""


class InstanceStatusProvider:
    """Return status information for instance units.

    ``running`` when the unit is active, ``failed`` when systemd reports it
    failed, and ``stopped`` for everything else, including units that were
    never started or whose quadlet has not been generated yet.
    """

    def __init__(self, systemd: SystemdProvider) -> None:
        """Keep a reference to the systemd provider used for probing."""
        self._systemd = systemd

    def status(self, unit: str) -> InstanceStatus:
        """Return the status for *unit*."""
        if self._systemd.is_active(unit):
            return InstanceStatus(state=STATE_RUNNING, detail=f"{unit} is active")
        if self._systemd.is_failed(unit):
            return InstanceStatus(state=STATE_FAILED, detail=f"{unit} has failed")
        return InstanceStatus(state=STATE_STOPPED, detail=f"{unit} is not active")


__all__ = [
    "STATE_FAILED",
    "STATE_RUNNING",
    "STATE_STOPPED",
    "InstanceStatus",
    "InstanceStatusProvider",
]
