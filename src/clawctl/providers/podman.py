"""Read-only Podman queries used by ``clawctl status``."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import SubprocessFailure
from .systemd import COMMAND_NOT_FOUND

FIELD_SEPARATOR = "|"
SUMMARY_FORMAT = FIELD_SEPARATOR.join(
    (
        "{{.State.Status}}",
        "{{.State.StartedAt}}",
        "{{.State.Pid}}",
        "{{.HostConfig.Memory}}",
        "{{.HostConfig.NanoCpus}}",
    )
)


class PodmanError(SubprocessFailure):
    """Raised when a podman command fails."""


@dataclass(frozen=True, slots=True)
class ContainerSummary:
    """Runtime facts about an instance container."""

    status: str
    started_at: str
    pid: str
    memory: str
    nano_cpus: str

    def describe(self) -> list[str]:
        """Return the human-readable summary lines."""
        return [
            f"{self.status} since {self.started_at}",
            f"PID={self.pid} Memory={self.memory} CPUs={self.nano_cpus}",
        ]

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "status": self.status,
            "started_at": self.started_at,
            "pid": self.pid,
            "memory": self.memory,
            "nano_cpus": self.nano_cpus,
        }


@dataclass(slots=True)
class PodmanProvider:
    """Thin wrapper over the ``podman`` binary."""

    bin: str = "podman"
    env: Mapping[str, str] | None = None

    def container_exists(self, name: str) -> bool:
        """Return ``True`` when a container called *name* exists."""
        try:
            result = self._run(["container", "exists", name])
        except PodmanError:
            return False
        return result.returncode == 0

    def inspect_summary(self, name: str) -> ContainerSummary | None:
        """Return the summary for container *name*, or ``None`` if unavailable."""
        try:
            result = self._run(["inspect", name, "--format", SUMMARY_FORMAT])
        except PodmanError:
            return None
        if result.returncode != 0:
            return None
        lines = (result.stdout or "").strip().splitlines()
        if not lines:
            return None
        fields = lines[0].split(FIELD_SEPARATOR)
        if len(fields) != 5:
            return None
        status, started_at, pid, memory, nano_cpus = (field.strip() for field in fields)
        return ContainerSummary(
            status=status,
            started_at=started_at,
            pid=pid,
            memory=memory,
            nano_cpus=nano_cpus,
        )

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.bin, *args]
        try:
            return subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                env=dict(self.env) if self.env is not None else None,
            )
        except FileNotFoundError as exc:
            raise PodmanError(
                f"{self.bin} not found: {exc}",
                returncode=COMMAND_NOT_FOUND,
                command=command,
            ) from exc


__all__ = ["ContainerSummary", "PodmanError", "PodmanProvider"]
