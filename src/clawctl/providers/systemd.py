"""Systemd provider for managing instance user units."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import SubprocessFailure

COMMAND_NOT_FOUND = 127


class SystemdError(SubprocessFailure):
    """Raised when systemctl or journalctl exits with a failure status."""


@dataclass(slots=True)
class SystemdProvider:
    """Drive ``systemctl --user`` and ``journalctl --user`` for quadlet units.

    Quadlet files are turned into units by the user generator on
    ``daemon-reload``; this provider never writes unit files itself.
    """

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    env: Mapping[str, str] | None = None

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Regenerate units from quadlet files."""
        return self._systemctl("daemon-reload")

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* is active."""
        return self._query_state("is-active", unit)

    def is_failed(self, unit: str) -> bool:
        """Return ``True`` when *unit* is in the failed state."""
        return self._query_state("is-failed", unit)

    def status(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Return the status output for *unit* (never raises on exit status)."""
        return self._systemctl("status", unit, "--no-pager", check=False)

    def logs(self, unit: str, *, lines: int = 50) -> subprocess.CompletedProcess[str]:
        """Return the last *lines* journal entries for *unit*."""
        args = ["--user", "-u", unit, "--no-pager", "-n", str(lines)]
        return self._run_command(
            [self.journalctl_bin, *args],
            check=True,
            error_prefix=f"{self.journalctl_bin} -u {unit}",
        )

    # ------------------------------------------------------------------
    def _query_state(self, command: str, unit: str) -> bool:
        """Run a state query; a missing ``systemctl`` answers ``False``."""
        try:
            result = self._systemctl(command, unit, "--quiet", check=False)
        except SystemdError as exc:
            if exc.returncode == COMMAND_NOT_FOUND:
                return False
            raise
        return result.returncode == 0

    def _systemctl(
        self,
        command: str,
        *extra: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, "--user", command, *extra]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} --user {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(self.env) if self.env is not None else None,
            )
        except FileNotFoundError as exc:
            raise SystemdError(
                f"{args[0]} not found: {exc}",
                returncode=COMMAND_NOT_FOUND,
                command=args,
            ) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                command=args,
                stdout=stdout,
                stderr=stderr,
            )
        return result


__all__ = ["SystemdError", "SystemdProvider"]
