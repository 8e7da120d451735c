"""Error taxonomy shared by the clawctl components.

Every error is terminal for the current command. The CLI renders the
message prefixed with ``ERROR:`` on stderr and exits with
:attr:`~clawctl.exit_codes.ExitCode.ERROR`, except for
:class:`SubprocessFailure` whose exit status is forwarded unchanged.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class ClawctlError(RuntimeError):
    """Base class for all clawctl failures."""

    exit_code: int = ExitCode.ERROR


class InvalidNameError(ClawctlError):
    """Raised when an instance name fails validation."""


class AlreadyExistsError(ClawctlError):
    """Raised when creating an instance whose name is already registered."""


class NotFoundError(ClawctlError):
    """Raised when an instance name is not present in the port registry."""


class ProtectedInstanceError(ClawctlError):
    """Raised for operations that are forbidden on the reserved instance."""


class TemplateMissingError(ClawctlError):
    """Raised when a required template file cannot be located."""


class TemplateRenderError(ClawctlError):
    """Raised when template fields and supplied values disagree."""


class MissingConfigError(ClawctlError):
    """Raised when an instance config file is absent on disk."""


class WrongIdentityError(ClawctlError):
    """Raised when clawctl is not running as the configured service user."""


class SubprocessFailure(ClawctlError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int,
        command: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Record the failing command and its captured output."""
        super().__init__(message)
        self.returncode = returncode
        self.command = list(command)
        self.stdout = stdout
        self.stderr = stderr

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        """Forward the external command's status (never zero or negative)."""
        return self.returncode if self.returncode > 0 else ExitCode.ERROR


__all__ = [
    "AlreadyExistsError",
    "ClawctlError",
    "InvalidNameError",
    "MissingConfigError",
    "NotFoundError",
    "ProtectedInstanceError",
    "SubprocessFailure",
    "TemplateMissingError",
    "TemplateRenderError",
    "WrongIdentityError",
]
