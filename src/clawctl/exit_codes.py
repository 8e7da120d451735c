"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Subprocess failures forward the external command's own status instead.
    """

    OK = 0
    ERROR = 1
