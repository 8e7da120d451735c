"""Helpers for interacting with the clawctl port registry.

The registry (``<home>/.port-registry`` by default) is the single source of
truth for which instances exist. It is a plain text file holding one
``name:gateway_port:bridge_port`` record per line. Appends extend the file in
place; removals rewrite it through a temporary file followed by
``os.replace`` so a crash mid-write can never truncate the registry.

The registry performs no locking and no duplicate checks of its own. Callers
serialise read-modify-write sequences with :class:`clawctl.locking.LockManager`
and check :meth:`PortRegistry.exists` before appending.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from ..errors import ClawctlError

FIELD_SEPARATOR = ":"


class StateRegistryError(ClawctlError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True, slots=True)
class RegistryEntry:
    """One registered instance and its reserved port pair."""

    name: str
    gateway_port: int
    bridge_port: int

    def to_line(self) -> str:
        """Return the on-disk encoding of the entry (without newline)."""
        return FIELD_SEPARATOR.join((self.name, str(self.gateway_port), str(self.bridge_port)))


@dataclass(frozen=True)
class PortRegistry:
    """High-level interface to the flat-file port registry."""

    path: Path
    mode: int = 0o644

    def __post_init__(self) -> None:
        """Normalise the registry path after initialisation."""
        object.__setattr__(self, "path", self.path.expanduser())

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def ensure(self, default_name: str, default_gateway: int, default_bridge: int) -> bool:
        """Make sure the registry exists and holds the default record.

        Returns ``True`` when the file was created or the default record had
        to be appended; calling it again is then a no-op.
        """
        default = RegistryEntry(default_name, default_gateway, default_bridge)
        if not self.path.exists():
            self._write_lines([default.to_line()])
            return True
        if self.exists(default_name):
            return False
        self.append(default.name, default.gateway_port, default.bridge_port)
        return True

    def entries(self) -> list[RegistryEntry]:
        """Return all well-formed records in file order."""
        return [entry for _, entry in self._iter_records() if entry is not None]

    def lookup(self, name: str) -> RegistryEntry | None:
        """Return the first record for *name*, if present."""
        for entry in self.entries():
            if entry.name == name:
                return entry
        return None

    def exists(self, name: str) -> bool:
        """Return ``True`` when *name* has a record."""
        return self.lookup(name) is not None

    def append(self, name: str, gateway_port: int, bridge_port: int) -> RegistryEntry:
        """Append a record for *name*; uniqueness is the caller's concern."""
        entry = RegistryEntry(name, gateway_port, bridge_port)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        prefix = ""
        if self.path.exists():
            try:
                existing = self.path.read_bytes()
            except OSError as exc:
                raise StateRegistryError(f"Failed to read registry {self.path}: {exc}") from exc
            if existing and not existing.endswith(b"\n"):
                prefix = "\n"
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(f"{prefix}{entry.to_line()}\n")
        except OSError as exc:
            raise StateRegistryError(f"Failed to append to registry {self.path}: {exc}") from exc
        return entry

    def remove(self, name: str) -> int:
        """Rewrite the registry without any record for *name*.

        Lines that do not belong to *name* are preserved verbatim, including
        ones that fail to parse. Returns the number of records removed.
        """
        kept: list[str] = []
        removed = 0
        for line, entry in self._iter_records():
            if entry is not None and entry.name == name:
                removed += 1
                continue
            kept.append(line)
        self._write_lines(kept)
        return removed

    # ------------------------------------------------------------------
    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry {self.path}: {exc}") from exc

    def _iter_records(self) -> Iterator[tuple[str, RegistryEntry | None]]:
        for line in self._read_lines():
            yield line, _parse_line(line)

    def _write_lines(self, lines: list[str]) -> None:
        """Atomically replace the registry with *lines*."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f"{self.path.name}.",
            suffix=".tmp",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write("".join(f"{line}\n" for line in lines))
            os.chmod(tmp_path, self.mode)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _parse_line(line: str) -> RegistryEntry | None:
    """Return the entry encoded by *line*, or ``None`` if it is malformed."""
    parts = line.strip().split(FIELD_SEPARATOR)
    if len(parts) != 3:
        return None
    name, gateway_raw, bridge_raw = parts
    if not name:
        return None
    try:
        return RegistryEntry(name, int(gateway_raw), int(bridge_raw))
    except ValueError:
        return None


__all__ = ["FIELD_SEPARATOR", "PortRegistry", "RegistryEntry", "StateRegistryError"]
