"""State management helpers for clawctl."""
from __future__ import annotations

from .registry import PortRegistry, RegistryEntry, StateRegistryError

__all__ = ["PortRegistry", "RegistryEntry", "StateRegistryError"]
