"""Centralized naming conventions for instance paths and services.

All components that need an instance's state directory, workspace, quadlet
file or service name MUST derive them here from the instance name. Nothing
caches these values; they are recomputed on every use so a change to the
naming rules can never leave stale paths behind.

The reserved ``default`` instance predates multi-instance support and uses
the legacy unqualified paths. It is resolved once, into
:class:`DefaultInstance`, so downstream code dispatches on the variant
rather than comparing strings.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, TypeAlias

from .errors import InvalidNameError, ProtectedInstanceError

DEFAULT_INSTANCE_NAME = "default"
SERVICE_PREFIX = "openclaw"
STATE_DIR_PREFIX = ".openclaw"
WORKSPACE_PREFIX = "workspace"
CONFIG_FILE_NAME = "openclaw.json"
ENV_FILE_NAME = ".env"
QUADLET_SUFFIX = ".container"

NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


@dataclass(frozen=True, slots=True)
class DefaultInstance:
    """The reserved, pre-existing instance."""

    name: ClassVar[str] = DEFAULT_INSTANCE_NAME


@dataclass(frozen=True, slots=True)
class NamedInstance:
    """Any instance created through ``clawctl create``."""

    name: str


InstanceRef: TypeAlias = DefaultInstance | NamedInstance


@dataclass(frozen=True, slots=True)
class InstanceLayout:
    """Roots every derived path hangs off."""

    home: Path
    quadlet_dir: Path


@dataclass(frozen=True, slots=True)
class InstancePaths:
    """Filesystem locations and service identifiers for one instance."""

    state_dir: Path
    workspace_dir: Path
    service_name: str
    unit_file: Path

    @property
    def unit(self) -> str:
        """Return the systemd unit generated from the quadlet file."""
        return f"{self.service_name}.service"

    @property
    def container_name(self) -> str:
        """Return the container name Podman assigns to the instance."""
        return self.service_name

    @property
    def config_file(self) -> Path:
        """Return the instance ``openclaw.json`` path."""
        return self.state_dir / CONFIG_FILE_NAME

    @property
    def env_file(self) -> Path:
        """Return the instance-local environment file path."""
        return self.state_dir / ENV_FILE_NAME


def validate_name(name: str | None) -> NamedInstance:
    """Validate a name for a new instance and return its reference."""
    if not name:
        raise InvalidNameError("Instance name is required.")
    if name == DEFAULT_INSTANCE_NAME:
        raise ProtectedInstanceError(
            f"'{DEFAULT_INSTANCE_NAME}' is reserved for the existing instance."
        )
    if not NAME_PATTERN.fullmatch(name):
        raise InvalidNameError(
            f"Invalid name '{name}'. Must be lowercase alphanumeric + hyphens, "
            "no leading/trailing hyphens. Examples: dev, test-01, my-bot"
        )
    return NamedInstance(name)


def parse_instance(name: str) -> InstanceRef:
    """Resolve *name* into an instance reference without validating it."""
    if name == DEFAULT_INSTANCE_NAME:
        return DefaultInstance()
    return NamedInstance(name)


def derive_paths(layout: InstanceLayout, ref: InstanceRef) -> InstancePaths:
    """Return the derived paths for *ref* under *layout*."""
    if isinstance(ref, DefaultInstance):
        state_dir = layout.home / STATE_DIR_PREFIX
        workspace_dir = layout.home / WORKSPACE_PREFIX
        service_name = SERVICE_PREFIX
    else:
        state_dir = layout.home / f"{STATE_DIR_PREFIX}-{ref.name}"
        workspace_dir = layout.home / f"{WORKSPACE_PREFIX}-{ref.name}"
        service_name = f"{SERVICE_PREFIX}-{ref.name}"
    return InstancePaths(
        state_dir=state_dir,
        workspace_dir=workspace_dir,
        service_name=service_name,
        unit_file=layout.quadlet_dir / f"{service_name}{QUADLET_SUFFIX}",
    )


__all__ = [
    "DEFAULT_INSTANCE_NAME",
    "NAME_PATTERN",
    "DefaultInstance",
    "InstanceLayout",
    "InstancePaths",
    "InstanceRef",
    "NamedInstance",
    "derive_paths",
    "parse_instance",
    "validate_name",
]
