"""Tests for instance naming and path derivation."""
from __future__ import annotations

from pathlib import Path

import pytest

from clawctl.errors import InvalidNameError, ProtectedInstanceError
from clawctl.naming import (
    DefaultInstance,
    InstanceLayout,
    NamedInstance,
    derive_paths,
    parse_instance,
    validate_name,
)

LAYOUT = InstanceLayout(
    home=Path("/data/openclaw"),
    quadlet_dir=Path("/data/openclaw/.config/containers/systemd"),
)


@pytest.mark.parametrize("name", ["dev", "test-01", "my-bot", "a", "9", "a-b-c"])
def test_validate_name_accepts_valid_names(name: str) -> None:
    """Lowercase alphanumerics with inner hyphens are accepted."""
    assert validate_name(name) == NamedInstance(name)


@pytest.mark.parametrize("name", ["Dev", "-dev", "dev-", "dev_1", "a b", "dev.1", "ünï"])
def test_validate_name_rejects_invalid_names(name: str) -> None:
    """Anything outside the name pattern is rejected."""
    with pytest.raises(InvalidNameError):
        validate_name(name)


@pytest.mark.parametrize("name", ["", None])
def test_validate_name_requires_a_name(name: str | None) -> None:
    """A missing name has its own message."""
    with pytest.raises(InvalidNameError, match="Instance name is required"):
        validate_name(name)


def test_validate_name_protects_default() -> None:
    """The reserved name cannot be used for new instances."""
    with pytest.raises(ProtectedInstanceError):
        validate_name("default")


def test_parse_instance_resolves_variants() -> None:
    """Only the reserved name maps to the default variant."""
    assert isinstance(parse_instance("default"), DefaultInstance)
    assert parse_instance("dev") == NamedInstance("dev")
    assert parse_instance("Not_Valid") == NamedInstance("Not_Valid")


def test_default_instance_uses_legacy_paths() -> None:
    """The default instance keeps the unqualified directories and service."""
    paths = derive_paths(LAYOUT, DefaultInstance())

    assert paths.state_dir == Path("/data/openclaw/.openclaw")
    assert paths.workspace_dir == Path("/data/openclaw/workspace")
    assert paths.service_name == "openclaw"
    assert paths.unit == "openclaw.service"
    assert paths.unit_file == LAYOUT.quadlet_dir / "openclaw.container"


def test_named_instance_paths() -> None:
    """Named instances get suffixed directories, service and quadlet."""
    paths = derive_paths(LAYOUT, NamedInstance("dev"))

    assert paths.state_dir == Path("/data/openclaw/.openclaw-dev")
    assert paths.workspace_dir == Path("/data/openclaw/workspace-dev")
    assert paths.service_name == "openclaw-dev"
    assert paths.container_name == "openclaw-dev"
    assert paths.unit == "openclaw-dev.service"
    assert paths.unit_file == LAYOUT.quadlet_dir / "openclaw-dev.container"
    assert paths.config_file == Path("/data/openclaw/.openclaw-dev/openclaw.json")
    assert paths.env_file == Path("/data/openclaw/.openclaw-dev/.env")


def test_distinct_names_never_share_paths() -> None:
    """Different names derive different state dirs and services."""
    names = ["dev", "dev-1", "dev1", "d-ev", "test"]
    derived = [derive_paths(LAYOUT, NamedInstance(name)) for name in names]
    derived.append(derive_paths(LAYOUT, DefaultInstance()))

    assert len({paths.state_dir for paths in derived}) == len(derived)
    assert len({paths.service_name for paths in derived}) == len(derived)
    assert len({paths.unit_file for paths in derived}) == len(derived)
