"""Tests for the instance lifecycle manager."""
from __future__ import annotations

import json
import re
import stat
from pathlib import Path

import pytest

from clawctl.errors import (
    AlreadyExistsError,
    InvalidNameError,
    MissingConfigError,
    NotFoundError,
    ProtectedInstanceError,
    SubprocessFailure,
    TemplateMissingError,
)
from clawctl.locking import LockTimeoutError
from clawctl.manager import AnswerSheet, DestroyQuestion, InstanceManager, write_gateway_token
from clawctl.naming import InstancePaths
from clawctl.providers import ContainerSummary
from clawctl.templates import TemplateEngine

from conftest import FakePodman, FakeSystemd

TOKEN_LINE = re.compile(r"OPENCLAW_GATEWAY_TOKEN=[0-9a-f]{32}\n")


def _registry_text(manager: InstanceManager) -> str:
    return manager.registry.path.read_text(encoding="utf-8")


def test_end_to_end_scenario(manager: InstanceManager, fake_systemd: FakeSystemd) -> None:
    """Create two instances, destroy one keeping its data, and list the rest."""
    dev = manager.create("dev")
    test = manager.create("test")

    assert tuple(dev.ports) == (18791, 18792)
    assert tuple(test.ports) == (18793, 18794)
    assert _registry_text(manager) == (
        "default:18789:18790\ndev:18791:18792\ntest:18793:18794\n"
    )
    assert fake_systemd.verbs() == ["daemon-reload", "daemon-reload"]

    result = manager.destroy("dev", AnswerSheet(confirm=True))

    assert result.aborted is False
    assert result.unit_removed is True
    assert dev.paths.state_dir.is_dir()
    assert dev.paths.workspace_dir.is_dir()
    assert not dev.paths.unit_file.exists()
    assert _registry_text(manager) == "default:18789:18790\ntest:18793:18794\n"

    listed = manager.list()
    assert [(item.name, item.gateway_port, item.bridge_port) for item in listed] == [
        ("default", 18789, 18790),
        ("test", 18793, 18794),
    ]
    assert all(item.state == "stopped" for item in listed)


def test_create_writes_instance_files(manager: InstanceManager, home: Path) -> None:
    """Create renders the config, token and quadlet with the right modes."""
    result = manager.create("dev")
    paths = result.paths

    assert paths.state_dir == home / ".openclaw-dev"
    assert paths.workspace_dir.is_dir()
    assert manager.config.shared_skills_dir.is_dir()

    config = json.loads(paths.config_file.read_text(encoding="utf-8"))
    assert config["gateway"]["port"] == 18791
    assert stat.S_IMODE(paths.config_file.stat().st_mode) == 0o600

    assert TOKEN_LINE.fullmatch(paths.env_file.read_text(encoding="utf-8"))
    assert stat.S_IMODE(paths.env_file.stat().st_mode) == 0o600

    unit = paths.unit_file.read_text(encoding="utf-8")
    assert paths.unit_file == manager.config.quadlet_dir / "openclaw-dev.container"
    assert "ContainerName=openclaw-dev" in unit
    assert f"Volume={home}/.openclaw-dev:/home/node/.openclaw" in unit
    assert f"--user {manager.config.uid}:{manager.config.gid}" in unit
    assert stat.S_IMODE(paths.unit_file.stat().st_mode) == 0o644


def test_create_initialises_registry(manager: InstanceManager) -> None:
    """The first create also seeds the default record."""
    result = manager.create("dev")

    assert result.registry_initialised is True
    assert manager.registry.lookup("default") is not None


def test_tokens_are_unique_per_instance(manager: InstanceManager) -> None:
    """Every instance gets its own gateway token."""
    first = manager.create("one").paths.env_file.read_text(encoding="utf-8")
    second = manager.create("two").paths.env_file.read_text(encoding="utf-8")

    assert first != second


def test_create_rejects_duplicates(manager: InstanceManager, fake_systemd: FakeSystemd) -> None:
    """A registered name cannot be created twice."""
    manager.create("dev")
    before = _registry_text(manager)

    with pytest.raises(AlreadyExistsError, match="already exists"):
        manager.create("dev")

    assert _registry_text(manager) == before
    assert fake_systemd.verbs() == ["daemon-reload"]


@pytest.mark.parametrize("name", ["default", "Bad_Name", "", None])
def test_create_validates_names(manager: InstanceManager, name: str | None) -> None:
    """Invalid and reserved names never reach the filesystem."""
    with pytest.raises((InvalidNameError, ProtectedInstanceError)):
        manager.create(name)

    assert not manager.registry.path.exists()


def test_create_requires_templates(manager: InstanceManager, home: Path) -> None:
    """Missing templates abort before anything is written."""
    manager.templates = TemplateEngine.with_overrides(home / "templates", include_builtin=False)

    with pytest.raises(TemplateMissingError):
        manager.create("dev")

    assert not (home / ".openclaw-dev").exists()
    assert not manager.registry.path.exists()


def test_create_uses_override_templates(manager: InstanceManager, home: Path) -> None:
    """Templates in ``<home>/templates`` replace the built-in ones."""
    templates = home / "templates"
    templates.mkdir()
    (templates / "openclaw-config.json.tmpl").write_text(
        '{"custom": true, "port": {{GATEWAY_PORT}}, "bridge": {{BRIDGE_PORT}}}\n',
        encoding="utf-8",
    )

    result = manager.create("dev")

    config = json.loads(result.paths.config_file.read_text(encoding="utf-8"))
    assert config == {"custom": True, "port": 18791, "bridge": 18792}


def test_create_reports_busy_ports(
    manager: InstanceManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Ports already bound on the host are warnings, not failures."""
    monkeypatch.setattr(type(manager.allocator), "probe", lambda self, pair: [pair.gateway])

    result = manager.create("dev")

    assert result.busy_ports == (18791,)
    assert "18791" in result.warnings[0]
    assert manager.registry.exists("dev")


@pytest.mark.parametrize("verb", ["start", "stop", "restart"])
def test_unit_actions_delegate_to_systemd(
    manager: InstanceManager,
    fake_systemd: FakeSystemd,
    verb: str,
) -> None:
    """Lifecycle verbs act on the derived unit name."""
    manager.create("dev")
    fake_systemd.calls.clear()

    paths = getattr(manager, verb)("dev")

    assert paths.unit == "openclaw-dev.service"
    assert fake_systemd.calls == [(verb, "openclaw-dev.service")]


def test_default_instance_uses_plain_service(
    manager: InstanceManager,
    fake_systemd: FakeSystemd,
) -> None:
    """The reserved instance maps to ``openclaw.service``."""
    manager.ensure_registry()

    manager.start("default")

    assert fake_systemd.calls == [("start", "openclaw.service")]


@pytest.mark.parametrize("verb", ["start", "stop", "restart", "status", "logs", "config_path"])
def test_unknown_instances_are_not_found(manager: InstanceManager, verb: str) -> None:
    """Operations on unregistered names fail with NotFound."""
    manager.ensure_registry()

    with pytest.raises(NotFoundError, match="ghost"):
        getattr(manager, verb)("ghost")


def test_systemd_failure_keeps_exit_status(
    manager: InstanceManager,
    fake_systemd: FakeSystemd,
) -> None:
    """A failing systemctl call propagates its status."""
    manager.create("dev")
    fake_systemd.failures["start"] = 5

    with pytest.raises(SubprocessFailure) as excinfo:
        manager.start("dev")

    assert excinfo.value.exit_code == 5


def test_destroy_default_is_protected(manager: InstanceManager) -> None:
    """The reserved instance cannot be destroyed."""
    manager.ensure_registry()
    before = _registry_text(manager)

    with pytest.raises(ProtectedInstanceError):
        manager.destroy("default", AnswerSheet())

    assert _registry_text(manager) == before


def test_destroy_unknown_leaves_registry_untouched(manager: InstanceManager) -> None:
    """A failed destroy leaves the registry byte-identical."""
    manager.create("dev")
    before = manager.registry.path.read_bytes()

    with pytest.raises(NotFoundError):
        manager.destroy("ghost", AnswerSheet())

    assert manager.registry.path.read_bytes() == before


def test_destroy_declined_changes_nothing(
    manager: InstanceManager,
    fake_systemd: FakeSystemd,
) -> None:
    """Declining the confirmation aborts before any mutation."""
    created = manager.create("dev")
    before = _registry_text(manager)
    fake_systemd.calls.clear()

    result = manager.destroy("dev", AnswerSheet(confirm=False))

    assert result.aborted is True
    assert _registry_text(manager) == before
    assert created.paths.unit_file.exists()
    assert fake_systemd.calls == []


def test_destroy_stops_active_unit_and_purges(
    manager: InstanceManager,
    fake_systemd: FakeSystemd,
) -> None:
    """An active unit is stopped and purged directories are removed."""
    created = manager.create("dev")
    manager.start("dev")
    fake_systemd.calls.clear()

    result = manager.destroy(
        "dev",
        AnswerSheet(confirm=True, remove_state=True, remove_workspace=True),
    )

    assert result.stopped is True
    assert result.state_removed is True
    assert result.workspace_removed is True
    assert result.records_removed == 1
    assert fake_systemd.verbs() == ["stop", "daemon-reload"]
    assert not created.paths.state_dir.exists()
    assert not created.paths.workspace_dir.exists()


def test_destroy_asks_questions_in_order(manager: InstanceManager) -> None:
    """The confirmer is consulted for confirm, state and workspace in turn."""
    manager.create("dev")
    asked: list[DestroyQuestion] = []

    def confirmer(question: DestroyQuestion, paths: InstancePaths) -> bool:
        asked.append(question)
        return question is not DestroyQuestion.REMOVE_WORKSPACE

    result = manager.destroy("dev", confirmer)

    assert asked == [
        DestroyQuestion.CONFIRM,
        DestroyQuestion.REMOVE_STATE,
        DestroyQuestion.REMOVE_WORKSPACE,
    ]
    assert result.state_removed is True
    assert result.workspace_removed is False


def test_create_destroy_round_trip(manager: InstanceManager) -> None:
    """Creating then destroying an instance restores the registry content."""
    manager.ensure_registry()
    before = _registry_text(manager)

    manager.create("dev")
    manager.destroy("dev", AnswerSheet(remove_state=True, remove_workspace=True))

    assert _registry_text(manager) == before


def test_status_of_never_started_instance(manager: InstanceManager) -> None:
    """An instance that was never started reports stopped without errors."""
    manager.create("dev")

    report = manager.status("dev")

    assert report.status.state == "stopped"
    assert report.entry.gateway_port == 18791
    assert "inactive" in report.systemd_output
    assert report.container is None
    assert report.to_dict()["service"] == "openclaw-dev.service"


def test_status_includes_container_summary(
    manager: InstanceManager,
    fake_systemd: FakeSystemd,
    fake_podman: FakePodman,
) -> None:
    """A running container contributes its inspect summary."""
    manager.create("dev")
    manager.start("dev")
    fake_podman.containers["openclaw-dev"] = ContainerSummary(
        status="running",
        started_at="2026-01-02T03:04:05Z",
        pid="4242",
        memory="4294967296",
        nano_cpus="2000000000",
    )

    report = manager.status("dev")

    assert report.status.state == "running"
    assert report.container is not None
    assert report.to_dict()["container"]["pid"] == "4242"  # type: ignore[index]


def test_failed_unit_is_reported(manager: InstanceManager, fake_systemd: FakeSystemd) -> None:
    """A failed unit shows up as failed in the listing."""
    manager.create("dev")
    fake_systemd.failed.add("openclaw-dev.service")

    states = {item.name: item.state for item in manager.list()}

    assert states == {"default": "stopped", "dev": "failed"}


def test_logs_reads_journal(manager: InstanceManager, fake_systemd: FakeSystemd) -> None:
    """Logs return journal output for the requested line count."""
    manager.create("dev")
    fake_systemd.journal = "hello\n"

    assert manager.logs("dev", 100) == "hello\n"
    assert fake_systemd.calls[-1] == ("logs", "openclaw-dev.service", "100")


def test_config_path_requires_file(manager: InstanceManager) -> None:
    """The config command needs the rendered file on disk."""
    created = manager.create("dev")

    assert manager.config_path("dev") == created.paths.config_file

    created.paths.config_file.unlink()
    with pytest.raises(MissingConfigError, match="Config file not found"):
        manager.config_path("dev")


def test_write_gateway_token_replaces_previous_token(tmp_path: Path) -> None:
    """Re-writing the env file yields a single fresh token line."""
    env_file = tmp_path / "state" / ".env"

    first = write_gateway_token(env_file)
    second = write_gateway_token(env_file)

    assert first != second
    assert env_file.read_text(encoding="utf-8") == f"OPENCLAW_GATEWAY_TOKEN={second}\n"
    assert stat.S_IMODE(env_file.stat().st_mode) == 0o600


def test_create_waits_for_registry_lock(manager: InstanceManager, home: Path) -> None:
    """Create allocates and appends only while holding the registry lock."""
    with manager.locks.registry_lock():
        with pytest.raises(LockTimeoutError):
            manager.create("dev")

    assert not manager.registry.path.exists()
    assert not (home / ".openclaw-dev").exists()


def test_destroy_waits_for_registry_lock(manager: InstanceManager) -> None:
    """Destroy rewrites the registry only while holding the registry lock."""
    manager.create("dev")
    before = manager.registry.path.read_bytes()

    with manager.locks.registry_lock():
        with pytest.raises(LockTimeoutError):
            manager.destroy("dev", AnswerSheet(confirm=True))

    assert manager.registry.path.read_bytes() == before
    assert manager.registry.exists("dev")
