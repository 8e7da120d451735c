"""Shared fixtures for the clawctl test suite."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from clawctl.config import AppConfig, load_config
from clawctl.locking import LockManager
from clawctl.manager import InstanceManager
from clawctl.ports import PortAllocator
from clawctl.providers import ContainerSummary, SystemdError
from clawctl.state import PortRegistry
from clawctl.templates import TemplateEngine


class FakeSystemd:
    """Record ``systemctl --user`` calls instead of running them."""

    def __init__(self) -> None:
        """Start with no active or failed units."""
        self.calls: list[tuple[str, ...]] = []
        self.active: set[str] = set()
        self.failed: set[str] = set()
        self.failures: dict[str, int] = {}
        self.journal = ""

    def verbs(self) -> list[str]:
        """Return the recorded verbs in call order."""
        return [call[0] for call in self.calls]

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        result = self._run("start", unit)
        self.active.add(unit)
        return result

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        result = self._run("stop", unit)
        self.active.discard(unit)
        return result

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        result = self._run("restart", unit)
        self.active.add(unit)
        return result

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        return self._run("daemon-reload")

    def is_active(self, unit: str) -> bool:
        return unit in self.active

    def is_failed(self, unit: str) -> bool:
        return unit in self.failed

    def status(self, unit: str) -> subprocess.CompletedProcess[str]:
        self.calls.append(("status", unit))
        return subprocess.CompletedProcess(
            ["systemctl", "--user", "status", unit],
            3,
            stdout=f"{unit} - OpenClaw gateway\n   Active: inactive (dead)\n",
            stderr="",
        )

    def logs(self, unit: str, *, lines: int = 50) -> subprocess.CompletedProcess[str]:
        self._run("logs", unit, str(lines))
        return subprocess.CompletedProcess(["journalctl"], 0, stdout=self.journal, stderr="")

    def _run(self, verb: str, *args: str) -> subprocess.CompletedProcess[str]:
        self.calls.append((verb, *args))
        returncode = self.failures.get(verb)
        if returncode:
            raise SystemdError(
                f"systemctl --user {verb} failed (exit {returncode}): boom",
                returncode=returncode,
                command=["systemctl", "--user", verb, *args],
            )
        return subprocess.CompletedProcess(["systemctl", "--user", verb, *args], 0, "", "")


class FakePodman:
    """In-memory stand-in for the Podman provider."""

    def __init__(self) -> None:
        """Start without containers."""
        self.containers: dict[str, ContainerSummary] = {}

    def container_exists(self, name: str) -> bool:
        return name in self.containers

    def inspect_summary(self, name: str) -> ContainerSummary | None:
        return self.containers.get(name)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Return the OpenClaw home directory used by a test."""
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def app_config(tmp_path: Path, home: Path) -> AppConfig:
    """Return a configuration rooted under the temporary home."""
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={"home": str(home), "lock_timeout": 1.0},
    )


@pytest.fixture
def fake_systemd() -> FakeSystemd:
    """Return a recording systemd provider."""
    return FakeSystemd()


@pytest.fixture
def fake_podman() -> FakePodman:
    """Return an in-memory podman provider."""
    return FakePodman()


@pytest.fixture
def manager(
    app_config: AppConfig,
    fake_systemd: FakeSystemd,
    fake_podman: FakePodman,
    monkeypatch: pytest.MonkeyPatch,
) -> InstanceManager:
    """Return an instance manager wired to fake providers."""
    monkeypatch.setattr(PortAllocator, "probe", lambda self, pair: [])
    return InstanceManager(
        config=app_config,
        registry=PortRegistry(app_config.registry_file),
        allocator=PortAllocator(default_gateway=app_config.gateway_port),
        templates=TemplateEngine.with_overrides(app_config.templates_dir),
        locks=LockManager(app_config.lock_dir, app_config.lock_timeout),
        systemd=fake_systemd,  # type: ignore[arg-type]
        podman=fake_podman,  # type: ignore[arg-type]
    )
