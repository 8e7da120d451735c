"""Instance lifecycle orchestration.

:class:`InstanceManager` composes the port registry, the port allocator, the
naming rules and the template engine with the user service manager and
Podman. It owns no state of its own: the registry file is the record of
which instances exist and every path is derived from the instance name on
demand.

Each public operation accepts an optional :class:`~clawctl.logging.OperationScope`
so the CLI can capture the steps that were performed in the operations log.
"""
from __future__ import annotations

import os
import secrets
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dotenv import set_key

from .config import AppConfig
from .errors import (
    AlreadyExistsError,
    InvalidNameError,
    MissingConfigError,
    NotFoundError,
    ProtectedInstanceError,
)
from .locking import LockManager
from .logging import OperationScope
from .naming import (
    DEFAULT_INSTANCE_NAME,
    DefaultInstance,
    InstanceLayout,
    InstancePaths,
    InstanceRef,
    derive_paths,
    parse_instance,
    validate_name,
)
from .ports import PortAllocator, PortPair
from .providers import (
    ContainerSummary,
    InstanceStatus,
    InstanceStatusProvider,
    PodmanProvider,
    SystemdError,
    SystemdProvider,
)
from .state import PortRegistry, RegistryEntry
from .templates import CONFIG_TEMPLATE, UNIT_TEMPLATE, TemplateEngine

TOKEN_ENV_KEY = "OPENCLAW_GATEWAY_TOKEN"
TOKEN_BYTES = 16
SECRET_FILE_MODE = 0o600
UNIT_FILE_MODE = 0o644
DEFAULT_LOG_LINES = 50


class DestroyQuestion(Enum):
    """Questions asked, in order, while destroying an instance."""

    CONFIRM = "confirm"
    REMOVE_STATE = "remove-state"
    REMOVE_WORKSPACE = "remove-workspace"


Confirmer = Callable[[DestroyQuestion, InstancePaths], bool]


@dataclass(frozen=True, slots=True)
class AnswerSheet:
    """A non-interactive :data:`Confirmer` with fixed answers."""

    confirm: bool = True
    remove_state: bool = False
    remove_workspace: bool = False

    def __call__(self, question: DestroyQuestion, paths: InstancePaths) -> bool:
        """Return the prepared answer for *question*."""
        if question is DestroyQuestion.CONFIRM:
            return self.confirm
        if question is DestroyQuestion.REMOVE_STATE:
            return self.remove_state
        return self.remove_workspace


@dataclass(frozen=True, slots=True)
class CreateResult:
    """Outcome of :meth:`InstanceManager.create`."""

    name: str
    ports: PortPair
    paths: InstancePaths
    busy_ports: tuple[int, ...] = ()
    registry_initialised: bool = False

    @property
    def warnings(self) -> list[str]:
        """Return human-readable warnings about the allocation."""
        return [
            f"Port {port} is already bound on the host; the instance may fail to start."
            for port in self.busy_ports
        ]


@dataclass(frozen=True, slots=True)
class DestroyResult:
    """Outcome of :meth:`InstanceManager.destroy`."""

    name: str
    paths: InstancePaths
    aborted: bool = False
    stopped: bool = False
    unit_removed: bool = False
    state_removed: bool = False
    workspace_removed: bool = False
    records_removed: int = 0


@dataclass(frozen=True, slots=True)
class InstanceSummary:
    """One row of ``clawctl list``."""

    name: str
    state: str
    gateway_port: int
    bridge_port: int
    container_name: str
    state_dir: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state,
            "gateway_port": self.gateway_port,
            "bridge_port": self.bridge_port,
            "container": self.container_name,
            "state_dir": str(self.state_dir),
        }


@dataclass(frozen=True, slots=True)
class StatusReport:
    """Detailed status of a single instance."""

    entry: RegistryEntry
    paths: InstancePaths
    status: InstanceStatus
    systemd_output: str = ""
    container: ContainerSummary | None = None

    @property
    def name(self) -> str:
        """Return the instance name."""
        return self.entry.name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.entry.name,
            "state": self.status.state,
            "detail": self.status.detail,
            "ports": {
                "gateway": self.entry.gateway_port,
                "bridge": self.entry.bridge_port,
            },
            "paths": {
                "state_dir": str(self.paths.state_dir),
                "workspace_dir": str(self.paths.workspace_dir),
                "unit_file": str(self.paths.unit_file),
                "config_file": str(self.paths.config_file),
            },
            "service": self.paths.unit,
            "systemd_output": self.systemd_output,
            "container": self.container.to_dict() if self.container else None,
        }


@dataclass(slots=True)
class InstanceManager:
    """Create, inspect and remove OpenClaw instances."""

    config: AppConfig
    registry: PortRegistry
    allocator: PortAllocator
    templates: TemplateEngine
    locks: LockManager
    systemd: SystemdProvider
    podman: PodmanProvider
    status_provider: InstanceStatusProvider = field(init=False)

    def __post_init__(self) -> None:
        """Derive the status provider from the systemd provider."""
        self.status_provider = InstanceStatusProvider(self.systemd)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        env: Mapping[str, str] | None = None,
    ) -> InstanceManager:
        """Build a manager and its collaborators from *config*."""
        return cls(
            config=config,
            registry=PortRegistry(config.registry_file),
            allocator=PortAllocator(default_gateway=config.gateway_port),
            templates=TemplateEngine.with_overrides(
                config.templates_dir,
                include_builtin=config.builtin_templates,
            ),
            locks=LockManager(config.lock_dir, config.lock_timeout),
            systemd=SystemdProvider(
                systemctl_bin=config.systemd.systemctl_bin,
                journalctl_bin=config.systemd.journalctl_bin,
                env=env,
            ),
            podman=PodmanProvider(bin=config.podman.bin, env=env),
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    @property
    def layout(self) -> InstanceLayout:
        """Return the roots used for path derivation."""
        return InstanceLayout(home=self.config.home, quadlet_dir=self.config.quadlet_dir)

    def paths_for(self, ref: InstanceRef) -> InstancePaths:
        """Return the derived paths for *ref*."""
        return derive_paths(self.layout, ref)

    def ensure_registry(self, *, op: OperationScope | None = None) -> bool:
        """Create the registry or add the default record when missing."""
        with self.locks.registry_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            changed = self.registry.ensure(
                DEFAULT_INSTANCE_NAME,
                self.config.gateway_port,
                self.config.bridge_port,
            )
        _step(op, "registry.ensure", detail="initialised" if changed else "present")
        return changed

    def require(self, name: str | None) -> tuple[InstanceRef, RegistryEntry]:
        """Return the reference and record for a registered *name*."""
        if not name:
            raise InvalidNameError("Instance name is required.")
        entry = self.registry.lookup(name)
        if entry is None:
            raise NotFoundError(
                f"Instance '{name}' not found. Use 'list' to see available instances."
            )
        return parse_instance(name), entry

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create(self, name: str | None, *, op: OperationScope | None = None) -> CreateResult:
        """Provision directories, config, token and quadlet for a new instance."""
        ref = validate_name(name)
        if self.registry.exists(ref.name):
            raise AlreadyExistsError(f"Instance '{ref.name}' already exists.")
        self.templates.require(UNIT_TEMPLATE, CONFIG_TEMPLATE)
        _step(op, "templates.check")
        paths = self.paths_for(ref)

        with self.locks.mutate_instances([ref.name]) as bundle:
            if op is not None:
                op.set_lock_wait_ms(bundle.wait_ms)
            initialised = self.registry.ensure(
                DEFAULT_INSTANCE_NAME,
                self.config.gateway_port,
                self.config.bridge_port,
            )
            if self.registry.exists(ref.name):
                raise AlreadyExistsError(f"Instance '{ref.name}' already exists.")
            pair = self.allocator.allocate(self.registry)
            busy = tuple(self.allocator.probe(pair))
            _step(
                op,
                "ports.allocate",
                status="warning" if busy else "success",
                detail=f"{pair.gateway}/{pair.bridge}",
            )

            for directory in (
                paths.state_dir,
                paths.workspace_dir,
                self.config.shared_skills_dir,
                self.config.quadlet_dir,
            ):
                directory.mkdir(parents=True, exist_ok=True)
            _step(op, "filesystem.mkdir", detail=str(paths.state_dir))

            self.templates.render_to_path(
                CONFIG_TEMPLATE,
                paths.config_file,
                {"GATEWAY_PORT": pair.gateway, "BRIDGE_PORT": pair.bridge},
                mode=SECRET_FILE_MODE,
            )
            _step(op, "config.render", detail=str(paths.config_file))

            write_gateway_token(paths.env_file)
            _step(op, "token.write", detail=str(paths.env_file))

            self.templates.render_to_path(
                UNIT_TEMPLATE,
                paths.unit_file,
                self._unit_values(ref, pair),
                mode=UNIT_FILE_MODE,
            )
            _step(op, "quadlet.render", detail=str(paths.unit_file))

            self.registry.append(ref.name, pair.gateway, pair.bridge)
            _step(op, "registry.append", detail=f"{ref.name}:{pair.gateway}:{pair.bridge}")

        self.systemd.daemon_reload()
        _step(op, "systemd.daemon_reload")
        return CreateResult(
            name=ref.name,
            ports=pair,
            paths=paths,
            busy_ports=busy,
            registry_initialised=initialised,
        )

    def start(self, name: str | None, *, op: OperationScope | None = None) -> InstancePaths:
        """Start the unit of a registered instance."""
        return self._unit_action("start", name, op)

    def stop(self, name: str | None, *, op: OperationScope | None = None) -> InstancePaths:
        """Stop the unit of a registered instance."""
        return self._unit_action("stop", name, op)

    def restart(self, name: str | None, *, op: OperationScope | None = None) -> InstancePaths:
        """Restart the unit of a registered instance."""
        return self._unit_action("restart", name, op)

    def destroy(
        self,
        name: str | None,
        confirmer: Confirmer,
        *,
        op: OperationScope | None = None,
    ) -> DestroyResult:
        """Remove an instance's unit and registry record.

        The state and workspace directories are only removed when the
        confirmer agrees; the registry record is always removed once the
        destroy itself is confirmed.
        """
        if not name:
            raise InvalidNameError("Instance name is required.")
        if isinstance(parse_instance(name), DefaultInstance):
            raise ProtectedInstanceError("Cannot destroy the default instance.")
        ref, _ = self.require(name)
        paths = self.paths_for(ref)

        if not confirmer(DestroyQuestion.CONFIRM, paths):
            _step(op, "destroy.confirm", status="skipped", detail="declined")
            return DestroyResult(name=ref.name, paths=paths, aborted=True)
        _step(op, "destroy.confirm")

        stopped = False
        if self.systemd.is_active(paths.unit):
            self.systemd.stop(paths.unit)
            stopped = True
            _step(op, "systemd.stop", detail=paths.unit)
        else:
            _step(op, "systemd.stop", status="skipped", detail="not-active")

        unit_removed = False
        if paths.unit_file.is_file():
            paths.unit_file.unlink()
            unit_removed = True
            _step(op, "quadlet.remove", detail=str(paths.unit_file))

        self.systemd.daemon_reload()
        _step(op, "systemd.daemon_reload")

        state_removed = False
        if confirmer(DestroyQuestion.REMOVE_STATE, paths):
            state_removed = _remove_tree(paths.state_dir)
            _step(op, "filesystem.remove_state", detail=str(paths.state_dir))
        else:
            _step(op, "filesystem.remove_state", status="skipped", detail="kept")

        workspace_removed = False
        if confirmer(DestroyQuestion.REMOVE_WORKSPACE, paths):
            workspace_removed = _remove_tree(paths.workspace_dir)
            _step(op, "filesystem.remove_workspace", detail=str(paths.workspace_dir))
        else:
            _step(op, "filesystem.remove_workspace", status="skipped", detail="kept")

        with self.locks.registry_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            removed = self.registry.remove(ref.name)
        _step(op, "registry.remove", detail=f"{removed} record(s)")

        return DestroyResult(
            name=ref.name,
            paths=paths,
            stopped=stopped,
            unit_removed=unit_removed,
            state_removed=state_removed,
            workspace_removed=workspace_removed,
            records_removed=removed,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def list(self) -> list[InstanceSummary]:
        """Return a summary for every registered instance in registry order."""
        summaries: list[InstanceSummary] = []
        for entry in self.registry.entries():
            paths = self.paths_for(parse_instance(entry.name))
            state = self.status_provider.status(paths.unit)
            summaries.append(
                InstanceSummary(
                    name=entry.name,
                    state=state.state,
                    gateway_port=entry.gateway_port,
                    bridge_port=entry.bridge_port,
                    container_name=paths.container_name,
                    state_dir=paths.state_dir,
                )
            )
        return summaries

    def status(self, name: str | None, *, op: OperationScope | None = None) -> StatusReport:
        """Collect the registry, systemd and container view of an instance."""
        ref, entry = self.require(name)
        paths = self.paths_for(ref)
        state = self.status_provider.status(paths.unit)
        _step(op, "systemd.state", detail=state.state)

        try:
            result = self.systemd.status(paths.unit)
        except SystemdError as exc:
            systemd_output = str(exc)
            _step(op, "systemd.status", status="warning", detail=str(exc))
        else:
            systemd_output = "\n".join(
                part.rstrip() for part in (result.stdout or "", result.stderr or "") if part.strip()
            )
            _step(op, "systemd.status", detail=f"exit {result.returncode}")

        container: ContainerSummary | None = None
        if self.podman.container_exists(paths.container_name):
            container = self.podman.inspect_summary(paths.container_name)
            _step(op, "podman.inspect", detail=container.status if container else "unavailable")
        else:
            _step(op, "podman.inspect", status="skipped", detail="no-container")

        return StatusReport(
            entry=entry,
            paths=paths,
            status=state,
            systemd_output=systemd_output,
            container=container,
        )

    def logs(
        self,
        name: str | None,
        lines: int = DEFAULT_LOG_LINES,
        *,
        op: OperationScope | None = None,
    ) -> str:
        """Return the last *lines* journal lines of an instance unit."""
        ref, _ = self.require(name)
        paths = self.paths_for(ref)
        result = self.systemd.logs(paths.unit, lines=lines)
        _step(op, "journal.read", detail=f"{paths.unit} -n {lines}")
        return result.stdout or ""

    def config_path(self, name: str | None) -> Path:
        """Return the config file of a registered instance."""
        ref, _ = self.require(name)
        config_file = self.paths_for(ref).config_file
        if not config_file.is_file():
            raise MissingConfigError(f"Config file not found at {config_file}")
        return config_file

    # ------------------------------------------------------------------
    def _unit_action(
        self,
        verb: str,
        name: str | None,
        op: OperationScope | None,
    ) -> InstancePaths:
        ref, _ = self.require(name)
        paths = self.paths_for(ref)
        getattr(self.systemd, verb)(paths.unit)
        _step(op, f"systemd.{verb}", detail=paths.unit)
        return paths

    def _unit_values(self, ref: InstanceRef, pair: PortPair) -> dict[str, object]:
        config = self.config
        return {
            "NAME": ref.name,
            "GATEWAY_PORT": pair.gateway,
            "BRIDGE_PORT": pair.bridge,
            "DNS_PRIMARY": config.dns_primary,
            "DNS_FALLBACK": config.dns_fallback,
            "MEMORY": config.memory_instance,
            "CPUS": config.cpus_instance,
            "IMAGE": config.image,
            "USER_MAPPING": config.user_mapping,
            "OPENCLAW_HOME": str(config.home),
        }


def write_gateway_token(env_file: Path) -> str:
    """Store a fresh gateway token in *env_file* (mode 600) and return it."""
    token = secrets.token_hex(TOKEN_BYTES)
    env_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECRET_FILE_MODE)
    os.close(fd)
    os.chmod(env_file, SECRET_FILE_MODE)
    set_key(str(env_file), TOKEN_ENV_KEY, token, quote_mode="never")
    os.chmod(env_file, SECRET_FILE_MODE)
    return token


def _remove_tree(path: Path) -> bool:
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "AnswerSheet",
    "Confirmer",
    "CreateResult",
    "DestroyQuestion",
    "DestroyResult",
    "InstanceManager",
    "InstanceSummary",
    "StatusReport",
    "write_gateway_token",
]
