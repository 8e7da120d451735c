"""Configuration loader for clawctl.

Configuration values are read once at start-up from multiple sources, lowest
priority first:

1. Built-in defaults.
2. ``/etc/clawctl/config.yml`` (or an override path).
3. ``<home>/.env``, the shell-style file the provisioning scripts source.
4. Environment variables prefixed with ``OPENCLAW_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys map onto configuration keys by stripping the prefix and
lower-casing; double underscores express nesting, e.g.::

    export OPENCLAW_GATEWAY_PORT=28789
    export OPENCLAW_SYSTEMD__SYSTEMCTL_BIN=/usr/bin/systemctl

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Unknown keys in the YAML file are rejected; unknown keys in
the environment are ignored because the ``OPENCLAW_`` prefix is shared with
the agent runtime itself (``OPENCLAW_GATEWAY_TOKEN`` and friends).
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml
from dotenv import dotenv_values

from .errors import ClawctlError

ENV_PREFIX = "OPENCLAW_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DOTENV_NAME = ".env"


class ConfigError(ClawctlError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SystemdConfig:
    """Per-user service manager binaries."""

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class PodmanConfig:
    """Container engine binary."""

    bin: str = "podman"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for clawctl."""

    config_file: Path
    home: Path
    user: str
    uid: int
    gid: int
    image: str
    dns_primary: str
    dns_fallback: str
    gateway_port: int
    bridge_port: int
    memory_default: str
    cpus_default: str
    memory_instance: str
    cpus_instance: str
    templates_dir: Path
    quadlet_dir: Path
    shared_skills_dir: Path
    registry_file: Path
    tool_dir: Path
    logs_dir: Path
    lock_dir: Path
    lock_timeout: float
    builtin_templates: bool
    systemd: SystemdConfig
    podman: PodmanConfig

    @property
    def user_mapping(self) -> str:
        """Return the ``uid:gid`` pair passed to the container engine."""
        return f"{self.uid}:{self.gid}"

    @property
    def runtime_dir(self) -> Path:
        """Return the default ``XDG_RUNTIME_DIR`` for the service user."""
        return Path("/run/user") / str(self.uid)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "home": str(self.home),
            "user": self.user,
            "uid": self.uid,
            "gid": self.gid,
            "image": self.image,
            "dns_primary": self.dns_primary,
            "dns_fallback": self.dns_fallback,
            "gateway_port": self.gateway_port,
            "bridge_port": self.bridge_port,
            "memory_default": self.memory_default,
            "cpus_default": self.cpus_default,
            "memory_instance": self.memory_instance,
            "cpus_instance": self.cpus_instance,
            "templates_dir": str(self.templates_dir),
            "quadlet_dir": str(self.quadlet_dir),
            "shared_skills_dir": str(self.shared_skills_dir),
            "registry_file": str(self.registry_file),
            "tool_dir": str(self.tool_dir),
            "logs_dir": str(self.logs_dir),
            "lock_dir": str(self.lock_dir),
            "lock_timeout": self.lock_timeout,
            "builtin_templates": self.builtin_templates,
            "systemd": self.systemd.to_dict(),
            "podman": self.podman.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/clawctl/config.yml",
    "home": "/data/openclaw",
    "user": "openclaw",
    "uid": None,  # caller uid when absent
    "gid": None,  # caller gid when absent
    "image": "openclaw:local",
    "dns_primary": "100.100.100.100",
    "dns_fallback": "1.1.1.1",
    "gateway_port": 18789,
    "bridge_port": 18790,
    "memory_default": "8g",
    "cpus_default": "4",
    "memory_instance": "4g",
    "cpus_instance": "2",
    # Paths below are derived from ``home`` when absent.
    "templates_dir": None,
    "quadlet_dir": None,
    "shared_skills_dir": None,
    "registry_file": None,
    "tool_dir": None,
    "logs_dir": None,
    "lock_dir": None,
    "lock_timeout": 30.0,
    "builtin_templates": True,
    "systemd": {
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "podman": {
        "bin": "podman",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
NESTED_KEYS: dict[str, set[str]] = {
    "systemd": {"systemctl_bin", "journalctl_bin"},
    "podman": {"bin"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _validate_structure(file_values, source=f"file:{config_path}")
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)

    # The dotenv file lives under ``home``, which itself may come from any
    # higher-priority source.
    home_hint = _resolve_home_hint(merged, env_values, overrides)
    dotenv_values_map = _build_env_overrides(_load_dotenv_file(home_hint / DOTENV_NAME))
    if dotenv_values_map:
        _deep_merge(merged, dotenv_values_map)

    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        override_map = dict(overrides)
        _validate_structure(override_map, source="overrides")
        _deep_merge(merged, override_map)

    merged["config_file"] = str(config_path)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _resolve_home_hint(
    merged: Mapping[str, object],
    env_values: Mapping[str, object],
    overrides: Mapping[str, object] | None,
) -> Path:
    for source in (overrides or {}, env_values):
        if source.get("home") is not None:
            return _to_path(source["home"])
    return _to_path(merged.get("home"))


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _load_dotenv_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        return {}
    try:
        values = dotenv_values(path)
    except OSError as exc:
        raise ConfigError(f"Failed to read environment file {path}: {exc}") from exc
    return {key: value for key, value in values.items() if value is not None}


def _validate_structure(raw: Mapping[str, object], *, source: str) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys in {source}: {joined}.")

    for section, allowed in NESTED_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    home = _to_path(raw.get("home"))
    tool_dir = _optional_path(raw.get("tool_dir")) or (home / ".clawctl")

    gateway_port = _expect_port(raw.get("gateway_port"), "gateway_port", default=18789)
    bridge_port = _expect_port(raw.get("bridge_port"), "bridge_port", default=18790)
    if gateway_port == bridge_port:
        raise ConfigError("gateway_port and bridge_port must differ.")

    uid = _expect_int(raw.get("uid"), "uid", default=os.getuid())
    gid = _expect_int(raw.get("gid"), "gid", default=os.getgid())
    if uid < 0 or gid < 0:
        raise ConfigError("uid and gid must be non-negative integers.")

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    podman_mapping = _as_dict(raw.get("podman"), "podman")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        home=home,
        user=_expect_non_empty(raw.get("user"), "user", default="openclaw"),
        uid=uid,
        gid=gid,
        image=_expect_non_empty(raw.get("image"), "image", default="openclaw:local"),
        dns_primary=_expect_non_empty(raw.get("dns_primary"), "dns_primary", default=""),
        dns_fallback=_expect_non_empty(raw.get("dns_fallback"), "dns_fallback", default=""),
        gateway_port=gateway_port,
        bridge_port=bridge_port,
        memory_default=_expect_non_empty(raw.get("memory_default"), "memory_default", default="8g"),
        cpus_default=_expect_non_empty(raw.get("cpus_default"), "cpus_default", default="4"),
        memory_instance=_expect_non_empty(
            raw.get("memory_instance"), "memory_instance", default="4g"
        ),
        cpus_instance=_expect_non_empty(raw.get("cpus_instance"), "cpus_instance", default="2"),
        templates_dir=_optional_path(raw.get("templates_dir")) or (home / "templates"),
        quadlet_dir=(
            _optional_path(raw.get("quadlet_dir")) or (home / ".config" / "containers" / "systemd")
        ),
        shared_skills_dir=(
            _optional_path(raw.get("shared_skills_dir")) or (home / "shared" / "skills")
        ),
        registry_file=_optional_path(raw.get("registry_file")) or (home / ".port-registry"),
        tool_dir=tool_dir,
        logs_dir=_optional_path(raw.get("logs_dir")) or (tool_dir / "logs"),
        lock_dir=_optional_path(raw.get("lock_dir")) or (tool_dir / "run"),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        builtin_templates=_expect_bool(
            raw.get("builtin_templates"), "builtin_templates", default=True
        ),
        systemd=SystemdConfig(
            systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
            journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
        ),
        podman=PodmanConfig(bin=str(podman_mapping.get("bin", "podman"))),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments[0] not in ALLOWED_TOP_LEVEL_KEYS:
            continue
        nested_allowed = NESTED_KEYS.get(path_segments[0])
        if nested_allowed is not None:
            if len(path_segments) != 2 or path_segments[1] not in nested_allowed:
                continue
        elif len(path_segments) != 1:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value is None or value == "":
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty(value: object | None, label: str, *, default: str) -> str:
    if value is None:
        value = default
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "PodmanConfig",
    "SystemdConfig",
    "load_config",
]
