"""Service-user identity checks and the subprocess environment."""
from __future__ import annotations

import os
from collections.abc import Mapping

from .config import AppConfig
from .errors import WrongIdentityError

RUNTIME_DIR_VAR = "XDG_RUNTIME_DIR"


def check_identity(config: AppConfig, *, current_uid: int | None = None) -> None:
    """Raise :class:`WrongIdentityError` unless running as the service user."""
    uid = os.getuid() if current_uid is None else current_uid
    if uid != config.uid:
        raise WrongIdentityError(
            f"This command must be run as the {config.user} user (uid {config.uid}). "
            f"Use: sudo -u {config.user} clawctl <command>"
        )


def runtime_env(config: AppConfig, base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the environment for user-manager and podman subprocesses.

    ``XDG_RUNTIME_DIR`` is defaulted to ``/run/user/<uid>`` so that
    ``systemctl --user`` can reach the user bus from ``sudo -u`` sessions.
    """
    env = dict(os.environ if base is None else base)
    env.setdefault(RUNTIME_DIR_VAR, str(config.runtime_dir))
    return env


__all__ = ["check_identity", "runtime_env"]
