"""Agent configuration.

Host facts (execution user, its home directory, the live configuration root)
are resolved once at startup into an immutable AgentConfig; nothing below
reads the environment or /etc on first use.
"""

from __future__ import annotations

import os
import pwd
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_USER_FILE = "/etc/chef-user"
DEFAULT_CONVERGENCE_SCRIPT = "install.sh"
DEFAULT_RUN_LIST_FILE = "solo.json"
DEFAULT_APPLIED_DIR = "applied"
DEFAULT_START_MARKER = "Starting Chef Client"
DEFAULT_COMPLETE_MARKER = "Run complete"


def _read_bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    """Read boolean environment variable."""
    raw = env.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"0", "false", "off", "no"}:
        return False
    if normalized in {"1", "true", "on", "yes"}:
        return True
    return default


def _read_float_env(env: Mapping[str, str], name: str) -> Optional[float]:
    """Read optional positive float; unset, empty or non-positive means None."""
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    return value if value > 0 else None


def read_execution_user(user_file: str = DEFAULT_USER_FILE) -> str:
    """Read the execution user name from the host's user file."""
    try:
        user = Path(user_file).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ValueError(f"Cannot read execution user from {user_file}: {e}")
    if not user:
        raise ValueError(f"Execution user file {user_file} is empty")
    return user


def resolve_home(user: str) -> Path:
    """Home directory of `user` from the password database."""
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        raise ValueError(f"Unknown execution user: {user}")


@dataclass(frozen=True)
class AgentConfig:
    """Immutable runtime configuration for one configuration root."""
    config_root: Path
    execution_user: str
    use_sudo: bool = True
    dry_run: bool = False

    convergence_script: str = DEFAULT_CONVERGENCE_SCRIPT
    run_list_file: str = DEFAULT_RUN_LIST_FILE
    applied_dir: str = DEFAULT_APPLIED_DIR

    # None = block until the tool exits / the lock is free
    tool_timeout_seconds: Optional[float] = None
    lock_timeout_seconds: Optional[float] = None
    lock_poll_seconds: float = 0.5

    start_marker: str = DEFAULT_START_MARKER
    complete_marker: str = DEFAULT_COMPLETE_MARKER

    log_dir: Optional[Path] = None

    def __post_init__(self):
        # Normalize so that sibling paths (staging, backup, lock) are stable
        object.__setattr__(self, "config_root", Path(self.config_root).resolve())
        if self.log_dir is not None:
            object.__setattr__(self, "log_dir", Path(self.log_dir).resolve())

    @property
    def applied_path(self) -> Path:
        return self.config_root / self.applied_dir

    @property
    def run_list_path(self) -> Path:
        return self.config_root / self.run_list_file

    def with_overrides(self, **changes) -> "AgentConfig":
        """Copy with some fields replaced (CLI flags, tests)."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        """
        Build configuration from the environment and host facts.

        Variables:
            HOSTAGENT_USER: execution user (default: contents of HOSTAGENT_USER_FILE)
            HOSTAGENT_USER_FILE: default /etc/chef-user
            HOSTAGENT_CONFIG_ROOT: default <user home>/chef
            HOSTAGENT_USE_SUDO: default true
            HOSTAGENT_DRY_RUN: default false
            HOSTAGENT_SCRIPT, HOSTAGENT_RUN_LIST_FILE
            HOSTAGENT_TOOL_TIMEOUT, HOSTAGENT_LOCK_TIMEOUT: seconds, unset = unbounded
            HOSTAGENT_LOG_DIR: per-transaction tool output logs

        Raises:
            ValueError: If the execution user cannot be determined
        """
        env = os.environ if env is None else env

        user = env.get("HOSTAGENT_USER") or read_execution_user(
            env.get("HOSTAGENT_USER_FILE", DEFAULT_USER_FILE)
        )

        root = env.get("HOSTAGENT_CONFIG_ROOT")
        config_root = Path(root) if root else resolve_home(user) / "chef"

        log_dir = env.get("HOSTAGENT_LOG_DIR")

        return cls(
            config_root=config_root,
            execution_user=user,
            use_sudo=_read_bool_env(env, "HOSTAGENT_USE_SUDO", True),
            dry_run=_read_bool_env(env, "HOSTAGENT_DRY_RUN", False),
            convergence_script=env.get("HOSTAGENT_SCRIPT", DEFAULT_CONVERGENCE_SCRIPT),
            run_list_file=env.get("HOSTAGENT_RUN_LIST_FILE", DEFAULT_RUN_LIST_FILE),
            tool_timeout_seconds=_read_float_env(env, "HOSTAGENT_TOOL_TIMEOUT"),
            lock_timeout_seconds=_read_float_env(env, "HOSTAGENT_LOCK_TIMEOUT"),
            log_dir=Path(log_dir) if log_dir else None,
        )
