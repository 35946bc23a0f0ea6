"""Configuration loader for cihostctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/cihostctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CIHOSTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CIHOSTCTL_RETRY__ATTEMPTS=3
    export CIHOSTCTL_BOOTSTRAP__CONNECT_TIMEOUT=600

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load cihostctl configuration. Install with "
        "`pip install cihostctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CIHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for retryable provider errors."""

    attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 16.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "attempts": self.attempts,
            "base_delay": self.base_delay,
            "factor": self.factor,
            "max_delay": self.max_delay,
        }


@dataclass(frozen=True)
class BootstrapConfig:
    """Readiness polling and command execution limits for bootstrap."""

    poll_interval: float = 5.0
    connect_timeout: float = 300.0
    command_timeout: float = 900.0
    reconnect_attempts: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "poll_interval": self.poll_interval,
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "reconnect_attempts": self.reconnect_attempts,
        }


@dataclass(frozen=True)
class SSHConfig:
    """Credentials used to reach the bootstrapped host."""

    user: str = "ec2-user"
    port: int = 22
    key_file: Path | None = None
    connect_timeout: float = 10.0
    strict_host_keys: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "port": self.port,
            "key_file": str(self.key_file) if self.key_file is not None else None,
            "connect_timeout": self.connect_timeout,
            "strict_host_keys": self.strict_host_keys,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cihostctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    lock_ttl: float
    provider: str
    retry: RetryConfig
    bootstrap: BootstrapConfig
    ssh: SSHConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "lock_ttl": self.lock_ttl,
            "provider": self.provider,
            "retry": self.retry.to_dict(),
            "bootstrap": self.bootstrap.to_dict(),
            "ssh": self.ssh.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/cihostctl/config.yml",
    "state_dir": "~/.local/state/cihostctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "~/.local/state/cihostctl/logs",
    "runtime_dir": "~/.local/state/cihostctl/run",
    "lock_timeout": 30.0,
    "lock_ttl": 3600.0,
    "provider": "simulated",
    "retry": {
        "attempts": 5,
        "base_delay": 1.0,
        "factor": 2.0,
        "max_delay": 16.0,
    },
    "bootstrap": {
        "poll_interval": 5.0,
        "connect_timeout": 300.0,
        "command_timeout": 900.0,
        "reconnect_attempts": 1,
    },
    "ssh": {
        "user": "ec2-user",
        "port": 22,
        "key_file": None,
        "connect_timeout": 10.0,
        "strict_host_keys": False,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "retry": {"attempts", "base_delay", "factor", "max_delay"},
    "bootstrap": {"poll_interval", "connect_timeout", "command_timeout", "reconnect_attempts"},
    "ssh": {"user", "port", "key_file", "connect_timeout", "strict_host_keys"},
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
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    provider = raw.get("provider")
    if not isinstance(provider, str) or not provider.strip():
        raise ConfigError("provider must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    lock_ttl = _expect_positive_float(raw.get("lock_ttl"), "lock_ttl", default=3600.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    retry_mapping = _as_dict(raw.get("retry"), "retry")
    retry = RetryConfig(
        attempts=_expect_positive_int(retry_mapping.get("attempts"), "retry.attempts", default=5),
        base_delay=_expect_positive_float(
            retry_mapping.get("base_delay"), "retry.base_delay", default=1.0
        ),
        factor=_expect_positive_float(retry_mapping.get("factor"), "retry.factor", default=2.0),
        max_delay=_expect_positive_float(
            retry_mapping.get("max_delay"), "retry.max_delay", default=16.0
        ),
    )
    if retry.factor < 1.0:
        raise ConfigError("retry.factor must be at least 1.0.")

    bootstrap_mapping = _as_dict(raw.get("bootstrap"), "bootstrap")
    reconnect_attempts = _expect_int(
        bootstrap_mapping.get("reconnect_attempts"),
        "bootstrap.reconnect_attempts",
        default=1,
    )
    if reconnect_attempts < 0:
        raise ConfigError("bootstrap.reconnect_attempts must be non-negative.")
    bootstrap = BootstrapConfig(
        poll_interval=_expect_positive_float(
            bootstrap_mapping.get("poll_interval"), "bootstrap.poll_interval", default=5.0
        ),
        connect_timeout=_expect_positive_float(
            bootstrap_mapping.get("connect_timeout"), "bootstrap.connect_timeout", default=300.0
        ),
        command_timeout=_expect_positive_float(
            bootstrap_mapping.get("command_timeout"), "bootstrap.command_timeout", default=900.0
        ),
        reconnect_attempts=reconnect_attempts,
    )

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    key_file_value = ssh_mapping.get("key_file")
    ssh_port = _expect_positive_int(ssh_mapping.get("port"), "ssh.port", default=22)
    if ssh_port > 65535:
        raise ConfigError("ssh.port must be between 1 and 65535.")
    ssh = SSHConfig(
        user=str(ssh_mapping.get("user") or "ec2-user"),
        port=ssh_port,
        key_file=_to_path(key_file_value) if key_file_value else None,
        connect_timeout=_expect_positive_float(
            ssh_mapping.get("connect_timeout"), "ssh.connect_timeout", default=10.0
        ),
        strict_host_keys=_expect_bool(
            ssh_mapping.get("strict_host_keys"), "ssh.strict_host_keys", default=False
        ),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        lock_ttl=lock_ttl,
        provider=str(raw.get("provider", "simulated")).strip(),
        retry=retry,
        bootstrap=bootstrap,
        ssh=ssh,
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


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
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


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


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
    "BootstrapConfig",
    "ConfigError",
    "RetryConfig",
    "SSHConfig",
    "load_config",
]
