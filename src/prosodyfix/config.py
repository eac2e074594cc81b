"""Configuration loader for prosodyfix.

Settings that describe *how* fixtures are launched (binary names, loopback
address, timeouts, certificate parameters) are read from multiple sources:

1. Built-in defaults.
2. ``~/.config/prosodyfix/config.yml`` (or an override path).
3. Environment variables prefixed with ``PROSODYFIX_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PROSODYFIX_PROSODY_BIN=/usr/local/bin/prosody
    export PROSODYFIX_TLS__KEY_SIZE=3072

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

Library use never reaches for the environment on its own: fixtures default to
:func:`default_app_config`, and only the CLI calls :func:`load_config`.
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
        "PyYAML is required to load prosodyfix configuration. Install with "
        "`pip install prosodyfix` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PROSODYFIX_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class TLSConfig:
    """Parameters for self-signed certificates issued to fixtures."""

    key_size: int = 2048
    valid_days: int = 30


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for prosodyfix."""

    config_file: Path
    prosody_bin: str
    prosodyctl_bin: str
    bind_host: str
    templates_dir: Path | None
    logs_dir: Path
    start_timeout: float
    stop_timeout: float
    ctl_timeout: float
    tls: TLSConfig


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/prosodyfix/config.yml",
    "prosody_bin": "prosody",
    "prosodyctl_bin": "prosodyctl",
    "bind_host": "::1",
    "templates_dir": None,
    "logs_dir": "~/.cache/prosodyfix/logs",
    "start_timeout": 10.0,
    "stop_timeout": 5.0,
    "ctl_timeout": 30.0,
    "tls": {
        "key_size": 2048,
        "valid_days": 30,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_TLS_KEYS = {"key_size", "valid_days"}
MIN_KEY_SIZE = 2048


def default_app_config() -> AppConfig:
    """Return the built-in defaults without consulting files or the environment."""
    merged = _deep_copy(DEFAULTS)
    _validate_structure(merged)
    return _build_app_config(merged)


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

    for key in ("prosody_bin", "prosodyctl_bin", "bind_host"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string.")

    tls = raw.get("tls")
    if tls is not None:
        tls_map = _as_dict(tls, "tls")
        unknown = set(tls_map.keys()) - ALLOWED_TLS_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown TLS configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    templates_value = raw.get("templates_dir")
    templates_dir: Path | None = None
    if isinstance(templates_value, (str, Path)):
        if str(templates_value).strip():
            templates_dir = _to_path(templates_value)
    elif templates_value is not None:
        raise ConfigError("templates_dir must be a string, Path, or null.")

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    key_size = _expect_int(tls_mapping.get("key_size"), "tls.key_size", default=2048)
    if key_size < MIN_KEY_SIZE:
        raise ConfigError(f"tls.key_size must be at least {MIN_KEY_SIZE}. Got {key_size}.")
    valid_days = _expect_int(tls_mapping.get("valid_days"), "tls.valid_days", default=30)
    if valid_days <= 0:
        raise ConfigError("tls.valid_days must be greater than zero.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        prosody_bin=str(raw.get("prosody_bin")).strip(),
        prosodyctl_bin=str(raw.get("prosodyctl_bin")).strip(),
        bind_host=str(raw.get("bind_host")).strip(),
        templates_dir=templates_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        start_timeout=_expect_positive_float(
            raw.get("start_timeout"), "start_timeout", default=10.0
        ),
        stop_timeout=_expect_positive_float(raw.get("stop_timeout"), "stop_timeout", default=5.0),
        ctl_timeout=_expect_positive_float(raw.get("ctl_timeout"), "ctl_timeout", default=30.0),
        tls=TLSConfig(key_size=key_size, valid_days=valid_days),
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
    "ConfigError",
    "TLSConfig",
    "default_app_config",
    "load_config",
]
