"""
localdb — session config loader.

File: src/localdb/config/loader.py

Purpose
- Load the effective session config from defaults, TOML file, env vars, and
  explicit overrides.

What should be included in this file
- Precedence logic: overrides > env (LOCALDB_) > file > defaults.
- TOML loading via ``tomllib`` from the ``[localdb]`` table.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to config file location.

Non-functional requirements
- Keep loading deterministic and reproducible.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Final, Literal

from localdb.constants import CONFIG_TABLE, DEFAULT_CONFIG_FILE, ENV_PREFIX
from localdb.persistence.session import ConnectionSettings

_ValueType = Literal["path", "str", "int", "bool"]

_FIELDS: Final[dict[str, _ValueType]] = {
    "path": "path",
    "backup_dir": "path",
    "busy_timeout_ms": "int",
    "busy_retry_limit": "int",
    "busy_retry_backoff_ms": "int",
    "journal_mode": "str",
    "foreign_keys": "bool",
    "immediate_transactions": "bool",
    "cached_statements": "int",
}
_OPTIONS_KEY: Final[str] = "connection_options"
_SETTINGS_FIELDS: Final[tuple[str, ...]] = tuple(
    name for name in _FIELDS if name not in {"path", "backup_dir"}
)

_MEMORY_PATHS: Final[frozenset[str]] = frozenset({"", ":memory:"})
_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or values cannot be coerced."""


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Everything :func:`~localdb.persistence.session.open_session_from_config` needs."""

    path: str
    backup_dir: str | None = None
    connection_options: Mapping[str, str] = field(default_factory=dict)
    settings: ConnectionSettings = field(default_factory=ConnectionSettings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "backup_dir": self.backup_dir,
            "connection_options": dict(sorted(self.connection_options.items())),
            "settings": asdict(self.settings),
        }


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> SessionConfig:
    """Load effective config with deterministic precedence: overrides > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)

    table = _load_table(resolved_path, required=config_path is not None)
    values: dict[str, object] = {}
    options: dict[str, str] = {}

    for key in sorted(table):
        if key == _OPTIONS_KEY:
            options.update(_coerce_options(table[key], source=f"{CONFIG_TABLE}.{key}"))
            continue
        values[key] = _validate_value(key, table[key], source=f"{CONFIG_TABLE}.{key}")

    values.update(_collect_env_overrides(env_map))

    for key in sorted(overrides or {}):
        raw = (overrides or {})[key]
        if key == _OPTIONS_KEY:
            options.update(_coerce_options(raw, source=f"override {key!r}"))
            continue
        if raw is None:
            continue
        values[key] = _validate_value(key, raw, source=f"override {key!r}")

    base_dir = resolved_path.parent
    raw_path = values.get("path")
    if not isinstance(raw_path, str):
        raise ConfigLoadError(
            f"no database path configured; set {CONFIG_TABLE}.path or {ENV_PREFIX}PATH"
        )
    raw_backup = values.get("backup_dir")

    try:
        settings = ConnectionSettings(
            **{name: values[name] for name in _SETTINGS_FIELDS if name in values}  # type: ignore[arg-type]
        )
    except ValueError as exc:
        raise ConfigLoadError(f"invalid connection settings: {exc}") from exc

    return SessionConfig(
        path=_normalize_target(raw_path, base_dir),
        backup_dir=_normalize_one_path(raw_backup, base_dir) if isinstance(raw_backup, str) else None,
        connection_options=options,
        settings=settings,
    )


def dump_effective_config(config: SessionConfig) -> str:
    """Return deterministic JSON dump of the effective config."""

    return json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_table(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    table = parsed.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigLoadError(f"[{CONFIG_TABLE}] must be a table in {path}")
    return table


def _validate_value(key: str, value: object, *, source: str) -> object:
    kind = _FIELDS.get(key)
    if kind is None:
        allowed = ", ".join(sorted([*_FIELDS, _OPTIONS_KEY]))
        raise ConfigLoadError(f"unknown config key {source}; expected one of: {allowed}")
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigLoadError(f"{source} must be a boolean")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigLoadError(f"{source} must be an integer")
        return value
    if isinstance(value, Path) and kind == "path":
        return str(value)
    if not isinstance(value, str):
        raise ConfigLoadError(f"{source} must be a string")
    return value


def _coerce_options(value: object, *, source: str) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ConfigLoadError(f"{source} must be a table of connection options")
    options: dict[str, str] = {}
    for key in sorted(value):
        item = value[key]
        if isinstance(item, bool):
            options[str(key)] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            options[str(key)] = str(item)
        else:
            raise ConfigLoadError(f"{source}.{key} must be a scalar value")
    return options


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key in _FIELDS:
        env_name = ENV_PREFIX + key.upper()
        raw = environ.get(env_name)
        if raw is None:
            continue
        overrides[key] = _coerce_env(raw, _FIELDS[key], env_name)
    return overrides


def _coerce_env(raw: str, value_type: _ValueType, env_name: str) -> object:
    value = raw.strip()
    if value_type in ("str", "path"):
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be an integer") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")


def _normalize_target(raw: str, base_dir: Path) -> str:
    location, separator, query = raw.partition("?")
    if location in _MEMORY_PATHS:
        return raw
    return _normalize_one_path(location, base_dir) + separator + query


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    normalized = Path(os.path.normpath(str(candidate)))
    return normalized.as_posix()


__all__ = [
    "ConfigLoadError",
    "SessionConfig",
    "dump_effective_config",
    "load_config",
]
