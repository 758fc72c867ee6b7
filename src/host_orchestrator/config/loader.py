"""
Engine configuration loader.

Purpose
Load the effective engine configuration from defaults, a TOML file and
HOST_ORCHESTRATOR_ environment variables, in that order of precedence.

File shape
[backends]
search_path = ["/usr/libexec/host-orchestrator"]
prefix = "host-orchestrator-backend-"
handshake_timeout_seconds = 5.0
describe_timeout_seconds = 5.0
max_workers = 4

[resolver]
best_effort = false
backend_priority = ["apk", "pacman"]

[executor]
failure_policy = "halt-on-first-failure"
step_timeout_seconds = 300.0

[logging]
level = "INFO"
json_lines = false

[audit]
path = "audit.jsonl"

Environment variables are named after the section and key, for example
HOST_ORCHESTRATOR_EXECUTOR_FAILURE_POLICY. List values are os.pathsep
separated for search_path and comma separated otherwise.

Relative paths in the file resolve against the file's directory.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, Literal, Mapping

from host_orchestrator.backends.executable import DEFAULT_PREFIX, search_path_from_env
from host_orchestrator.backends.registry import RegistryConfig
from host_orchestrator.core.errors import OrchestratorError
from host_orchestrator.core.types import FailurePolicy
from host_orchestrator.execution.executor import ExecutorConfig
from host_orchestrator.planner.resolver import ResolverConfig

logger = logging.getLogger(__name__)

ENV_PREFIX: Final[str] = "HOST_ORCHESTRATOR_"

DEFAULT_SEARCH_PATH: Final[tuple[Path, ...]] = (
    Path("/usr/local/libexec/host-orchestrator"),
    Path("/usr/libexec/host-orchestrator"),
)

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

_ValueType = Literal["str", "int", "float", "bool", "str_list", "path", "path_list"]

_KEYS: Final[dict[str, dict[str, _ValueType]]] = {
    "backends": {
        "search_path": "path_list",
        "prefix": "str",
        "handshake_timeout_seconds": "float",
        "describe_timeout_seconds": "float",
        "max_workers": "int",
    },
    "resolver": {
        "best_effort": "bool",
        "backend_priority": "str_list",
    },
    "executor": {
        "failure_policy": "str",
        "step_timeout_seconds": "float",
    },
    "logging": {
        "level": "str",
        "json_lines": "bool",
    },
    "audit": {
        "path": "path",
    },
}

_LOG_LEVELS: Final[frozenset[str]] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class ConfigLoadError(OrchestratorError):
    """Raised when configuration cannot be read or a value cannot be coerced."""


@dataclass(frozen=True)
class BackendsConfig:
    search_path: tuple[Path, ...] = DEFAULT_SEARCH_PATH
    prefix: str = DEFAULT_PREFIX
    registry: RegistryConfig = field(default_factory=RegistryConfig)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json_lines: bool = False


@dataclass(frozen=True)
class EngineConfig:
    """
    Effective configuration of one engine invocation.

    audit_path
    When set, the runner appends one JSON line per step outcome and one run
    summary to this file.
    """

    backends: BackendsConfig = field(default_factory=BackendsConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    audit_path: Path | None = None


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """
    Load effective config with precedence env > file > defaults.

    Without config_path only defaults and the environment apply.
    """
    env_map = dict(os.environ if environ is None else environ)

    values: dict[str, dict[str, Any]] = {section: {} for section in _KEYS}
    if config_path is not None:
        path = Path(config_path).expanduser().resolve()
        _merge_file(values, _load_toml_file(path), base_dir=path.parent, source=str(path))

    _merge_env(values, env_map)
    config = _build(values)
    logger.debug("effective config: %s", config)
    return config


def _load_toml_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigLoadError(f"config file not found: {path}")
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _merge_file(values: dict[str, dict[str, Any]], payload: Mapping[str, Any], base_dir: Path, source: str) -> None:
    for section in sorted(payload):
        if section not in _KEYS:
            raise ConfigLoadError(f"{source}: unknown section [{section}]")
        table = payload[section]
        if not isinstance(table, Mapping):
            raise ConfigLoadError(f"{source}: [{section}] must be a table")
        for key in sorted(table):
            value_type = _KEYS[section].get(key)
            if value_type is None:
                raise ConfigLoadError(f"{source}: unknown key {section}.{key}")
            values[section][key] = _check_file_value(table[key], value_type, f"{section}.{key}", base_dir)


def _check_file_value(value: Any, value_type: _ValueType, name: str, base_dir: Path) -> Any:
    if value_type == "str":
        if not isinstance(value, str):
            raise ConfigLoadError(f"{name} must be a string")
        return value
    if value_type == "bool":
        if not isinstance(value, bool):
            raise ConfigLoadError(f"{name} must be a boolean")
        return value
    if value_type == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigLoadError(f"{name} must be an integer")
        return value
    if value_type == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigLoadError(f"{name} must be a number")
        return float(value)
    if value_type == "path":
        if not isinstance(value, str) or not value:
            raise ConfigLoadError(f"{name} must be a path string")
        return _relative_to(Path(value), base_dir)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigLoadError(f"{name} must be a list of strings")
    if value_type == "path_list":
        return tuple(_relative_to(Path(v), base_dir) for v in value)
    return tuple(value)


def _relative_to(path: Path, base_dir: Path) -> Path:
    path = path.expanduser()
    return path if path.is_absolute() else (base_dir / path).resolve()


def _env_name(section: str, key: str) -> str:
    return f"{ENV_PREFIX}{section}_{key}".upper()


def _merge_env(values: dict[str, dict[str, Any]], environ: Mapping[str, str]) -> None:
    for section in sorted(_KEYS):
        for key, value_type in sorted(_KEYS[section].items()):
            env_name = _env_name(section, key)
            raw = environ.get(env_name)
            if raw is None:
                continue
            values[section][key] = _coerce_env(raw, value_type, env_name)


def _coerce_env(raw: str, value_type: _ValueType, env_name: str) -> Any:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be an integer") from exc
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be a number") from exc
    if value_type == "bool":
        lowered = value.lower()
        if lowered in _BOOLEAN_TRUE:
            return True
        if lowered in _BOOLEAN_FALSE:
            return False
        raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if value_type == "path":
        if not value:
            raise ConfigLoadError(f"{env_name} must be a path")
        return Path(value).expanduser()
    if value_type == "path_list":
        return search_path_from_env(value)
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _build(values: Mapping[str, Mapping[str, Any]]) -> EngineConfig:
    backends = values["backends"]
    registry = RegistryConfig(
        handshake_timeout_seconds=backends.get("handshake_timeout_seconds", 5.0),
        describe_timeout_seconds=backends.get("describe_timeout_seconds", 5.0),
        max_workers=backends.get("max_workers", 4),
    )
    for name in ("handshake_timeout_seconds", "describe_timeout_seconds"):
        if getattr(registry, name) <= 0:
            raise ConfigLoadError(f"backends.{name} must be positive")
    if registry.max_workers < 1:
        raise ConfigLoadError("backends.max_workers must be at least 1")

    prefix = backends.get("prefix", DEFAULT_PREFIX)
    if not prefix:
        raise ConfigLoadError("backends.prefix must not be empty")

    resolver = ResolverConfig(
        best_effort=values["resolver"].get("best_effort", False),
        backend_priority=tuple(values["resolver"].get("backend_priority", ())),
    )

    raw_policy = values["executor"].get("failure_policy", FailurePolicy.halt_on_first_failure.value)
    try:
        policy = FailurePolicy(raw_policy)
    except ValueError as exc:
        choices = ", ".join(p.value for p in FailurePolicy)
        raise ConfigLoadError(f"executor.failure_policy must be one of {choices}") from exc

    executor = ExecutorConfig(
        policy=policy,
        step_timeout_seconds=values["executor"].get("step_timeout_seconds", 300.0),
    )
    if executor.step_timeout_seconds <= 0:
        raise ConfigLoadError("executor.step_timeout_seconds must be positive")

    level = values["logging"].get("level", "INFO").upper()
    if level not in _LOG_LEVELS:
        raise ConfigLoadError(f"logging.level must be one of {', '.join(sorted(_LOG_LEVELS))}")

    return EngineConfig(
        backends=BackendsConfig(
            search_path=tuple(backends.get("search_path", DEFAULT_SEARCH_PATH)),
            prefix=prefix,
            registry=registry,
        ),
        resolver=resolver,
        executor=executor,
        logging=LoggingConfig(level=level, json_lines=values["logging"].get("json_lines", False)),
        audit_path=values["audit"].get("path"),
    )
