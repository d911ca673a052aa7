"""Configuration loader for anytlsctl.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/anytlsctl/config.yml`` (or an override path).
3. The bare environment variables understood by the legacy shell installer
   (``WORKDIR``, ``CONTAINER_NAME``, ``CN``, ``DAYS``, ``HOST_PORT``,
   ``LISTEN_PORT`` and ``IMAGE``).
4. Environment variables prefixed with ``ANYTLSCTL_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Prefixed environment keys use double underscores to express nesting, e.g.::

    export ANYTLSCTL_HOST_PORT=8443
    export ANYTLSCTL_IP_LOOKUP__TIMEOUT=5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load anytlsctl configuration. Install with "
        "`pip install anytlsctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ANYTLSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Environment names read by the original installer script.
LEGACY_ENV_KEYS: dict[str, str] = {
    "WORKDIR": "workdir",
    "CONTAINER_NAME": "container_name",
    "CN": "common_name",
    "DAYS": "days",
    "HOST_PORT": "host_port",
    "LISTEN_PORT": "listen_port",
    "IMAGE": "image",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class IPLookupConfig:
    """Public IP lookup endpoints and per-attempt timeout."""

    primary: str = "https://api.ipify.org"
    secondary: str = "https://ipv4.icanhazip.com"
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "primary": self.primary,
            "secondary": self.secondary,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container engine integration values."""

    docker_bin: str = "docker"
    restart_policy: str = "always"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "restart_policy": self.restart_policy}


@dataclass(frozen=True)
class SingBoxConfig:
    """Knobs for the rendered sing-box document."""

    user_name: str = "user1"
    log_level: str = "info"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"user_name": self.user_name, "log_level": self.log_level}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for anytlsctl."""

    config_file: Path
    workdir: Path
    logs_dir: Path
    container_name: str
    common_name: str
    days: int
    host_port: int
    listen_port: int
    image: str
    transports: tuple[str, ...]
    container_data_dir: str
    startup_delay: float
    regenerate_tls: bool
    ip_lookup: IPLookupConfig
    docker: DockerConfig
    singbox: SingBoxConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "workdir": str(self.workdir),
            "logs_dir": str(self.logs_dir),
            "container_name": self.container_name,
            "common_name": self.common_name,
            "days": self.days,
            "host_port": self.host_port,
            "listen_port": self.listen_port,
            "image": self.image,
            "transports": list(self.transports),
            "container_data_dir": self.container_data_dir,
            "startup_delay": self.startup_delay,
            "regenerate_tls": self.regenerate_tls,
            "ip_lookup": self.ip_lookup.to_dict(),
            "docker": self.docker.to_dict(),
            "singbox": self.singbox.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/anytlsctl/config.yml",
    "workdir": "/root/sing-box-anytls",
    "logs_dir": "/var/log/anytlsctl",
    "container_name": "sing-box-anytls",
    "common_name": "www.w3schools.com",
    "days": 365,
    "host_port": 2053,
    "listen_port": 2053,
    "image": "ghcr.io/sagernet/sing-box:latest",
    "transports": ["tcp"],
    "container_data_dir": "/data",
    "startup_delay": 1.0,
    "regenerate_tls": False,
    "ip_lookup": {
        "primary": "https://api.ipify.org",
        "secondary": "https://ipv4.icanhazip.com",
        "timeout": 10.0,
    },
    "docker": {
        "docker_bin": "docker",
        "restart_policy": "always",
    },
    "singbox": {
        "user_name": "user1",
        "log_level": "info",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_TRANSPORTS = ("tcp", "udp")
ALLOWED_RESTART_POLICIES = {"no", "always", "unless-stopped", "on-failure"}
ALLOWED_LOG_LEVELS = {"trace", "debug", "info", "warn", "error", "fatal", "panic"}


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

    legacy_values = _build_legacy_env_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

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
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


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

    for section, defaults in (
        ("ip_lookup", DEFAULTS["ip_lookup"]),
        ("docker", DEFAULTS["docker"]),
        ("singbox", DEFAULTS["singbox"]),
    ):
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - set(_as_dict(defaults, section).keys())
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    workdir = _to_path(raw.get("workdir"))
    logs_dir = _to_path(raw.get("logs_dir"))

    days = _expect_int(raw.get("days"), "days", default=365)
    if days < 1:
        raise ConfigError(f"days must be a positive integer. Got {days}.")

    host_port = _expect_port(raw.get("host_port"), "host_port")
    listen_port = _expect_port(raw.get("listen_port"), "listen_port")

    container_name = _expect_non_empty(raw.get("container_name"), "container_name")
    common_name = _expect_non_empty(raw.get("common_name"), "common_name")
    image = _expect_non_empty(raw.get("image"), "image")
    container_data_dir = _expect_non_empty(
        raw.get("container_data_dir"), "container_data_dir"
    ).rstrip("/") or "/"
    if not container_data_dir.startswith("/"):
        raise ConfigError("container_data_dir must be an absolute path inside the container.")

    transports = _parse_transports(raw.get("transports"))
    startup_delay = _expect_non_negative_float(
        raw.get("startup_delay"), "startup_delay", default=1.0
    )

    ip_raw = _as_dict(raw.get("ip_lookup"), "ip_lookup")
    ip_lookup = IPLookupConfig(
        primary=_expect_non_empty(ip_raw.get("primary"), "ip_lookup.primary"),
        secondary=_expect_non_empty(ip_raw.get("secondary"), "ip_lookup.secondary"),
        timeout=_expect_positive_float(
            ip_raw.get("timeout"), "ip_lookup.timeout", default=10.0
        ),
    )

    docker_raw = _as_dict(raw.get("docker"), "docker")
    restart_policy = _expect_non_empty(
        docker_raw.get("restart_policy"), "docker.restart_policy"
    )
    if restart_policy.split(":", 1)[0] not in ALLOWED_RESTART_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_RESTART_POLICIES))
        raise ConfigError(
            f"Unsupported docker restart policy '{restart_policy}'. Allowed: {allowed}."
        )
    docker = DockerConfig(
        docker_bin=_expect_non_empty(docker_raw.get("docker_bin"), "docker.docker_bin"),
        restart_policy=restart_policy,
    )

    singbox_raw = _as_dict(raw.get("singbox"), "singbox")
    log_level = _expect_non_empty(singbox_raw.get("log_level"), "singbox.log_level").lower()
    if log_level not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported sing-box log level '{log_level}'. Allowed: {allowed}.")
    singbox = SingBoxConfig(
        user_name=_expect_non_empty(singbox_raw.get("user_name"), "singbox.user_name"),
        log_level=log_level,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        workdir=workdir,
        logs_dir=logs_dir,
        container_name=container_name,
        common_name=common_name,
        days=days,
        host_port=host_port,
        listen_port=listen_port,
        image=image,
        transports=transports,
        container_data_dir=container_data_dir,
        startup_delay=startup_delay,
        regenerate_tls=_expect_bool(raw.get("regenerate_tls"), "regenerate_tls"),
        ip_lookup=ip_lookup,
        docker=docker,
        singbox=singbox,
    )


def _build_legacy_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for env_key, config_key in LEGACY_ENV_KEYS.items():
        value = env.get(env_key)
        if value is None or not value.strip():
            continue
        if config_key in {"days", "host_port", "listen_port"}:
            overrides[config_key] = _coerce_value(value)
        else:
            overrides[config_key] = value.strip()
    return overrides


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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _parse_transports(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        # Environment overrides arrive as "tcp,udp".
        items: Sequence[object] = [part for part in value.split(",") if part.strip()]
    else:
        items = _as_sequence(value, "transports")
    transports: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise ConfigError(f"transports entries must be strings. Got {item!r}.")
        normalized = item.strip().lower()
        if normalized not in ALLOWED_TRANSPORTS:
            raise ConfigError(
                f"Unsupported transport '{item}'. Allowed: {', '.join(ALLOWED_TRANSPORTS)}."
            )
        if normalized not in transports:
            transports.append(normalized)
    if not transports:
        raise ConfigError("At least one transport must be configured.")
    return tuple(transports)


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


def _expect_bool(value: object | None, label: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_port(value: object | None, label: str) -> int:
    port = _expect_int(value, label, default=2053)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty(value: object, key: str) -> str:
    text = _expect_str(value, key).strip()
    if not text:
        raise ConfigError(f"{key} must be a non-empty string.")
    return text


def _expect_number(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_number(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_number(value, label, default=default)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
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
    "DockerConfig",
    "IPLookupConfig",
    "SingBoxConfig",
    "load_config",
]
