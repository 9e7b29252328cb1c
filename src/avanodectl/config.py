"""Layered configuration for avanodectl.

Values are resolved in this order, later layers winning:

1. Built-in :data:`DEFAULTS`.
2. The YAML file at ``/etc/avanodectl/config.yml``, ``--config-file`` or
   ``$AVANODECTL_CONFIG_FILE``.
3. ``AVANODECTL_*`` environment variables. A double underscore descends into a
   section, so ``AVANODECTL_BACKUPS__KEEP=10`` sets ``backups.keep``.
4. Overrides passed in by the CLI (``--lock-timeout``).

Environment values go through ``yaml.safe_load`` so ``true`` and ``600`` arrive
as a bool and an int. The merged tree is validated and frozen into
:class:`AppConfig`.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "AVANODECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"


class ConfigError(RuntimeError):
    """Raised when a configuration layer is unreadable or holds invalid values."""


@dataclass(frozen=True)
class ServiceConfig:
    """Systemd integration for the node service."""

    unit_name: str = "avalanchego"
    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    stop_timeout: float = 300.0
    poll_interval: float = 1.0
    start_grace: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_name": self.unit_name,
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "stop_timeout": self.stop_timeout,
            "poll_interval": self.poll_interval,
            "start_grace": self.start_grace,
        }


@dataclass(frozen=True)
class ReleaseConfig:
    """Where AvalancheGo releases and sources are fetched from."""

    repository: str = "ava-labs/avalanchego"
    api_url: str = "https://api.github.com"
    download_url: str = "https://github.com"
    git_url: str = "https://github.com/ava-labs/avalanchego.git"
    arch: str = "amd64"
    timeout: float = 30.0
    attempts: int = 3
    backoff: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repository": self.repository,
            "api_url": self.api_url,
            "download_url": self.download_url,
            "git_url": self.git_url,
            "arch": self.arch,
            "timeout": self.timeout,
            "attempts": self.attempts,
            "backoff": self.backoff,
        }


@dataclass(frozen=True)
class RpcConfig:
    """Loopback JSON-RPC endpoint exposed by the node."""

    url: str = "http://127.0.0.1:9650"
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"url": self.url, "timeout": self.timeout}


@dataclass(frozen=True)
class BackupConfig:
    """Snapshot storage and retention defaults."""

    root: Path
    keep: int = 5
    min_archive_bytes: int = 1024 * 1024

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "keep": self.keep,
            "min_archive_bytes": self.min_archive_bytes,
        }


@dataclass(frozen=True)
class PreflightConfig:
    """Host precondition checks run before mutating commands."""

    enabled: bool = True
    require_root: bool = True
    os_release: Path = Path("/etc/os-release")
    supported_releases: tuple[str, ...] = ("20.04", "22.04", "24.04")
    required_commands: tuple[str, ...] = ("systemctl", "tar")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "require_root": self.require_root,
            "os_release": str(self.os_release),
            "supported_releases": list(self.supported_releases),
            "required_commands": list(self.required_commands),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for avanodectl."""

    config_file: Path
    node_root: Path
    install_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    service_user: str | None
    service_group: str | None
    binary_name: str
    service: ServiceConfig
    release: ReleaseConfig
    rpc: RpcConfig
    backups: BackupConfig
    preflight: PreflightConfig

    @property
    def binary_path(self) -> Path:
        """Return the path of the installed node binary."""
        return self.install_root / self.binary_name

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "node_root": str(self.node_root),
            "install_root": str(self.install_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "service_user": self.service_user,
            "service_group": self.service_group,
            "binary_name": self.binary_name,
            "service": self.service.to_dict(),
            "release": self.release.to_dict(),
            "rpc": self.rpc.to_dict(),
            "backups": self.backups.to_dict(),
            "preflight": self.preflight.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/avanodectl/config.yml",
    "node_root": "/home/avalanche/.avalanchego",
    "install_root": "/home/avalanche/avalanchego",
    "logs_dir": "/var/log/avanodectl",
    "runtime_dir": "/run/avanodectl",
    "templates_dir": "/etc/avanodectl/templates",
    "lock_timeout": 30.0,
    "service_user": "avalanche",
    "service_group": "avalanche",
    "binary_name": "avalanchego",
    "service": {
        "unit_name": "avalanchego",
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "stop_timeout": 300.0,
        "poll_interval": 1.0,
        "start_grace": 5.0,
    },
    "release": {
        "repository": "ava-labs/avalanchego",
        "api_url": "https://api.github.com",
        "download_url": "https://github.com",
        "git_url": "https://github.com/ava-labs/avalanchego.git",
        "arch": "amd64",
        "timeout": 30.0,
        "attempts": 3,
        "backoff": 5.0,
    },
    "rpc": {
        "url": "http://127.0.0.1:9650",
        "timeout": 10.0,
    },
    "backups": {
        "root": None,  # derived from node_root when absent
        "keep": 5,
        "min_archive_bytes": 1024 * 1024,
    },
    "preflight": {
        "enabled": True,
        "require_root": True,
        "os_release": "/etc/os-release",
        "supported_releases": ["20.04", "22.04", "24.04"],
        "required_commands": ["systemctl", "tar"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("service", "release", "rpc", "backups", "preflight")
}
ALLOWED_ARCHES = {"amd64", "arm64"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Resolve every configuration layer into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    path = _config_path(config_file, environ)

    tree = copy.deepcopy(DEFAULTS)
    for layer in (_read_config_file(path), _env_layer(environ), dict(overrides or {})):
        _merge_into(tree, layer)
    tree["config_file"] = str(path)

    _validate_structure(tree)
    return _build_app_config(tree)


def _config_path(
    explicit: str | os.PathLike[str] | None,
    environ: Mapping[str, str],
) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    from_env = environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser()
    return Path(str(DEFAULTS["config_file"]))


def _read_config_file(path: Path) -> dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        kind = type(document).__name__
        raise ConfigError(f"Config file {path} must hold a mapping, not a {kind}.")
    return _as_dict(document, str(path))


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

    release_map = _as_dict(raw.get("release"), "release")
    arch = release_map.get("arch")
    if arch is not None and str(arch) not in ALLOWED_ARCHES:
        allowed_arches = ", ".join(sorted(ALLOWED_ARCHES))
        raise ConfigError(f"Unsupported release architecture '{arch}'. Allowed: {allowed_arches}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    node_root = _to_path(raw.get("node_root"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    service_map = _as_dict(raw.get("service"), "service")
    service = ServiceConfig(
        unit_name=_expect_non_empty(
            service_map.get("unit_name", "avalanchego"), "service.unit_name"
        ),
        unit_dir=_to_path(service_map.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(service_map.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(service_map.get("journalctl_bin", "journalctl")),
        stop_timeout=_expect_positive_float(
            service_map.get("stop_timeout"), "service.stop_timeout", default=300.0
        ),
        poll_interval=_expect_positive_float(
            service_map.get("poll_interval"), "service.poll_interval", default=1.0
        ),
        start_grace=_expect_non_negative_float(
            service_map.get("start_grace"), "service.start_grace", default=5.0
        ),
    )

    release_map = _as_dict(raw.get("release"), "release")
    attempts = _expect_int(release_map.get("attempts"), "release.attempts", default=3)
    if attempts < 1:
        raise ConfigError("release.attempts must be at least 1.")
    release = ReleaseConfig(
        repository=_expect_non_empty(
            release_map.get("repository", "ava-labs/avalanchego"), "release.repository"
        ),
        api_url=str(release_map.get("api_url", "https://api.github.com")).rstrip("/"),
        download_url=str(release_map.get("download_url", "https://github.com")).rstrip("/"),
        git_url=str(release_map.get("git_url", "https://github.com/ava-labs/avalanchego.git")),
        arch=str(release_map.get("arch", "amd64")),
        timeout=_expect_positive_float(release_map.get("timeout"), "release.timeout", default=30.0),
        attempts=attempts,
        backoff=_expect_non_negative_float(
            release_map.get("backoff"), "release.backoff", default=5.0
        ),
    )

    rpc_map = _as_dict(raw.get("rpc"), "rpc")
    rpc = RpcConfig(
        url=str(rpc_map.get("url", "http://127.0.0.1:9650")).rstrip("/"),
        timeout=_expect_positive_float(rpc_map.get("timeout"), "rpc.timeout", default=10.0),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_map.get("root")
    backups_root = _to_path(backups_root_value) if backups_root_value else node_root / "backups"
    keep = _expect_int(backups_map.get("keep"), "backups.keep", default=5)
    if keep < 1:
        raise ConfigError("backups.keep must be at least 1.")
    min_archive_bytes = _expect_int(
        backups_map.get("min_archive_bytes"), "backups.min_archive_bytes", default=1024 * 1024
    )
    if min_archive_bytes < 0:
        raise ConfigError("backups.min_archive_bytes must be non-negative.")
    backups = BackupConfig(root=backups_root, keep=keep, min_archive_bytes=min_archive_bytes)

    preflight_map = _as_dict(raw.get("preflight"), "preflight")
    preflight = PreflightConfig(
        enabled=_expect_bool(preflight_map.get("enabled"), "preflight.enabled", default=True),
        require_root=_expect_bool(
            preflight_map.get("require_root"), "preflight.require_root", default=True
        ),
        os_release=_to_path(preflight_map.get("os_release", "/etc/os-release")),
        supported_releases=_expect_str_tuple(
            preflight_map.get("supported_releases"),
            "preflight.supported_releases",
            default=("20.04", "22.04", "24.04"),
        ),
        required_commands=_expect_str_tuple(
            preflight_map.get("required_commands"),
            "preflight.required_commands",
            default=("systemctl", "tar"),
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        node_root=node_root,
        install_root=_to_path(raw.get("install_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        service_user=_optional_str(raw.get("service_user")),
        service_group=_optional_str(raw.get("service_group")),
        binary_name=_expect_non_empty(raw.get("binary_name", "avalanchego"), "binary_name"),
        service=service,
        release=release,
        rpc=rpc,
        backups=backups,
        preflight=preflight,
    )


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for name, raw in environ.items():
        if name == CONFIG_ENV_VAR or not name.startswith(ENV_PREFIX):
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{name} nests below {'.'.join(keys[:-1])}, which is a value.")
            node = child
        node[keys[-1]] = _parse_env_value(raw)
    return layer


def _parse_env_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge_into(tree: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = tree.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge_into(current, _as_dict(value, key))
        else:
            tree[key] = value


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_non_empty(value: object, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str_tuple(
    value: object | None,
    label: str,
    *,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return tuple(str(item) for item in value)


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


def _expect_number(value: object, label: str) -> float:
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
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
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
    "BackupConfig",
    "ConfigError",
    "PreflightConfig",
    "ReleaseConfig",
    "RpcConfig",
    "ServiceConfig",
    "load_config",
]
