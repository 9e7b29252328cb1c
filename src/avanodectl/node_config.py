"""Typed node configuration and its mapping onto AvalancheGo settings.

A :class:`NodeConfig` is built once per command by :func:`build_node_config`,
which applies the role policy (state sync, indexing, pruning, admin API) and
the RPC exposure rules. Everything downstream derives from that value:
:func:`render_config` produces the ``node.json`` document and
:func:`launch_arguments` the command line flags.
"""
from __future__ import annotations

import ipaddress
import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

DEFAULT_HTTP_PORT = 9650
DEFAULT_STAKING_PORT = 9651
DEFAULT_LOG_LEVEL = "info"
LOG_LEVELS = ("off", "fatal", "error", "warn", "info", "trace", "debug", "verbo")
LOOPBACK_HOST = "127.0.0.1"
PUBLIC_HOST = "0.0.0.0"  # noqa: S104 - public RPC is an explicit operator choice
PUBLIC_IP_RESOLUTION_SERVICE = "opendns"

STAKER_CERT_NAME = "staker.crt"
STAKER_KEY_NAME = "staker.key"
SIGNER_KEY_NAME = "signer.key"


class NodeConfigError(RuntimeError):
    """Raised when a node configuration request is invalid."""


class Network(str, Enum):
    """Avalanche network the node joins."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    LOCAL = "local"

    @property
    def network_id(self) -> str:
        """Return the value AvalancheGo expects for ``network-id``."""
        return _NETWORK_IDS[self]


class Role(str, Enum):
    """Operating role of the node."""

    VALIDATOR = "validator"
    ARCHIVAL = "archival"
    API = "api"


class RpcScope(str, Enum):
    """Interfaces the HTTP API listens on."""

    LOOPBACK = "loopback"
    PUBLIC = "public"


_NETWORK_IDS = {
    Network.MAINNET: "mainnet",
    Network.TESTNET: "fuji",
    Network.LOCAL: "local",
}

_NETWORK_ALIASES = {
    "mainnet": Network.MAINNET,
    "1": Network.MAINNET,
    "testnet": Network.TESTNET,
    "fuji": Network.TESTNET,
    "5": Network.TESTNET,
    "local": Network.LOCAL,
    "12345": Network.LOCAL,
}


@dataclass(frozen=True, slots=True)
class RolePolicy:
    """Feature flags implied by a role."""

    state_sync: bool
    indexing: bool
    pruning: bool
    admin_api: bool


ROLE_POLICIES: dict[Role, RolePolicy] = {
    Role.VALIDATOR: RolePolicy(state_sync=True, indexing=False, pruning=True, admin_api=False),
    Role.ARCHIVAL: RolePolicy(state_sync=False, indexing=True, pruning=False, admin_api=True),
    Role.API: RolePolicy(state_sync=True, indexing=True, pruning=True, admin_api=True),
}


@dataclass(frozen=True, slots=True)
class NodeConfig:
    """Immutable description of how the node is configured."""

    network: Network
    role: Role
    rpc_scope: RpcScope
    state_sync: bool
    indexing: bool
    pruning: bool
    admin_api: bool
    data_dir: Path
    log_dir: Path
    identity_dir: Path
    public_ip: str | None = None
    http_port: int = DEFAULT_HTTP_PORT
    staking_port: int = DEFAULT_STAKING_PORT
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def http_host(self) -> str:
        """Return the address the HTTP API binds to."""
        return PUBLIC_HOST if self.rpc_scope is RpcScope.PUBLIC else LOOPBACK_HOST

    @property
    def staking_cert_file(self) -> Path:
        """Return the staking certificate path."""
        return self.identity_dir / STAKER_CERT_NAME

    @property
    def staking_key_file(self) -> Path:
        """Return the staking private key path."""
        return self.identity_dir / STAKER_KEY_NAME

    @property
    def signer_key_file(self) -> Path:
        """Return the BLS signer key path."""
        return self.identity_dir / SIGNER_KEY_NAME

    def summary(self) -> dict[str, object]:
        """Return the operator-facing fields as plain values."""
        return {
            "network": self.network.value,
            "role": self.role.value,
            "rpc_scope": self.rpc_scope.value,
            "state_sync": self.state_sync,
            "indexing": self.indexing,
            "pruning": self.pruning,
            "admin_api": self.admin_api,
            "public_ip": self.public_ip,
            "http_port": self.http_port,
            "staking_port": self.staking_port,
        }


def parse_network(value: Network | str) -> Network:
    """Return the :class:`Network` named by *value*."""
    if isinstance(value, Network):
        return value
    network = _NETWORK_ALIASES.get(str(value).strip().lower())
    if network is None:
        allowed = ", ".join(item.value for item in Network)
        raise NodeConfigError(f"Unknown network '{value}'. Expected one of: {allowed}.")
    return network


def parse_role(value: Role | str) -> Role:
    """Return the :class:`Role` named by *value*."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in Role)
        raise NodeConfigError(f"Unknown role '{value}'. Expected one of: {allowed}.") from exc


def parse_rpc_scope(value: RpcScope | str) -> RpcScope:
    """Return the :class:`RpcScope` named by *value*."""
    if isinstance(value, RpcScope):
        return value
    try:
        return RpcScope(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in RpcScope)
        raise NodeConfigError(f"Unknown RPC scope '{value}'. Expected one of: {allowed}.") from exc


def build_node_config(
    root: Path,
    *,
    network: Network | str,
    role: Role | str,
    rpc_scope: RpcScope | str | None = None,
    allow_public_rpc: bool = False,
    public_ip: str | None = None,
    http_port: int = DEFAULT_HTTP_PORT,
    staking_port: int = DEFAULT_STAKING_PORT,
    log_level: str = DEFAULT_LOG_LEVEL,
) -> tuple[NodeConfig, list[str]]:
    """Build the :class:`NodeConfig` for *root* and return it with policy warnings.

    Every role defaults to loopback RPC. A public scope is honoured for archival
    and API nodes; a validator additionally needs *allow_public_rpc*, otherwise
    the scope is downgraded to loopback and a warning is returned.
    """
    resolved_network = parse_network(network)
    resolved_role = parse_role(role)
    scope = RpcScope.LOOPBACK if rpc_scope is None else parse_rpc_scope(rpc_scope)
    warnings: list[str] = []

    if scope is RpcScope.PUBLIC and resolved_role is Role.VALIDATOR and not allow_public_rpc:
        scope = RpcScope.LOOPBACK
        warnings.append(
            "Public RPC was requested for a validator without --allow-public-rpc; "
            "the API stays bound to loopback."
        )

    _validate_port(http_port, "http_port")
    _validate_port(staking_port, "staking_port")
    if http_port == staking_port:
        raise NodeConfigError("http_port and staking_port must differ.")
    if log_level not in LOG_LEVELS:
        raise NodeConfigError(
            f"Unknown log level '{log_level}'. Expected one of: {', '.join(LOG_LEVELS)}."
        )

    policy = ROLE_POLICIES[resolved_role]
    root = Path(root)
    config = NodeConfig(
        network=resolved_network,
        role=resolved_role,
        rpc_scope=scope,
        state_sync=policy.state_sync,
        indexing=policy.indexing,
        pruning=policy.pruning,
        admin_api=policy.admin_api,
        data_dir=root / "data",
        log_dir=root / "logs",
        identity_dir=root / "identity",
        public_ip=_normalise_public_ip(public_ip),
        http_port=http_port,
        staking_port=staking_port,
        log_level=log_level,
    )
    return config, warnings


def render_config(config: NodeConfig) -> dict[str, object]:
    """Return the ``node.json`` document for *config*."""
    document: dict[str, object] = {
        "network-id": config.network.network_id,
        "http-host": config.http_host,
        "http-port": config.http_port,
        "staking-port": config.staking_port,
        "db-dir": str(config.data_dir),
        "log-dir": str(config.log_dir),
        "log-level": config.log_level,
        "state-sync-enabled": config.state_sync,
        "index-enabled": config.indexing,
        "pruning-enabled": config.pruning,
        "api-admin-enabled": config.admin_api,
        "staking-tls-cert-file": str(config.staking_cert_file),
        "staking-tls-key-file": str(config.staking_key_file),
        "staking-signer-key-file": str(config.signer_key_file),
    }
    if config.public_ip:
        document["public-ip"] = config.public_ip
    else:
        document["public-ip-resolution-service"] = PUBLIC_IP_RESOLUTION_SERVICE
    return document


def dump_config(config: NodeConfig) -> str:
    """Serialise :func:`render_config` output with stable key order."""
    return json.dumps(render_config(config), indent=2, sort_keys=True) + "\n"


def launch_arguments(config: NodeConfig, config_file: Path | None = None) -> list[str]:
    """Return the node's command line flags for *config*.

    With *config_file* the node reads everything from ``node.json``; without
    it each rendered setting becomes its own ``--key=value`` flag.
    """
    if config_file is not None:
        return [f"--config-file={config_file}"]
    return [
        f"--{key}={_flag_value(value)}"
        for key, value in sorted(render_config(config).items())
    ]


def infer_node_config(
    document: Mapping[str, object],
    root: Path,
    *,
    role: Role | str | None = None,
    allow_public_rpc: bool = False,
) -> tuple[NodeConfig, list[str]]:
    """Read an existing ``node.json`` document back into a :class:`NodeConfig`.

    Used when adopting a hand-written installation. The role is guessed from
    the pruning and indexing flags unless given; settings that disagree with the
    role policy are replaced and reported as warnings.
    """
    warnings: list[str] = []
    network = parse_network(str(document.get("network-id", "mainnet")))

    if role is not None:
        resolved_role = parse_role(role)
    elif document.get("pruning-enabled") is False:
        resolved_role = Role.ARCHIVAL
    elif document.get("index-enabled") is True or document.get("api-admin-enabled") is True:
        resolved_role = Role.API
    else:
        resolved_role = Role.VALIDATOR

    host = str(document.get("http-host", LOOPBACK_HOST)).strip()
    loopback_hosts = {"", LOOPBACK_HOST, "localhost", "::1"}
    scope = RpcScope.LOOPBACK if host in loopback_hosts else RpcScope.PUBLIC

    public_ip = document.get("public-ip")
    config, build_warnings = build_node_config(
        root,
        network=network,
        role=resolved_role,
        rpc_scope=scope,
        allow_public_rpc=allow_public_rpc,
        public_ip=str(public_ip) if public_ip else None,
        http_port=_coerce_port(document.get("http-port"), DEFAULT_HTTP_PORT),
        staking_port=_coerce_port(document.get("staking-port"), DEFAULT_STAKING_PORT),
        log_level=str(document.get("log-level", DEFAULT_LOG_LEVEL)).lower(),
    )
    warnings.extend(build_warnings)

    rendered = render_config(config)
    for key in ("state-sync-enabled", "index-enabled", "pruning-enabled", "api-admin-enabled"):
        if key in document and document[key] != rendered[key]:
            warnings.append(
                f"Existing {key}={_flag_value(document[key])} replaced by "
                f"{resolved_role.value} policy ({_flag_value(rendered[key])})."
            )
    return config, warnings


def _flag_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _validate_port(value: int, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
        raise NodeConfigError(f"{label} must be an integer between 1 and 65535. Got {value!r}.")


def _coerce_port(value: object, default: int) -> int:
    if value is None:
        return default
    try:
        return int(str(value))
    except ValueError as exc:
        raise NodeConfigError(f"Invalid port value {value!r} in existing config.") from exc


def _normalise_public_ip(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError as exc:
        raise NodeConfigError(f"Invalid public IP address '{value}'.") from exc


__all__ = [
    "DEFAULT_HTTP_PORT",
    "DEFAULT_STAKING_PORT",
    "Network",
    "NodeConfig",
    "NodeConfigError",
    "ROLE_POLICIES",
    "Role",
    "RolePolicy",
    "RpcScope",
    "SIGNER_KEY_NAME",
    "STAKER_CERT_NAME",
    "STAKER_KEY_NAME",
    "build_node_config",
    "dump_config",
    "infer_node_config",
    "launch_arguments",
    "parse_network",
    "parse_role",
    "parse_rpc_scope",
    "render_config",
]
