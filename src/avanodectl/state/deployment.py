"""Persisted record of how the node was deployed.

``<root>/config/deployment.yml`` remembers the role, network and RPC settings
chosen at install or migration time together with the installed version, so
that ``upgrade`` can regenerate ``node.json`` without asking again.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

import yaml

from ..node_config import (
    DEFAULT_HTTP_PORT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_STAKING_PORT,
    NodeConfig,
    NodeConfigError,
    build_node_config,
    parse_network,
    parse_role,
    parse_rpc_scope,
)

RECORD_FILE_NAME = "deployment.yml"
RECORD_MODE = 0o640


class DeploymentRecordError(RuntimeError):
    """Raised when the deployment record cannot be read or written."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class DeploymentRecord:
    """Settings that ``node.json`` is regenerated from."""

    role: str
    network: str
    rpc_scope: str = "loopback"
    allow_public_rpc: bool = False
    public_ip: str | None = None
    http_port: int = DEFAULT_HTTP_PORT
    staking_port: int = DEFAULT_STAKING_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    version: str | None = None
    source: str | None = None
    installed_at: str | None = None
    updated_at: str | None = None
    node_id: str | None = None

    @classmethod
    def from_node_config(
        cls,
        config: NodeConfig,
        *,
        allow_public_rpc: bool = False,
        version: str | None = None,
        source: str | None = None,
    ) -> DeploymentRecord:
        """Return a fresh record describing *config*."""
        now = _now_iso()
        return cls(
            role=config.role.value,
            network=config.network.value,
            rpc_scope=config.rpc_scope.value,
            allow_public_rpc=allow_public_rpc,
            public_ip=config.public_ip,
            http_port=config.http_port,
            staking_port=config.staking_port,
            log_level=config.log_level,
            version=version,
            source=source,
            installed_at=now,
            updated_at=now,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> DeploymentRecord:
        """Validate and parse the YAML document."""
        try:
            role = parse_role(str(data["role"])).value
            network = parse_network(str(data["network"])).value
            scope = parse_rpc_scope(str(data.get("rpc_scope", "loopback"))).value
            http_port = int(str(data.get("http_port", DEFAULT_HTTP_PORT)))
            staking_port = int(str(data.get("staking_port", DEFAULT_STAKING_PORT)))
        except KeyError as exc:
            raise DeploymentRecordError(f"Deployment record is missing '{exc.args[0]}'.") from exc
        except (NodeConfigError, ValueError) as exc:
            raise DeploymentRecordError(f"Deployment record is invalid: {exc}") from exc

        def _optional(key: str) -> str | None:
            value = data.get(key)
            return str(value) if value not in (None, "") else None

        return cls(
            role=role,
            network=network,
            rpc_scope=scope,
            allow_public_rpc=bool(data.get("allow_public_rpc", False)),
            public_ip=_optional("public_ip"),
            http_port=http_port,
            staking_port=staking_port,
            log_level=str(data.get("log_level", DEFAULT_LOG_LEVEL)),
            version=_optional("version"),
            source=_optional("source"),
            installed_at=_optional("installed_at"),
            updated_at=_optional("updated_at"),
            node_id=_optional("node_id"),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the YAML representation."""
        return {
            "role": self.role,
            "network": self.network,
            "rpc_scope": self.rpc_scope,
            "allow_public_rpc": self.allow_public_rpc,
            "public_ip": self.public_ip,
            "http_port": self.http_port,
            "staking_port": self.staking_port,
            "log_level": self.log_level,
            "version": self.version,
            "source": self.source,
            "installed_at": self.installed_at,
            "updated_at": self.updated_at,
            "node_id": self.node_id,
        }

    def to_node_config(self, root: Path) -> tuple[NodeConfig, list[str]]:
        """Rebuild the :class:`NodeConfig` this record describes."""
        try:
            return build_node_config(
                root,
                network=self.network,
                role=self.role,
                rpc_scope=self.rpc_scope,
                allow_public_rpc=self.allow_public_rpc,
                public_ip=self.public_ip,
                http_port=self.http_port,
                staking_port=self.staking_port,
                log_level=self.log_level,
            )
        except NodeConfigError as exc:
            raise DeploymentRecordError(f"Deployment record is invalid: {exc}") from exc

    def updated(self, **changes: object) -> DeploymentRecord:
        """Return a copy with *changes* applied and ``updated_at`` refreshed."""
        return replace(self, updated_at=_now_iso(), **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class DeploymentStore:
    """Read and atomically write ``deployment.yml``."""

    path: Path

    @classmethod
    def for_root(cls, root: Path) -> DeploymentStore:
        """Return the store for the node rooted at *root*."""
        return cls(Path(root) / "config" / RECORD_FILE_NAME)

    def exists(self) -> bool:
        """Return whether a record has been written."""
        return self.path.is_file()

    def load(self) -> DeploymentRecord | None:
        """Return the stored record, or ``None`` when absent."""
        if not self.path.exists():
            return None
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise DeploymentRecordError(f"Failed to read {self.path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise DeploymentRecordError(f"{self.path} must contain a mapping.")
        return DeploymentRecord.from_mapping(data)

    def save(self, record: DeploymentRecord) -> None:
        """Atomically persist *record*."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(record.to_dict(), handle, sort_keys=False)
            os.chmod(tmp_path, RECORD_MODE)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise DeploymentRecordError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def remove(self) -> None:
        """Delete the record if present."""
        self.path.unlink(missing_ok=True)


__all__ = ["DeploymentRecord", "DeploymentRecordError", "DeploymentStore"]
