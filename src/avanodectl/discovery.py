"""Inspect the host and report what is installed.

The observation is recomputed at the start of every command and never
persisted. Only the marker line in the unit file decides whether the
installation is managed by avanodectl.
"""
from __future__ import annotations

import json
import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .material import MaterialError, MaterialStore
from .node_config import SIGNER_KEY_NAME, STAKER_CERT_NAME, STAKER_KEY_NAME
from .providers.node_binary import NodeBinary, NodeBinaryError
from .providers.supervisor import ManagedUnit, ServiceState, SupervisorError
from .state import DeploymentRecord, DeploymentRecordError, DeploymentStore

LOGGER = logging.getLogger(__name__)

# Layouts written by hand or by older installer scripts.
LEGACY_IDENTITY_DIRS = ("staking",)
LEGACY_CONFIG_FILES = ("configs/config.json", "config.json")


@dataclass(slots=True)
class HostObservation:
    """What was found on disk and from the service manager."""

    root: Path
    unit_path: Path
    unit_exists: bool = False
    managed: bool = False
    service: ServiceState = ServiceState.NOT_INSTALLED
    binary_path: Path | None = None
    binary_present: bool = False
    version: str | None = None
    identity_dir: Path | None = None
    identity_complete: bool = False
    config_file: Path | None = None
    config_document: Mapping[str, object] | None = None
    record: DeploymentRecord | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def installed(self) -> bool:
        """Return ``True`` when any part of a node installation exists."""
        return (
            self.unit_exists
            or self.identity_dir is not None
            or self.config_file is not None
            or self.record is not None
        )

    @property
    def legacy_identity(self) -> bool:
        """Return ``True`` when keys live outside ``<root>/identity``."""
        return self.identity_dir is not None and self.identity_dir.name != "identity"

    @property
    def role(self) -> str | None:
        """Return the recorded role, if any."""
        return self.record.role if self.record else None

    @property
    def network(self) -> str | None:
        """Return the recorded or configured network."""
        if self.record:
            return self.record.network
        if self.config_document and "network-id" in self.config_document:
            return str(self.config_document["network-id"])
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "root": str(self.root),
            "installed": self.installed,
            "managed": self.managed,
            "service": self.service.value,
            "unit_path": str(self.unit_path),
            "unit_exists": self.unit_exists,
            "binary_path": str(self.binary_path) if self.binary_path else None,
            "binary_present": self.binary_present,
            "version": self.version,
            "role": self.role,
            "network": self.network,
            "identity_dir": str(self.identity_dir) if self.identity_dir else None,
            "identity_complete": self.identity_complete,
            "config_file": str(self.config_file) if self.config_file else None,
            "warnings": list(self.warnings),
        }


def _identity_files_present(directory: Path) -> bool:
    return (directory / STAKER_CERT_NAME).is_file() and (directory / STAKER_KEY_NAME).is_file()


def locate_identity(store: MaterialStore) -> Path | None:
    """Return the directory holding the staking keys, preferring the managed one."""
    candidates = [store.identity_dir]
    candidates.extend(store.root / name for name in LEGACY_IDENTITY_DIRS)
    for candidate in candidates:
        if _identity_files_present(candidate):
            return candidate
    return None


def locate_config(store: MaterialStore) -> Path | None:
    """Return the node configuration file, preferring ``config/node.json``."""
    candidates = [store.config_file]
    candidates.extend(store.root / name for name in LEGACY_CONFIG_FILES)
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def exec_start_binary(unit_text: str) -> Path | None:
    """Return the executable named by ``ExecStart=`` in *unit_text*."""
    for line in unit_text.splitlines():
        stripped = line.strip()
        if not stripped.startswith("ExecStart="):
            continue
        command = stripped.partition("=")[2].lstrip("-@:+!")
        try:
            parts = shlex.split(command)
        except ValueError:
            return None
        return Path(parts[0]) if parts else None
    return None


def inspect_host(
    *,
    store: MaterialStore,
    unit: ManagedUnit,
    binary: NodeBinary,
    deployment: DeploymentStore,
) -> HostObservation:
    """Build a :class:`HostObservation` for the node rooted at ``store.root``."""
    observation = HostObservation(root=store.root, unit_path=unit.unit_path)

    unit_text = unit.read_unit()
    if unit_text is not None:
        observation.unit_exists = True
        observation.managed = unit.is_managed()
        try:
            observation.service = unit.is_running()
        except SupervisorError as exc:
            observation.service = ServiceState.STOPPED
            observation.warnings.append(f"Unable to query service state: {exc}")

    configured_binary = exec_start_binary(unit_text) if unit_text else None
    observation.binary_path = configured_binary or binary.path
    observation.binary_present = observation.binary_path.is_file()

    identity_dir = locate_identity(store)
    if identity_dir is not None:
        observation.identity_dir = identity_dir
        observation.identity_complete = (identity_dir / SIGNER_KEY_NAME).is_file()
        if not observation.identity_complete:
            observation.warnings.append(f"{identity_dir} has no {SIGNER_KEY_NAME}.")

    config_file = locate_config(store)
    if config_file is not None:
        observation.config_file = config_file
        try:
            document = json.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            observation.warnings.append(f"Unable to parse {config_file}: {exc}")
        else:
            if isinstance(document, Mapping):
                observation.config_document = dict(document)
            else:
                observation.warnings.append(f"{config_file} does not contain a JSON object.")

    try:
        observation.record = deployment.load()
    except DeploymentRecordError as exc:
        observation.warnings.append(str(exc))

    if observation.binary_present:
        try:
            observation.version = NodeBinary(observation.binary_path).version()
        except NodeBinaryError as exc:
            observation.warnings.append(str(exc))
    if observation.version is None and observation.record is not None:
        observation.version = observation.record.version

    if observation.managed and observation.identity_dir is None:
        observation.warnings.append("Managed unit present but no staking identity was found.")
    LOGGER.debug("host observation: %s", observation.to_dict())
    return observation


def read_legacy_identity(directory: Path) -> dict[str, bytes]:
    """Return the raw identity files found in *directory*."""
    files: dict[str, bytes] = {}
    for name in (STAKER_CERT_NAME, STAKER_KEY_NAME, SIGNER_KEY_NAME):
        path = directory / name
        if path.is_file():
            try:
                files[name] = path.read_bytes()
            except OSError as exc:
                raise MaterialError(f"Unable to read {path}: {exc}") from exc
    return files


__all__ = [
    "HostObservation",
    "exec_start_binary",
    "inspect_host",
    "locate_config",
    "locate_identity",
    "read_legacy_identity",
]
