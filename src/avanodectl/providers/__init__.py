"""Provider interfaces for avanodectl."""
from __future__ import annotations

from .node_binary import NodeBinary, NodeBinaryError
from .node_rpc import NodeRpcClient, NodeRpcError, health_probe
from .release_installer import (
    ReleaseInstaller,
    ReleaseInstallError,
    ReleaseInstallResult,
    StagedRelease,
)
from .supervisor import ManagedUnit, ServiceState, ServiceSupervisor, SupervisorError
from .systemd import MANAGED_MARKER, SystemdError, SystemdProvider, node_id_from_logs

__all__ = [
    "MANAGED_MARKER",
    "ManagedUnit",
    "NodeBinary",
    "NodeBinaryError",
    "NodeRpcClient",
    "NodeRpcError",
    "ReleaseInstallError",
    "ReleaseInstallResult",
    "ReleaseInstaller",
    "ServiceState",
    "ServiceSupervisor",
    "StagedRelease",
    "SupervisorError",
    "SystemdError",
    "SystemdProvider",
    "health_probe",
    "node_id_from_logs",
]
