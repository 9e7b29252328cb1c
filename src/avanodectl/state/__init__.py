"""Persisted deployment state."""
from __future__ import annotations

from .deployment import DeploymentRecord, DeploymentRecordError, DeploymentStore

__all__ = ["DeploymentRecord", "DeploymentRecordError", "DeploymentStore"]
