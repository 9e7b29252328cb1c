"""Process supervisor interface used by the backup engine and deployer."""
from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Protocol


class SupervisorError(RuntimeError):
    """Raised when the supervisor cannot carry out a service operation."""


class ServiceState(str, Enum):
    """Observed state of the node service."""

    RUNNING = "running"
    STOPPED = "stopped"
    NOT_INSTALLED = "not-installed"


class ServiceSupervisor(Protocol):
    """Start, stop and observe the node service."""

    def start(self) -> None:
        """Start the service."""

    def stop(self) -> None:
        """Stop the service and wait until it is inactive."""

    def restart(self) -> None:
        """Restart the service and wait until it is active."""

    def is_running(self) -> ServiceState:
        """Return the current service state."""

    def tail_logs(self, lines: int = 50) -> list[str]:
        """Return the last *lines* lines of service output."""


class ManagedUnit(ServiceSupervisor, Protocol):
    """A supervisor that also owns the service definition on disk."""

    @property
    def unit_path(self) -> Path:
        """Return the path of the service definition."""

    def render_unit(self, context: Mapping[str, object]) -> bool:
        """Write the service definition; return ``True`` when it changed."""

    def read_unit(self) -> str | None:
        """Return the current service definition, if any."""

    def is_managed(self) -> bool:
        """Return whether the service definition carries the managed marker."""

    def enable(self) -> None:
        """Enable the service at boot."""

    def remove(self) -> None:
        """Disable and delete the service definition."""

    def write_unit_text(self, text: str) -> None:
        """Replace the service definition with *text* verbatim."""


__all__ = ["ManagedUnit", "ServiceState", "ServiceSupervisor", "SupervisorError"]
