"""Systemd provider for the AvalancheGo service unit."""
from __future__ import annotations

import os
import re
import subprocess
import tempfile
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..templates import TemplateEngine
from .supervisor import ServiceState, SupervisorError

MANAGED_MARKER = "# Managed by avanodectl"
UNIT_TEMPLATE = "systemd/avalanchego.service.j2"
_NODE_ID_RE = re.compile(r"NodeID-[1-9A-HJ-NP-Za-km-z]{20,}")
_ACTIVE_STATES = {"active", "reloading"}


class SystemdError(SupervisorError):
    """Raised when a systemctl or journalctl invocation fails."""

    def __init__(self, operation: str, exit_code: int | None, message: str) -> None:
        self.operation = operation
        self.exit_code = exit_code
        self.message = message
        if exit_code is None:
            text = f"{operation} failed: {message}"
        else:
            text = f"{operation} failed (exit {exit_code}): {message}"
        super().__init__(text)


def node_id_from_logs(lines: Iterable[str]) -> str | None:
    """Return the last ``NodeID-...`` string printed in *lines*."""
    found: str | None = None
    for line in lines:
        for match in _NODE_ID_RE.finditer(line):
            found = match.group(0)
    return found


@dataclass(slots=True)
class SystemdProvider:
    """Render and drive the systemd unit that runs the node."""

    templates: TemplateEngine
    unit_name: str = "avalanchego"
    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    stop_timeout: float = 300.0
    poll_interval: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @property
    def unit(self) -> str:
        """Return the unit name including the ``.service`` suffix."""
        if self.unit_name.endswith(".service"):
            return self.unit_name
        return f"{self.unit_name}.service"

    @property
    def unit_path(self) -> Path:
        """Return the path of the unit file."""
        return self.unit_dir / self.unit

    # ------------------------------------------------------------------
    # unit file management
    def render_unit(self, context: Mapping[str, object]) -> bool:
        """Render the unit file from *context* and reload systemd when it changed."""
        changed = self.templates.render_to_path(UNIT_TEMPLATE, self.unit_path, context, mode=0o644)
        if changed:
            self._reload_daemon()
        return changed

    def read_unit(self) -> str | None:
        """Return the unit file contents or ``None`` when absent."""
        try:
            return self.unit_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def is_managed(self) -> bool:
        """Return whether the unit file carries the avanodectl marker line."""
        contents = self.read_unit()
        if contents is None:
            return False
        return any(line.strip() == MANAGED_MARKER for line in contents.splitlines())

    def enable(self) -> None:
        """Enable the unit at boot."""
        self._systemctl("enable", self.unit)

    def remove(self) -> None:
        """Disable and delete the unit file."""
        if not self.unit_path.exists():
            return
        self._systemctl("disable", self.unit, check=False)
        self.unit_path.unlink(missing_ok=True)
        self._reload_daemon()

    def write_unit_text(self, text: str) -> None:
        """Atomically put *text* back as the unit file and reload systemd."""
        self.unit_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.unit}.", dir=self.unit_dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.unit_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        self._reload_daemon()

    # ------------------------------------------------------------------
    # service lifecycle
    def start(self) -> None:
        """Start the unit."""
        self._systemctl("start", self.unit)

    def stop(self) -> None:
        """Stop the unit and wait until systemd reports it inactive."""
        self._systemctl("stop", self.unit, extra=("--no-block",))
        self._wait_for(active=False, operation="stop")

    def restart(self) -> None:
        """Restart the unit and wait until systemd reports it active."""
        self._systemctl("restart", self.unit, extra=("--no-block",))
        self._wait_for(active=True, operation="restart")

    def is_running(self) -> ServiceState:
        """Map ``systemctl is-active`` onto :class:`ServiceState`."""
        if not self.unit_path.exists():
            return ServiceState.NOT_INSTALLED
        return ServiceState.RUNNING if self._is_active() else ServiceState.STOPPED

    def tail_logs(self, lines: int = 50) -> list[str]:
        """Return the last *lines* journal lines for the unit."""
        result = self._journalctl(
            ["--unit", self.unit, "--no-pager", "--output", "cat", "--lines", str(lines)]
        )
        return (result.stdout or "").splitlines()

    def node_id(self, lines: int = 500) -> str | None:
        """Return the NodeID the service last printed to its journal."""
        return node_id_from_logs(self.tail_logs(lines))

    # ------------------------------------------------------------------
    def _is_active(self) -> bool:
        result = self._systemctl("is-active", self.unit, check=False)
        return (result.stdout or "").strip() in _ACTIVE_STATES

    def _wait_for(self, *, active: bool, operation: str) -> None:
        deadline = self.clock() + self.stop_timeout
        while True:
            if self._is_active() == active:
                return
            if self.clock() >= deadline:
                wanted = "active" if active else "inactive"
                raise SystemdError(
                    f"{self.systemctl_bin} {operation}",
                    None,
                    f"{self.unit} not {wanted} after {self.stop_timeout:.0f}s",
                )
            self.sleep(self.poll_interval)

    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        extra: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, *extra, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, operation=f"{self.systemctl_bin} {command}")

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            [self.journalctl_bin, *args],
            check=check,
            operation=self.journalctl_bin,
        )

    @staticmethod
    def _run_command(
        args: Sequence[str],
        *,
        check: bool,
        operation: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(operation, None, f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(operation, result.returncode, message)
        return result


__all__ = ["MANAGED_MARKER", "SystemdError", "SystemdProvider", "node_id_from_logs"]
