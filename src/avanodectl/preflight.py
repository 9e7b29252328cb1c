"""Host precondition checks run before any mutating command."""
from __future__ import annotations

import os
import shutil
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import PreflightConfig


class PreconditionError(RuntimeError):
    """Raised when the host cannot run the requested workflow."""

    def __init__(self, message: str, *, failures: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.failures = list(failures)


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Outcome of a single precondition check."""

    id: str
    ok: bool
    message: str
    remediation: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "id": self.id,
            "ok": self.ok,
            "message": self.message,
            "remediation": self.remediation,
        }


@dataclass(slots=True)
class PreflightReport:
    """All check results for one run."""

    results: list[CheckResult] = field(default_factory=list)

    @property
    def failures(self) -> list[CheckResult]:
        """Return the failed checks."""
        return [result for result in self.results if not result.ok]

    @property
    def ok(self) -> bool:
        """Return ``True`` when every check passed."""
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise :class:`PreconditionError` when any check failed."""
        failures = self.failures
        if not failures:
            return
        messages = [result.message for result in failures]
        raise PreconditionError(
            "Preflight checks failed: " + "; ".join(messages),
            failures=messages,
        )


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``/etc/os-release`` content into a mapping."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        values[key.strip()] = raw.strip().strip('"').strip("'")
    return values


def check_os_release(config: PreflightConfig) -> CheckResult:
    """Require a supported Ubuntu LTS release."""
    try:
        info = parse_os_release(config.os_release.read_text(encoding="utf-8"))
    except OSError as exc:
        return CheckResult(
            "os-release",
            False,
            f"Unable to read {config.os_release}: {exc}",
            "Run on Ubuntu or disable preflight.os_release checks.",
        )
    distro = info.get("ID", "").lower()
    release = info.get("VERSION_ID", "")
    if distro != "ubuntu":
        return CheckResult(
            "os-release",
            False,
            f"Unsupported distribution '{distro or 'unknown'}'; Ubuntu is required.",
        )
    if config.supported_releases and release not in config.supported_releases:
        supported = ", ".join(config.supported_releases)
        return CheckResult(
            "os-release",
            False,
            f"Ubuntu {release} is not supported (expected one of: {supported}).",
        )
    return CheckResult("os-release", True, f"Ubuntu {release} detected.")


def check_root(*, euid: Callable[[], int] = os.geteuid) -> CheckResult:
    """Require root privileges."""
    if euid() == 0:
        return CheckResult("privileges", True, "Running as root.")
    return CheckResult(
        "privileges",
        False,
        "Root privileges are required.",
        "Re-run the command with sudo.",
    )


def check_commands(
    commands: Sequence[str],
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> list[CheckResult]:
    """Require each of *commands* on ``PATH``."""
    results: list[CheckResult] = []
    for command in commands:
        path = Path(command)
        if path.is_absolute():
            found = path.exists() and os.access(path, os.X_OK)
        else:
            found = which(command) is not None
        if found:
            results.append(CheckResult(f"command-{command}", True, f"'{command}' available."))
        else:
            results.append(
                CheckResult(
                    f"command-{command}",
                    False,
                    f"Required command '{command}' not found on PATH.",
                    f"Install the package providing '{command}'.",
                )
            )
    return results


def run_preflight(
    config: PreflightConfig,
    *,
    extra_commands: Sequence[str] = (),
    euid: Callable[[], int] = os.geteuid,
    which: Callable[[str], str | None] = shutil.which,
) -> PreflightReport:
    """Run every configured check and return the report."""
    report = PreflightReport()
    if not config.enabled:
        return report
    report.results.append(check_os_release(config))
    if config.require_root:
        report.results.append(check_root(euid=euid))
    commands = list(dict.fromkeys([*config.required_commands, *extra_commands]))
    report.results.extend(check_commands(commands, which=which))
    return report


def summarise(report: PreflightReport) -> Mapping[str, object]:
    """Return the report as a JSON-friendly mapping."""
    return {"ok": report.ok, "checks": [result.to_dict() for result in report.results]}


__all__ = [
    "CheckResult",
    "PreconditionError",
    "PreflightReport",
    "check_commands",
    "check_os_release",
    "check_root",
    "parse_os_release",
    "run_preflight",
    "summarise",
]
