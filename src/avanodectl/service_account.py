"""Inspect and provision the unprivileged account the node runs as."""
from __future__ import annotations

import grp
import pwd
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

NOLOGIN_SHELL = "/usr/sbin/nologin"


class ServiceAccountError(RuntimeError):
    """Raised when the service account cannot be created."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired user and group for the node service."""

    name: str
    group: str | None = None
    home: Path | None = None
    shell: str | None = NOLOGIN_SHELL
    system: bool = True


@dataclass(slots=True)
class ServiceAccountStatus:
    """What the passwd and group databases currently say."""

    user_exists: bool
    group_exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    primary_group: str | None = None


@dataclass(slots=True)
class ServiceAccountAction:
    """One ``groupadd``/``useradd`` invocation."""

    kind: Literal["create-group", "create-user"]
    description: str
    command: list[str]


@dataclass(slots=True)
class ServiceAccountPlan:
    """Actions required to satisfy a :class:`ServiceAccountSpec`."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        """Return ``True`` when nothing needs to be created."""
        return not self.actions


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Look up *spec* in the system user and group databases."""
    status = ServiceAccountStatus(user_exists=False, group_exists=False)
    try:
        entry = pwd.getpwnam(spec.name)
    except KeyError:
        pass
    else:
        status.user_exists = True
        status.uid = entry.pw_uid
        status.gid = entry.pw_gid
        status.home = Path(entry.pw_dir)
        try:
            status.primary_group = grp.getgrgid(entry.pw_gid).gr_name
        except KeyError:
            status.primary_group = None

    if spec.group:
        try:
            grp.getgrnam(spec.group)
        except KeyError:
            status.group_exists = False
        else:
            status.group_exists = True
    return status


def plan_service_account(
    spec: ServiceAccountSpec,
    *,
    status: ServiceAccountStatus | None = None,
) -> ServiceAccountPlan:
    """Return the commands needed to provision *spec*."""
    current = status if status is not None else inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=current)

    if spec.group and not current.group_exists:
        command = ["groupadd"]
        if spec.system:
            command.append("--system")
        command.append(spec.group)
        plan.actions.append(
            ServiceAccountAction("create-group", f"Create group '{spec.group}'.", command)
        )

    if not current.user_exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        if spec.home:
            command.extend(["--home-dir", str(spec.home), "--create-home"])
        else:
            command.append("--no-create-home")
        if spec.shell:
            command.extend(["--shell", spec.shell])
        if spec.group:
            command.extend(["--gid", spec.group])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction("create-user", f"Create service user '{spec.name}'.", command)
        )
    else:
        if spec.group and current.primary_group and current.primary_group != spec.group:
            plan.warnings.append(
                f"User '{spec.name}' primary group is '{current.primary_group}', "
                f"expected '{spec.group}'."
            )
        if spec.home and current.home and current.home != spec.home:
            plan.warnings.append(
                f"User '{spec.name}' home '{current.home}' differs from '{spec.home}'."
            )
    return plan


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def apply_service_account_plan(
    plan: ServiceAccountPlan,
    *,
    runner: Runner | None = None,
) -> list[ServiceAccountAction]:
    """Run every action in *plan*; return the actions performed."""
    run = runner or _default_runner
    performed: list[ServiceAccountAction] = []
    for action in plan.actions:
        result = run(action.command)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ServiceAccountError(
                f"{action.command[0]} failed (exit {result.returncode}): {message}"
            )
        performed.append(action)
    return performed


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(  # noqa: S603,S607
            command,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise ServiceAccountError(f"{command[0]} not found: {exc}") from exc


__all__ = [
    "ServiceAccountAction",
    "ServiceAccountError",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "inspect_service_account",
    "plan_service_account",
]
