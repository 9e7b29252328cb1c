"""Unit tests for service account provisioning."""
from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from avanodectl import service_account
from avanodectl.service_account import (
    ServiceAccountError,
    ServiceAccountSpec,
    apply_service_account_plan,
    plan_service_account,
)


def _raise_key_error(*args: object, **kwargs: object) -> None:
    raise KeyError


def _existing_account(monkeypatch: pytest.MonkeyPatch, *, group_name: str, home: str) -> None:
    pw_entry = SimpleNamespace(pw_uid=998, pw_gid=998, pw_dir=home)
    group_entry = SimpleNamespace(gr_gid=998, gr_name=group_name)
    monkeypatch.setattr(service_account.pwd, "getpwnam", lambda name: pw_entry)
    monkeypatch.setattr(service_account.grp, "getgrnam", lambda name: group_entry)
    monkeypatch.setattr(service_account.grp, "getgrgid", lambda gid: group_entry)


def test_plan_creates_group_and_user(monkeypatch: pytest.MonkeyPatch) -> None:
    """Plan should request group and user creation when missing."""
    monkeypatch.setattr(service_account.pwd, "getpwnam", _raise_key_error)
    monkeypatch.setattr(service_account.grp, "getgrnam", _raise_key_error)

    spec = ServiceAccountSpec(name="avalanche", group="avalanche", home=Path("/home/avalanche"))
    plan = plan_service_account(spec)

    assert [action.kind for action in plan.actions] == ["create-group", "create-user"]
    assert plan.actions[0].command == ["groupadd", "--system", "avalanche"]
    assert plan.actions[1].command == [
        "useradd",
        "--system",
        "--home-dir",
        "/home/avalanche",
        "--create-home",
        "--shell",
        "/usr/sbin/nologin",
        "--gid",
        "avalanche",
        "avalanche",
    ]
    assert not plan.satisfied


def test_plan_no_actions_when_account_matches(monkeypatch: pytest.MonkeyPatch) -> None:
    """Plan should be empty when user and group already match expectations."""
    _existing_account(monkeypatch, group_name="avalanche", home="/home/avalanche")

    plan = plan_service_account(
        ServiceAccountSpec(name="avalanche", group="avalanche", home=Path("/home/avalanche"))
    )

    assert plan.satisfied
    assert plan.warnings == []


def test_plan_warns_on_mismatched_group_and_home(monkeypatch: pytest.MonkeyPatch) -> None:
    _existing_account(monkeypatch, group_name="users", home="/var/lib/avalanche")

    plan = plan_service_account(
        ServiceAccountSpec(name="avalanche", group="avalanche", home=Path("/home/avalanche"))
    )

    assert plan.actions == []
    assert len(plan.warnings) == 2


def test_apply_runs_actions_in_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(service_account.pwd, "getpwnam", _raise_key_error)
    monkeypatch.setattr(service_account.grp, "getgrnam", _raise_key_error)
    plan = plan_service_account(ServiceAccountSpec(name="avalanche", group="avalanche"))
    executed: list[list[str]] = []

    def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        executed.append(command)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    performed = apply_service_account_plan(plan, runner=runner)

    assert [command[0] for command in executed] == ["groupadd", "useradd"]
    assert "--no-create-home" in executed[1]
    assert performed == plan.actions


def test_apply_raises_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(service_account.pwd, "getpwnam", _raise_key_error)
    plan = plan_service_account(ServiceAccountSpec(name="avalanche"))

    def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(command, 9, stdout="", stderr="useradd: locked")

    with pytest.raises(ServiceAccountError, match="exit 9"):
        apply_service_account_plan(plan, runner=runner)
