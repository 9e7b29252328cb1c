"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from avanodectl.providers.supervisor import ServiceState
from avanodectl.providers.systemd import (
    MANAGED_MARKER,
    SystemdError,
    SystemdProvider,
    node_id_from_logs,
)
from avanodectl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider(tmp_path: Path, clock: FakeClock) -> SystemdProvider:
    """Return a provider instance scoped to the temporary path."""
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        unit_dir=tmp_path / "systemd",
        stop_timeout=5.0,
        poll_interval=1.0,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def commands(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    """Record every command the provider runs; ``is-active`` answers ``inactive``."""
    recorded: list[list[str]] = []

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        recorded.append(list(args))
        if "is-active" in args:
            return DummyResult(returncode=3, stdout="inactive\n")
        return DummyResult()

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)
    return recorded


def _context() -> dict[str, object]:
    return {
        "role": "api",
        "network": "testnet",
        "service_user": "avalanche",
        "service_group": None,
        "working_directory": "/home/avalanche/.avalanchego",
        "exec_start": "/usr/local/bin/avalanchego --config-file=/etc/node.json",
        "stop_timeout": 300,
        "environment": [],
        "node_root": "/home/avalanche/.avalanchego",
    }


def test_render_unit_writes_file_and_reloads_once(
    provider: SystemdProvider,
    commands: list[list[str]],
) -> None:
    """Rendering writes the unit file and triggers a daemon reload once."""
    assert provider.render_unit(_context()) is True
    assert provider.render_unit(_context()) is False

    assert provider.unit_path == provider.unit_dir / "avalanchego.service"
    assert provider.is_managed()
    assert commands == [["systemctl", "daemon-reload"]]


def test_unit_without_marker_is_not_managed(provider: SystemdProvider) -> None:
    provider.unit_dir.mkdir(parents=True)
    provider.unit_path.write_text("[Service]\nExecStart=/opt/avalanchego\n", encoding="utf-8")

    assert not provider.is_managed()


def test_write_unit_text_restores_contents(
    provider: SystemdProvider,
    commands: list[list[str]],
) -> None:
    provider.write_unit_text(f"{MANAGED_MARKER}\n[Service]\n")

    assert provider.read_unit() == f"{MANAGED_MARKER}\n[Service]\n"
    assert oct(provider.unit_path.stat().st_mode & 0o777) == "0o644"
    assert commands[-1] == ["systemctl", "daemon-reload"]
    assert not [item for item in provider.unit_dir.iterdir() if item.name.startswith(".")]


def test_is_running_maps_states(
    provider: SystemdProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert provider.is_running() is ServiceState.NOT_INSTALLED

    provider.unit_dir.mkdir(parents=True)
    provider.unit_path.write_text("[Service]\n", encoding="utf-8")
    answers = iter(["active\n", "failed\n"])

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        return DummyResult(stdout=next(answers))

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)

    assert provider.is_running() is ServiceState.RUNNING
    assert provider.is_running() is ServiceState.STOPPED


def test_stop_waits_until_inactive(
    provider: SystemdProvider,
    monkeypatch: pytest.MonkeyPatch,
    clock: FakeClock,
) -> None:
    answers = iter(["active\n", "active\n", "inactive\n"])
    recorded: list[list[str]] = []

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        recorded.append(list(args))
        if "is-active" in args:
            return DummyResult(stdout=next(answers))
        return DummyResult()

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)

    provider.stop()

    assert recorded[0] == ["systemctl", "--no-block", "stop", "avalanchego.service"]
    assert clock.now == 2.0


def test_stop_times_out(
    provider: SystemdProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        return DummyResult(stdout="active\n")

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)

    with pytest.raises(SystemdError) as excinfo:
        provider.stop()

    assert "not inactive" in str(excinfo.value)


def test_failed_command_raises_with_stderr(
    provider: SystemdProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        return DummyResult(returncode=5, stderr="Unit avalanchego.service not loaded.")

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)

    with pytest.raises(SystemdError) as excinfo:
        provider.start()

    assert excinfo.value.exit_code == 5
    assert "not loaded" in str(excinfo.value)


def test_missing_systemctl_is_reported(
    provider: SystemdProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)

    with pytest.raises(SystemdError) as excinfo:
        provider.enable()

    assert excinfo.value.exit_code is None


def test_tail_logs_and_node_id(
    provider: SystemdProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    journal = "\n".join(
        [
            "INFO node starting",
            "INFO initializing node {nodeID: NodeID-7Xhw2mDxuDS44j42TCB6U5579esbSt3Lg}",
            "INFO bootstrapping",
        ]
    )
    seen: list[list[str]] = []

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        seen.append(list(args))
        return DummyResult(stdout=journal)

    monkeypatch.setattr("avanodectl.providers.systemd.subprocess.run", fake_run)

    assert provider.tail_logs(3)[-1] == "INFO bootstrapping"
    assert provider.node_id() == "NodeID-7Xhw2mDxuDS44j42TCB6U5579esbSt3Lg"
    assert seen[0][:3] == ["journalctl", "--unit", "avalanchego.service"]
    assert seen[0][-2:] == ["--lines", "3"]


def test_node_id_from_logs_takes_last_match() -> None:
    lines = [
        "NodeID-111111111111111111111",
        "no id here",
        "rotated to NodeID-7Xhw2mDxuDS44j42TCB6U5579esbSt3Lg",
    ]

    assert node_id_from_logs(lines) == "NodeID-7Xhw2mDxuDS44j42TCB6U5579esbSt3Lg"
    assert node_id_from_logs(["nothing"]) is None
