"""Tests for snapshot creation, verification, restore and retention."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from fakes import FakeSupervisor, StepClock, make_identity

from avanodectl.backups import (
    BackupEngine,
    BackupError,
    RestoreOutcome,
    SnapshotNotFoundError,
    parse_snapshot_id,
)
from avanodectl.material import MaterialStore


def _file_bytes(store: MaterialStore) -> dict[str, bytes]:
    return {
        name: path.read_bytes() for name, path in store.identity_paths().items()
    } | {"node.json": store.config_file.read_bytes()}


def test_backup_produces_verified_snapshot(engine: BackupEngine) -> None:
    snapshot = engine.backup(label="manual")

    assert snapshot.path.is_dir()
    assert snapshot.path.parent == engine.root
    manifest = json.loads((snapshot.path / "manifest.json").read_text(encoding="utf-8"))
    paths = {entry["path"] for entry in manifest["files"]}
    assert {
        "identity/staker.crt",
        "identity/staker.key",
        "identity/signer.key",
        "config/node.json",
        "config/deployment.yml",
    } <= paths
    key_entry = next(item for item in manifest["files"] if item["path"] == "identity/staker.key")
    assert key_entry["mode"] == "0600"
    assert engine.verify(snapshot).ok
    assert not any(child.name.startswith(".staging-") for child in engine.root.iterdir())


def test_backup_refuses_layout_with_permission_violations(
    engine: BackupEngine,
    populated_store: MaterialStore,
) -> None:
    os.chmod(populated_store.identity_dir / "staker.key", 0o644)

    with pytest.raises(BackupError) as excinfo:
        engine.backup()

    assert any("staker.key" in item for item in excinfo.value.violations)
    assert engine.list_snapshots() == []


def test_backup_with_data_archives_and_restarts_service(
    engine: BackupEngine,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    supervisor.running = True

    snapshot = engine.backup(include_data=True)

    assert snapshot.archive is not None
    assert (snapshot.path / snapshot.archive.name).is_file()
    assert supervisor.calls == ["stop", "start"]
    assert supervisor.running is True
    assert engine.verify(snapshot).ok


def test_verify_detects_tampering(engine: BackupEngine) -> None:
    snapshot = engine.backup()
    (snapshot.path / "config" / "node.json").write_text("{}", encoding="utf-8")

    report = engine.verify(snapshot)

    assert not report.ok
    assert any("config/node.json" in item for item in report.violations)


def test_small_archive_is_only_a_warning(
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
    tmp_path: Path,
    clock: StepClock,
) -> None:
    engine = BackupEngine(
        populated_store,
        supervisor,
        tmp_path / "backups",
        min_archive_bytes=10 * 1024 * 1024,
        start_grace=0,
        clock=clock,
    )

    snapshot = engine.backup(include_data=True)
    report = engine.verify(snapshot)

    assert report.ok
    assert report.warnings


def test_identifiers_get_counter_within_same_second(
    engine: BackupEngine,
    clock: StepClock,
) -> None:
    clock.frozen = True

    first = engine.backup()
    second = engine.backup()
    third = engine.backup()

    assert first.id == "20250101T120000Z"
    assert second.id == "20250101T120000Z-1"
    assert third.id == "20250101T120000Z-2"
    assert [item.id for item in engine.list_snapshots()] == [first.id, second.id, third.id]


def test_parse_snapshot_id_rejects_garbage() -> None:
    assert parse_snapshot_id("20250101T120000Z-3") == ("20250101T120000Z", 3)
    with pytest.raises(BackupError):
        parse_snapshot_id("../etc")


def test_get_unknown_snapshot(engine: BackupEngine) -> None:
    with pytest.raises(SnapshotNotFoundError):
        engine.get("20200101T000000Z")


def test_restore_round_trip(
    engine: BackupEngine,
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    supervisor.running = True
    original = _file_bytes(populated_store)
    snapshot = engine.backup()

    populated_store.write_identity(make_identity("replacement"))
    populated_store.config_file.write_text('{"network-id": "local"}\n', encoding="utf-8")

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.OK, result.reason
    assert _file_bytes(populated_store) == original
    assert populated_store.verify_permissions() == []
    assert result.pre_restore is not None
    assert result.pre_restore.label == "pre-restore"
    assert supervisor.running is True
    assert not any(child.name.startswith(".restore-") for child in populated_store.root.iterdir())


def test_restore_rolls_back_when_replace_fails(
    engine: BackupEngine,
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    supervisor.running = True
    snapshot = engine.backup()
    populated_store.write_identity(make_identity("current"))
    current = _file_bytes(populated_store)

    def fail_place(self: BackupEngine, _snapshot: object) -> None:
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(BackupEngine, "_place_snapshot", fail_place)

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert "replace" in (result.reason or "")
    assert _file_bytes(populated_store) == current
    assert populated_store.verify_permissions() == []
    assert supervisor.running is True


def test_restore_rolls_back_when_service_does_not_come_up(
    engine: BackupEngine,
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    supervisor.running = True
    snapshot = engine.backup()
    populated_store.write_identity(make_identity("current"))
    current = _file_bytes(populated_store)
    supervisor.crash_on_start = 1

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert _file_bytes(populated_store) == current
    assert supervisor.running is True


def test_restore_starts_a_stopped_service(
    engine: BackupEngine,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    snapshot = engine.backup()

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.OK, result.reason
    assert supervisor.running is True


def test_rollback_leaves_a_stopped_service_stopped(
    engine: BackupEngine,
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    snapshot = engine.backup()
    populated_store.write_identity(make_identity("current"))
    current = _file_bytes(populated_store)
    supervisor.crash_on_start = 1

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert _file_bytes(populated_store) == current
    assert supervisor.running is False
    assert supervisor.calls.count("start") == 1


def test_restore_rolls_back_when_health_check_fails(
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
    tmp_path: Path,
    clock: StepClock,
) -> None:
    answers = iter([False, True])
    engine = BackupEngine(
        populated_store,
        supervisor,
        tmp_path / "backups",
        min_archive_bytes=0,
        start_grace=0,
        health_check=lambda: next(answers),
        clock=clock,
        sleep=lambda _seconds: None,
    )
    supervisor.install_unit("/usr/local/bin/avalanchego")
    supervisor.running = True
    snapshot = engine.backup()
    populated_store.write_identity(make_identity("current"))
    current = _file_bytes(populated_store)

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert "verify-running" in (result.reason or "")
    assert _file_bytes(populated_store) == current
    assert supervisor.running is True


def test_restore_reports_fatal_with_log_tail(
    engine: BackupEngine,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.install_unit("/usr/local/bin/avalanchego")
    supervisor.running = True
    supervisor.logs = ["panic: database corrupted"]
    snapshot = engine.backup()
    supervisor.crash_on_start = 2

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.FATAL
    assert result.log_tail == ["panic: database corrupted"]
    assert result.pre_restore is not None
    assert result.pre_restore.path.is_dir()


def test_restore_refuses_unverifiable_snapshot(
    engine: BackupEngine,
    populated_store: MaterialStore,
) -> None:
    snapshot = engine.backup()
    (snapshot.path / "identity" / "signer.key").unlink()
    before = _file_bytes(populated_store)

    result = engine.restore(snapshot)

    assert result.outcome is RestoreOutcome.FAILED
    assert "verification" in (result.reason or "")
    assert _file_bytes(populated_store) == before


def test_prune_keeps_newest_and_protected(engine: BackupEngine) -> None:
    created = [engine.backup().id for _ in range(5)]

    removed = engine.prune(3, protect=[created[0]])

    assert removed == [created[1]]
    remaining = [item.id for item in engine.list_snapshots()]
    assert remaining == [created[0], *created[2:]]


def test_prune_removes_oldest(engine: BackupEngine) -> None:
    created = [engine.backup().id for _ in range(5)]

    removed = engine.prune(3)

    assert removed == created[:2]
    assert [item.id for item in engine.list_snapshots()] == created[2:]


def test_prune_rejects_zero(engine: BackupEngine) -> None:
    with pytest.raises(BackupError):
        engine.prune(0)


def test_safety_backup_captures_legacy_sources(
    engine: BackupEngine,
    tmp_path: Path,
) -> None:
    legacy = tmp_path / "legacy-staking"
    legacy.mkdir()
    (legacy / "staker.crt").write_bytes(b"cert")

    snapshot = engine.safety_backup("pre-migrate", sources={"identity": legacy})

    assert [entry.path for entry in snapshot.files] == ["identity/staker.crt"]
    assert snapshot.label == "pre-migrate"
