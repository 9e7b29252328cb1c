"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from avanodectl.locking import LockManager, LockTimeoutError


def test_named_lock_writes_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "node.lock"
    with manager.named_lock("node") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.named_lock("node", timeout=0.2):
        pass


def test_named_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.named_lock("node"):
        with pytest.raises(LockTimeoutError):
            with manager.named_lock("node", timeout=0.1):
                pass


def test_lock_names_cannot_escape_runtime_dir(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    assert manager.lock_path("backups/prune") == tmp_path / "run" / "backups-prune.lock"


def test_mutate_node_acquires_global_then_extra(tmp_path: Path) -> None:
    """Lock bundles acquire the global lock first followed by named locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_node(["snapshots", "binary", "snapshots"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "avanodectl.lock",
            "binary.lock",
            "snapshots.lock",
        ]


def test_mutate_node_blocks_second_mutation(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_node():
        with pytest.raises(LockTimeoutError):
            with manager.mutate_node(timeout=0.1):
                pass
