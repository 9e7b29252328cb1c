"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeSupervisor, StepClock, make_identity

from avanodectl.backups import BackupEngine
from avanodectl.material import MaterialStore, NodeIdentity
from avanodectl.node_config import build_node_config
from avanodectl.state import DeploymentRecord, DeploymentStore


@pytest.fixture(scope="session")
def node_identity() -> NodeIdentity:
    """Staking material generated once per session."""
    return make_identity()


@pytest.fixture
def node_root(tmp_path: Path) -> Path:
    return tmp_path / "node"


@pytest.fixture
def store(node_root: Path) -> MaterialStore:
    return MaterialStore(node_root)


@pytest.fixture
def populated_store(store: MaterialStore, node_identity: NodeIdentity) -> MaterialStore:
    """A managed layout with identity, node.json and a deployment record."""
    store.ensure_directory_layout()
    store.write_identity(node_identity)
    config, _ = build_node_config(store.root, network="testnet", role="api")
    store.write_config(config)
    DeploymentStore.for_root(store.root).save(
        DeploymentRecord.from_node_config(config, version="v1.11.3", source="release")
    )
    (store.data_dir / "db.bin").write_bytes(b"chain" * 64)
    return store


@pytest.fixture
def supervisor(tmp_path: Path) -> FakeSupervisor:
    return FakeSupervisor(tmp_path / "systemd")


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def engine(
    populated_store: MaterialStore,
    supervisor: FakeSupervisor,
    tmp_path: Path,
    clock: StepClock,
) -> BackupEngine:
    return BackupEngine(
        populated_store,
        supervisor,
        tmp_path / "backups",
        min_archive_bytes=0,
        start_grace=0,
        clock=clock,
        sleep=lambda _seconds: None,
    )
