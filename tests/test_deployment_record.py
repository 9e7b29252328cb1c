"""Tests for the persisted deployment record."""
from __future__ import annotations

from pathlib import Path

import pytest

from avanodectl.node_config import Role, RpcScope, build_node_config
from avanodectl.state import DeploymentRecord, DeploymentRecordError, DeploymentStore


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    config, _ = build_node_config(
        tmp_path, network="mainnet", role="api", rpc_scope="public", public_ip="203.0.113.7"
    )
    store = DeploymentStore.for_root(tmp_path)
    record = DeploymentRecord.from_node_config(config, version="v1.11.3", source="release")

    store.save(record)

    assert store.path == tmp_path / "config" / "deployment.yml"
    assert store.path.stat().st_mode & 0o777 == 0o640
    assert store.load() == record
    assert not [item for item in store.path.parent.iterdir() if item.name.startswith(".")]


def test_record_rebuilds_node_config(tmp_path: Path) -> None:
    record = DeploymentRecord(role="validator", network="testnet", http_port=9660)

    config, warnings = record.to_node_config(tmp_path)

    assert warnings == []
    assert config.role is Role.VALIDATOR
    assert config.rpc_scope is RpcScope.LOOPBACK
    assert config.http_port == 9660


def test_updated_refreshes_timestamp() -> None:
    record = DeploymentRecord(role="api", network="mainnet", updated_at="2020-01-01T00:00:00Z")

    changed = record.updated(version="v1.12.0")

    assert changed.version == "v1.12.0"
    assert changed.updated_at != "2020-01-01T00:00:00Z"
    assert changed.role == "api"


def test_missing_record_loads_as_none(tmp_path: Path) -> None:
    store = DeploymentStore.for_root(tmp_path)

    assert store.load() is None
    assert not store.exists()
    store.remove()


@pytest.mark.parametrize(
    "content",
    [
        "- a list\n",
        "network: mainnet\n",
        "role: miner\nnetwork: mainnet\n",
        "role: api\nnetwork: mainnet\nhttp_port: eighty\n",
        "role: [unclosed\n",
    ],
)
def test_invalid_records_raise(tmp_path: Path, content: str) -> None:
    store = DeploymentStore.for_root(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(content, encoding="utf-8")

    with pytest.raises(DeploymentRecordError):
        store.load()
