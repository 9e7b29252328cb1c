"""Tests for the role policy and node.json rendering."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from avanodectl.node_config import (
    Network,
    NodeConfigError,
    Role,
    RpcScope,
    build_node_config,
    dump_config,
    infer_node_config,
    launch_arguments,
    render_config,
)

ROOT = Path("/home/avalanche/.avalanchego")


@pytest.mark.parametrize(
    ("role", "state_sync", "indexing", "pruning", "admin_api"),
    [
        ("validator", True, False, True, False),
        ("archival", False, True, False, True),
        ("api", True, True, True, True),
    ],
)
def test_role_policy(
    role: str,
    state_sync: bool,
    indexing: bool,
    pruning: bool,
    admin_api: bool,
) -> None:
    config, warnings = build_node_config(ROOT, network="mainnet", role=role)

    assert warnings == []
    assert config.rpc_scope is RpcScope.LOOPBACK
    document = render_config(config)
    assert document["state-sync-enabled"] is state_sync
    assert document["index-enabled"] is indexing
    assert document["pruning-enabled"] is pruning
    assert document["api-admin-enabled"] is admin_api
    assert document["http-host"] == "127.0.0.1"


def test_validator_public_rpc_is_downgraded_without_override() -> None:
    config, warnings = build_node_config(
        ROOT, network="mainnet", role="validator", rpc_scope="public"
    )

    assert config.rpc_scope is RpcScope.LOOPBACK
    assert len(warnings) == 1
    assert "--allow-public-rpc" in warnings[0]


def test_validator_public_rpc_with_override() -> None:
    config, warnings = build_node_config(
        ROOT,
        network="mainnet",
        role="validator",
        rpc_scope="public",
        allow_public_rpc=True,
    )

    assert warnings == []
    assert render_config(config)["http-host"] == "0.0.0.0"


def test_api_node_may_be_public() -> None:
    config, warnings = build_node_config(ROOT, network="testnet", role="api", rpc_scope="public")

    assert warnings == []
    assert config.rpc_scope is RpcScope.PUBLIC
    assert render_config(config)["network-id"] == "fuji"


def test_paths_follow_the_root() -> None:
    config, _ = build_node_config(ROOT, network="mainnet", role="api")
    document = render_config(config)

    assert document["staking-tls-key-file"] == str(ROOT / "identity" / "staker.key")
    assert document["staking-signer-key-file"] == str(ROOT / "identity" / "signer.key")
    assert document["db-dir"] == str(ROOT / "data")
    assert document["public-ip-resolution-service"] == "opendns"


def test_public_ip_replaces_resolution_service() -> None:
    config, _ = build_node_config(ROOT, network="mainnet", role="api", public_ip="203.0.113.7")
    document = render_config(config)

    assert document["public-ip"] == "203.0.113.7"
    assert "public-ip-resolution-service" not in document


@pytest.mark.parametrize(
    "kwargs",
    [
        {"network": "devnet", "role": "api"},
        {"network": "mainnet", "role": "miner"},
        {"network": "mainnet", "role": "api", "rpc_scope": "everywhere"},
        {"network": "mainnet", "role": "api", "public_ip": "not-an-ip"},
        {"network": "mainnet", "role": "api", "http_port": 9651},
        {"network": "mainnet", "role": "api", "log_level": "chatty"},
    ],
)
def test_invalid_requests(kwargs: dict[str, object]) -> None:
    with pytest.raises(NodeConfigError):
        build_node_config(ROOT, **kwargs)  # type: ignore[arg-type]


def test_dump_config_is_stable_json() -> None:
    config, _ = build_node_config(ROOT, network="local", role="archival")

    text = dump_config(config)

    assert text.endswith("\n")
    assert json.loads(text)["network-id"] == "local"
    assert dump_config(config) == text


def test_launch_arguments() -> None:
    config, _ = build_node_config(ROOT, network="mainnet", role="validator")

    assert launch_arguments(config, ROOT / "config" / "node.json") == [
        f"--config-file={ROOT / 'config' / 'node.json'}"
    ]
    flags = launch_arguments(config)
    assert "--network-id=mainnet" in flags
    assert "--index-enabled=false" in flags


def test_infer_role_from_existing_document() -> None:
    archival, _ = infer_node_config(
        {"network-id": "fuji", "pruning-enabled": False, "index-enabled": True}, ROOT
    )
    api, _ = infer_node_config({"network-id": "mainnet", "index-enabled": True}, ROOT)
    validator, _ = infer_node_config({"network-id": "mainnet"}, ROOT)

    assert archival.role is Role.ARCHIVAL
    assert archival.network is Network.TESTNET
    assert api.role is Role.API
    assert validator.role is Role.VALIDATOR


def test_infer_keeps_ports_and_reports_policy_changes() -> None:
    config, warnings = infer_node_config(
        {
            "network-id": "mainnet",
            "http-port": 9660,
            "staking-port": "9661",
            "index-enabled": True,
        },
        ROOT,
        role="validator",
    )

    assert config.http_port == 9660
    assert config.staking_port == 9661
    assert config.indexing is False
    assert any("index-enabled" in warning for warning in warnings)


def test_infer_public_validator_needs_override() -> None:
    config, warnings = infer_node_config(
        {"network-id": "mainnet", "http-host": "0.0.0.0"},
        ROOT,
        role="validator",
    )

    assert config.rpc_scope is RpcScope.LOOPBACK
    assert warnings
