"""Tests for the node binary wrapper and the JSON-RPC client."""
from __future__ import annotations

import time
from pathlib import Path

import pytest
import requests

from avanodectl.providers.node_binary import (
    NodeBinary,
    NodeBinaryError,
    normalise_tag,
    parse_version_output,
)
from avanodectl.providers.node_rpc import NodeRpcClient, NodeRpcError, health_probe

KEYGEN_SCRIPT = """#!/bin/sh
for arg in "$@"; do
  case "$arg" in
    --staking-tls-cert-file=*) printf cert > "${arg#*=}" ;;
    --staking-tls-key-file=*) printf key > "${arg#*=}" ;;
    --staking-signer-key-file=*) printf signer > "${arg#*=}" ;;
  esac
done
exec sleep 30
"""


def _script(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("avalanchego/1.11.3 [database=v1.4.5, rpcchainvm=35, commit=abc]", "v1.11.3"),
        ("avalanchego/1.12.0-fuji\n", "v1.12.0-fuji"),
    ],
)
def test_parse_version_output(output: str, expected: str) -> None:
    assert parse_version_output(output) == expected


def test_parse_version_output_rejects_noise() -> None:
    with pytest.raises(NodeBinaryError):
        parse_version_output("command not found")


def test_normalise_tag() -> None:
    assert normalise_tag(" 1.11.3 ") == "v1.11.3"
    assert normalise_tag("v1.11.3") == "v1.11.3"
    with pytest.raises(NodeBinaryError):
        normalise_tag("  ")


def test_version_runs_the_binary(tmp_path: Path) -> None:
    binary = _script(tmp_path / "avalanchego", '#!/bin/sh\necho "avalanchego/1.11.3 [x]"\n')

    assert NodeBinary(binary).version() == "v1.11.3"


def test_version_reports_failures(tmp_path: Path) -> None:
    missing = NodeBinary(tmp_path / "missing")
    failing = NodeBinary(_script(tmp_path / "avalanchego", "#!/bin/sh\necho boom >&2\nexit 2\n"))

    with pytest.raises(NodeBinaryError, match="not found"):
        missing.version()
    with pytest.raises(NodeBinaryError, match="exit 2"):
        failing.version()


def test_generate_identity_collects_keys(tmp_path: Path) -> None:
    binary = NodeBinary(_script(tmp_path / "avalanchego", KEYGEN_SCRIPT), sleep=time.sleep)

    identity = binary.generate_identity(timeout=20, poll_interval=0.05)

    assert identity.certificate == b"cert"
    assert identity.private_key == b"key"
    assert identity.signer_key == b"signer"


def test_generate_identity_detects_early_exit(tmp_path: Path) -> None:
    binary = NodeBinary(_script(tmp_path / "avalanchego", "#!/bin/sh\nexit 3\n"), sleep=time.sleep)

    with pytest.raises(NodeBinaryError, match="before writing keys"):
        binary.generate_identity(timeout=20, poll_interval=0.05)


# ---------------------------------------------------------------------------
# RPC


class FakeResponse:
    def __init__(self, body: object, status: int = 200) -> None:
        self.body = body
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status}")

    def json(self) -> object:
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class FakeSession:
    def __init__(self, response: FakeResponse | Exception) -> None:
        self.response = response
        self.requests: list[tuple[str, object]] = []

    def post(self, url: str, *, json: object, timeout: float) -> FakeResponse:
        self.requests.append((url, json))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def get(self, url: str, *, timeout: float) -> FakeResponse:
        self.requests.append((url, None))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _client(response: FakeResponse | Exception) -> tuple[NodeRpcClient, FakeSession]:
    session = FakeSession(response)
    return NodeRpcClient(session=session), session  # type: ignore[arg-type]


def test_node_id_posts_json_rpc() -> None:
    client, session = _client(
        FakeResponse({"jsonrpc": "2.0", "id": 1, "result": {"nodeID": "NodeID-abc"}})
    )

    assert client.node_id() == "NodeID-abc"
    url, payload = session.requests[0]
    assert url == "http://127.0.0.1:9650/ext/info"
    assert payload == {"jsonrpc": "2.0", "id": 1, "method": "info.getNodeID", "params": {}}


def test_is_bootstrapped_passes_chain() -> None:
    client, session = _client(FakeResponse({"result": {"isBootstrapped": True}}))

    assert client.is_bootstrapped("P") is True
    assert session.requests[0][1]["params"] == {"chain": "P"}  # type: ignore[index]


@pytest.mark.parametrize(
    "response",
    [
        requests.ConnectionError("refused"),
        FakeResponse({}, status=503),
        FakeResponse(ValueError("not json")),
        FakeResponse({"error": {"message": "method not found"}}),
        FakeResponse({"result": {}}),
    ],
)
def test_node_id_errors(response: FakeResponse | Exception) -> None:
    client, _ = _client(response)

    with pytest.raises(NodeRpcError):
        client.node_id()


def test_healthy_reads_health_endpoint() -> None:
    client, session = _client(FakeResponse({"healthy": True, "checks": {}}))

    assert client.healthy() is True
    assert session.requests[0][0] == "http://127.0.0.1:9650/ext/health"


def test_health_probe_passes_while_bootstrapping() -> None:
    client, _ = _client(FakeResponse({"healthy": False, "checks": {"bootstrapped": {}}}))

    assert health_probe(client, sleep=lambda _seconds: None)() is True


def test_health_probe_fails_when_endpoint_never_answers() -> None:
    client, session = _client(requests.ConnectionError("refused"))
    delays: list[float] = []

    assert health_probe(client, attempts=3, delay=2.0, sleep=delays.append)() is False
    assert len(session.requests) == 3
    assert delays == [2.0, 2.0]
