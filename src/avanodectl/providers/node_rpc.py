"""JSON-RPC client for the node's loopback API."""
from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests

from ..retry import retry_call


class NodeRpcError(RuntimeError):
    """Raised when the node API is unreachable or returns an error."""


@dataclass(slots=True)
class NodeRpcClient:
    """Query the ``info`` and ``health`` APIs of a running node."""

    base_url: str = "http://127.0.0.1:9650"
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def call(
        self,
        endpoint: str,
        method: str,
        params: Mapping[str, object] | None = None,
    ) -> dict[str, Any]:
        """POST a JSON-RPC request to ``/ext/<endpoint>`` and return its result."""
        url = f"{self.base_url.rstrip('/')}/ext/{endpoint}"
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": dict(params or {})}
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise NodeRpcError(f"{method} request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise NodeRpcError(f"{method} returned invalid JSON: {exc}") from exc
        if not isinstance(body, Mapping):
            raise NodeRpcError(f"{method} returned an unexpected payload.")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else error
            raise NodeRpcError(f"{method} returned an error: {message}")
        result = body.get("result")
        if not isinstance(result, Mapping):
            raise NodeRpcError(f"{method} returned no result.")
        return dict(result)

    def node_id(self) -> str:
        """Return the NodeID reported by ``info.getNodeID``."""
        result = self.call("info", "info.getNodeID")
        node_id = result.get("nodeID")
        if not isinstance(node_id, str) or not node_id:
            raise NodeRpcError("info.getNodeID response did not include nodeID.")
        return node_id

    def node_version(self) -> str:
        """Return the version string reported by ``info.getNodeVersion``."""
        result = self.call("info", "info.getNodeVersion")
        return str(result.get("version", ""))

    def is_bootstrapped(self, chain: str = "X") -> bool:
        """Return whether *chain* has finished bootstrapping."""
        result = self.call("info", "info.isBootstrapped", {"chain": chain})
        return bool(result.get("isBootstrapped"))

    def healthy(self) -> bool:
        """Return the aggregated readiness reported by ``/ext/health``."""
        url = f"{self.base_url.rstrip('/')}/ext/health"
        try:
            response = self.session.get(url, timeout=self.timeout)
            body = response.json()
        except requests.RequestException as exc:
            raise NodeRpcError(f"health request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise NodeRpcError(f"health endpoint returned invalid JSON: {exc}") from exc
        return bool(isinstance(body, Mapping) and body.get("healthy"))


def health_probe(
    client: NodeRpcClient,
    *,
    attempts: int = 3,
    delay: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[], bool]:
    """Return a check that passes once the node answers ``/ext/health``.

    A node that is still bootstrapping reports ``healthy: false`` and still
    passes; only an endpoint that never answers fails the check.
    """

    def _check() -> bool:
        try:
            retry_call(
                client.healthy,
                attempts=attempts,
                delay=delay,
                retry_on=(NodeRpcError,),
                sleep=sleep,
                description="GET /ext/health",
            )
        except NodeRpcError:
            return False
        return True

    return _check


__all__ = ["NodeRpcClient", "NodeRpcError", "health_probe"]
