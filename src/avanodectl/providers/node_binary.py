"""Narrow wrapper around the AvalancheGo executable."""
from __future__ import annotations

import re
import shutil
import socket
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..material import NodeIdentity
from ..node_config import SIGNER_KEY_NAME, STAKER_CERT_NAME, STAKER_KEY_NAME

_VERSION_RE = re.compile(r"avalanchego/(\d+\.\d+\.\d+(?:[-.][0-9A-Za-z.]+)?)")


class NodeBinaryError(RuntimeError):
    """Raised when the node binary is missing or misbehaves."""


def normalise_tag(version: str) -> str:
    """Return *version* in release tag form (``v1.11.3``)."""
    text = version.strip()
    if not text:
        raise NodeBinaryError("Version must be a non-empty string.")
    return text if text.startswith("v") else f"v{text}"


def parse_version_output(output: str) -> str:
    """Extract the release tag from ``avalanchego --version`` output."""
    match = _VERSION_RE.search(output)
    if match is None:
        raise NodeBinaryError(f"Unrecognised version output: {output.strip()[:200]!r}")
    return normalise_tag(match.group(1))


@dataclass(slots=True)
class NodeBinary:
    """Invoke the node executable for version queries and key generation."""

    path: Path
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def exists(self) -> bool:
        """Return whether the executable is present."""
        return self.path.is_file()

    def version(self) -> str:
        """Return the installed release tag."""
        if not self.exists():
            raise NodeBinaryError(f"Node binary not found at {self.path}.")
        try:
            result = subprocess.run(  # noqa: S603
                [str(self.path), "--version"],
                capture_output=True,
                text=True,
                check=False,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise NodeBinaryError(f"Unable to run {self.path} --version: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NodeBinaryError(
                f"{self.path} --version failed (exit {result.returncode}): {message}"
            )
        return parse_version_output(result.stdout or result.stderr or "")

    def generate_identity(
        self,
        *,
        timeout: float = 120.0,
        poll_interval: float = 1.0,
    ) -> NodeIdentity:
        """Run the node once in a scratch directory until it writes fresh keys.

        The node creates its staking certificate, staking key and BLS signer
        key on first start when the configured files are absent. The process is
        terminated as soon as all three exist.
        """
        if not self.exists():
            raise NodeBinaryError(f"Node binary not found at {self.path}.")
        scratch = Path(tempfile.mkdtemp(prefix="avanodectl-keygen-"))
        names = (STAKER_CERT_NAME, STAKER_KEY_NAME, SIGNER_KEY_NAME)
        paths = {name: scratch / name for name in names}
        command = [
            str(self.path),
            "--network-id=local",
            f"--data-dir={scratch / 'data'}",
            f"--log-dir={scratch / 'logs'}",
            f"--http-port={_free_port()}",
            f"--staking-port={_free_port()}",
            f"--staking-tls-cert-file={paths[STAKER_CERT_NAME]}",
            f"--staking-tls-key-file={paths[STAKER_KEY_NAME]}",
            f"--staking-signer-key-file={paths[SIGNER_KEY_NAME]}",
        ]
        try:
            try:
                process = subprocess.Popen(  # noqa: S603
                    command,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as exc:
                raise NodeBinaryError(f"Unable to launch {self.path}: {exc}") from exc
            try:
                deadline = time.monotonic() + timeout
                while not all(_non_empty(path) for path in paths.values()):
                    if process.poll() is not None:
                        raise NodeBinaryError(
                            f"{self.path} exited with {process.returncode} before writing keys."
                        )
                    if time.monotonic() >= deadline:
                        raise NodeBinaryError(
                            f"Timed out after {timeout:.0f}s waiting for key generation."
                        )
                    self.sleep(poll_interval)
            finally:
                _terminate(process)
            return NodeIdentity(
                certificate=paths[STAKER_CERT_NAME].read_bytes(),
                private_key=paths[STAKER_KEY_NAME].read_bytes(),
                signer_key=paths[SIGNER_KEY_NAME].read_bytes(),
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)


def _non_empty(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except FileNotFoundError:
        return False


def _terminate(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=15)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=5)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


__all__ = ["NodeBinary", "NodeBinaryError", "normalise_tag", "parse_version_output"]
