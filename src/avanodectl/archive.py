"""tar helpers used to archive and restore the node database."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

ARCHIVE_NAME = "data.tar.gz"


class ArchiveError(RuntimeError):
    """Raised when a tar invocation fails."""


def _tar_binary() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to archive the node database.")
    return tar_bin


def _run_tar(cmd: list[str], failure: str) -> subprocess.CompletedProcess[str]:
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar command failed").strip()
        raise ArchiveError(f"{failure} (exit {result.returncode}): {message}")
    return result


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Create a gzip tarball of *source_dir* at *archive_path*."""
    cmd = [
        _tar_binary(),
        "-czf",
        str(archive_path),
        "-C",
        str(source_dir.parent),
        source_dir.name,
    ]
    _run_tar(cmd, f"Failed to archive {source_dir}")
    os.chmod(archive_path, 0o600)


def list_archive(archive_path: Path) -> list[str]:
    """Return member names of *archive_path*; raises when it is unreadable."""
    cmd = [_tar_binary(), "-tzf", str(archive_path)]
    result = _run_tar(cmd, f"Unreadable archive {archive_path}")
    return [line for line in result.stdout.splitlines() if line.strip()]


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Extract *archive_path* into *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    cmd = [
        _tar_binary(),
        "-xzf",
        str(archive_path),
        "-C",
        str(destination),
        "--no-same-owner",
    ]
    _run_tar(cmd, f"Failed to extract {archive_path}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "ARCHIVE_NAME",
    "ArchiveError",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "list_archive",
]
