"""Tests for the tar helpers."""
from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from avanodectl import archive
from avanodectl.archive import (
    ArchiveError,
    compute_checksum,
    create_archive,
    extract_archive,
    list_archive,
)


def test_archive_round_trip(tmp_path: Path) -> None:
    source = tmp_path / "data"
    (source / "mainnet").mkdir(parents=True)
    (source / "mainnet" / "db.bin").write_bytes(b"\x00" * 1024)
    target = tmp_path / "data.tar.gz"

    create_archive(source, target)

    assert target.stat().st_mode & 0o777 == 0o600
    assert "data/mainnet/db.bin" in list_archive(target)
    extract_archive(target, tmp_path / "restored")
    assert (tmp_path / "restored" / "data" / "mainnet" / "db.bin").read_bytes() == b"\x00" * 1024


def test_unreadable_archive(tmp_path: Path) -> None:
    broken = tmp_path / "broken.tar.gz"
    broken.write_bytes(b"not gzip")

    with pytest.raises(ArchiveError, match="Unreadable archive"):
        list_archive(broken)


def test_missing_tar(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(archive.shutil, "which", lambda name: None)

    with pytest.raises(ArchiveError, match="'tar' command is required"):
        create_archive(tmp_path, tmp_path / "out.tar.gz")


def test_compute_checksum(tmp_path: Path) -> None:
    path = tmp_path / "blob"
    path.write_bytes(b"avalanche")

    assert compute_checksum(path) == hashlib.sha256(b"avalanche").hexdigest()
