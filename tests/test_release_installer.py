"""Tests for release download, activation and rollback."""
from __future__ import annotations

import io
import subprocess
import tarfile
from collections.abc import Iterator
from pathlib import Path

import pytest
import requests

from avanodectl.config import ReleaseConfig
from avanodectl.providers.release_installer import ReleaseInstaller, ReleaseInstallError


def _tarball(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeResponse:
    def __init__(self, *, payload: object = None, body: bytes = b"", status: int = 200) -> None:
        self.payload = payload
        self.body = body
        self.status = status

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self) -> object:
        return self.payload

    def iter_content(self, chunk_size: int = 65536) -> Iterator[bytes]:
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]


class FakeSession:
    """Serve queued responses (or exceptions) in order."""

    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self.responses = list(responses)
        self.urls: list[str] = []

    def get(self, url: str, **_: object) -> FakeResponse:
        self.urls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _installer(tmp_path: Path, session: FakeSession, **release: object) -> ReleaseInstaller:
    settings: dict[str, object] = {"attempts": 3, "backoff": 2.0}
    settings.update(release)
    return ReleaseInstaller(
        install_root=tmp_path / "opt",
        release=ReleaseConfig(**settings),  # type: ignore[arg-type]
        session=session,  # type: ignore[arg-type]
        sleep=lambda _seconds: None,
    )


def test_tarball_url(tmp_path: Path) -> None:
    installer = _installer(tmp_path, FakeSession(), arch="arm64")

    assert installer.tarball_url("1.11.3") == (
        "https://github.com/ava-labs/avalanchego/releases/download/v1.11.3/"
        "avalanchego-linux-arm64-v1.11.3.tar.gz"
    )


def test_latest_version_retries_connection_errors(tmp_path: Path) -> None:
    session = FakeSession(
        requests.ConnectionError("reset"),
        FakeResponse(payload={"tag_name": "v1.12.0"}),
    )
    installer = _installer(tmp_path, session)

    assert installer.latest_version() == "v1.12.0"
    assert len(session.urls) == 2
    assert session.urls[0].endswith("/repos/ava-labs/avalanchego/releases/latest")


def test_latest_version_gives_up_after_attempts(tmp_path: Path) -> None:
    session = FakeSession(*(requests.ConnectionError("down") for _ in range(3)))
    installer = _installer(tmp_path, session)

    with pytest.raises(ReleaseInstallError, match="latest release"):
        installer.latest_version()
    assert len(session.urls) == 3


def test_latest_version_requires_tag(tmp_path: Path) -> None:
    installer = _installer(tmp_path, FakeSession(FakeResponse(payload={"name": "x"})))

    with pytest.raises(ReleaseInstallError, match="tag_name"):
        installer.latest_version()


def test_resolve_version_normalises_requested_tag(tmp_path: Path) -> None:
    installer = _installer(tmp_path, FakeSession())

    assert installer.resolve_version("1.11.3") == "v1.11.3"


def test_install_activate_and_rollback(tmp_path: Path) -> None:
    first = _tarball({"avalanchego-v1.11.3/avalanchego": b"#!/bin/sh\necho one\n"})
    second = _tarball({"avalanchego-v1.12.0/avalanchego": b"#!/bin/sh\necho two\n"})
    session = FakeSession(FakeResponse(body=first), FakeResponse(body=second))
    installer = _installer(tmp_path, session)

    result = installer.install("v1.11.3")

    assert result.path == tmp_path / "opt" / "avalanchego"
    assert result.previous is None
    assert result.source == "release"
    assert installer.binary_path.read_bytes() == b"#!/bin/sh\necho one\n"
    assert installer.binary_path.stat().st_mode & 0o777 == 0o755

    upgraded = installer.install("v1.12.0")

    assert upgraded.previous == installer.previous_path
    assert installer.binary_path.read_bytes() == b"#!/bin/sh\necho two\n"
    assert installer.rollback() is True
    assert installer.binary_path.read_bytes() == b"#!/bin/sh\necho one\n"
    assert installer.rollback() is False
    assert not [item for item in installer.install_root.iterdir() if item.name.startswith(".")]

    installer.uninstall()
    assert not installer.binary_path.exists()


def test_activate_without_current_binary_drops_stale_previous(tmp_path: Path) -> None:
    body = _tarball({"avalanchego-v1.11.3/avalanchego": b"#!/bin/sh\necho one\n"})
    installer = _installer(tmp_path, FakeSession(FakeResponse(body=body)))
    installer.install_root.mkdir(parents=True)
    installer.previous_path.write_bytes(b"#!/bin/sh\necho stale\n")

    result = installer.install("v1.11.3")

    assert result.previous is None
    assert not installer.previous_path.exists()
    assert installer.rollback() is False


def test_download_failure_leaves_no_staging(tmp_path: Path) -> None:
    session = FakeSession(*(FakeResponse(status=404) for _ in range(3)))
    installer = _installer(tmp_path, session, attempts=1)

    with pytest.raises(ReleaseInstallError, match="Failed to download"):
        installer.fetch("v1.11.3")

    assert list(installer.install_root.iterdir()) == []


def test_archive_without_binary_is_rejected(tmp_path: Path) -> None:
    session = FakeSession(FakeResponse(body=_tarball({"README.md": b"hello"})))
    installer = _installer(tmp_path, session)

    with pytest.raises(ReleaseInstallError, match="did not contain"):
        installer.fetch("v1.11.3")


def test_archive_with_unsafe_path_is_rejected(tmp_path: Path) -> None:
    session = FakeSession(FakeResponse(body=_tarball({"../avalanchego": b"evil"})))
    installer = _installer(tmp_path, session)

    with pytest.raises(ReleaseInstallError, match="Unsafe path"):
        installer.fetch("v1.11.3")
    assert not (tmp_path / "avalanchego").exists()


def test_build_from_source_reports_git_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    commands: list[list[str]] = []

    def fake_run(command: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        commands.append(command)
        return subprocess.CompletedProcess(command, 128, stdout="", stderr="remote not found")

    monkeypatch.setattr(
        "avanodectl.providers.release_installer.subprocess.run", fake_run
    )
    installer = _installer(tmp_path, FakeSession())

    with pytest.raises(ReleaseInstallError, match="git clone failed"):
        installer.fetch("v1.11.3", from_source=True)

    assert commands[0][:2] == ["git", "clone"]
    assert "v1.11.3" in commands[0]
    assert list(installer.install_root.iterdir()) == []
