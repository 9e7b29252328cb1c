"""Fetch AvalancheGo releases and swap the installed binary."""
from __future__ import annotations

import os
import shutil
import subprocess
import tarfile
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import requests

from ..config import ReleaseConfig
from ..retry import retry_call
from .node_binary import normalise_tag

PREVIOUS_SUFFIX = ".previous"


class ReleaseInstallError(RuntimeError):
    """Raised when a release cannot be fetched, built or activated."""


@dataclass(frozen=True, slots=True)
class StagedRelease:
    """A fetched binary waiting to be activated."""

    version: str
    source: str
    binary: Path
    staging_dir: Path


@dataclass(frozen=True, slots=True)
class ReleaseInstallResult:
    """Metadata describing an activated binary."""

    version: str
    source: str
    path: Path
    previous: Path | None
    installed_at: str

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "version": self.version,
            "source": self.source,
            "path": str(self.path),
            "previous": str(self.previous) if self.previous else None,
            "installed_at": self.installed_at,
        }


@dataclass(slots=True)
class ReleaseInstaller:
    """Download (or build) AvalancheGo and install it under ``install_root``."""

    install_root: Path
    release: ReleaseConfig
    binary_name: str = "avalanchego"
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @property
    def binary_path(self) -> Path:
        """Return the active binary path."""
        return self.install_root / self.binary_name

    @property
    def previous_path(self) -> Path:
        """Return where the replaced binary is kept."""
        return self.install_root / f"{self.binary_name}{PREVIOUS_SUFFIX}"

    # ------------------------------------------------------------------
    def latest_version(self) -> str:
        """Return the tag of the latest published release."""
        url = f"{self.release.api_url}/repos/{self.release.repository}/releases/latest"

        def _fetch() -> dict[str, object]:
            response = self.session.get(
                url,
                timeout=self.release.timeout,
                headers={"Accept": "application/vnd.github+json"},
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ReleaseInstallError(f"Unexpected release payload from {url}.")
            return payload

        try:
            payload = self._retry(_fetch, f"GET {url}")
        except (requests.RequestException, ValueError) as exc:
            raise ReleaseInstallError(f"Unable to query latest release: {exc}") from exc
        tag = payload.get("tag_name")
        if not isinstance(tag, str) or not tag.strip():
            raise ReleaseInstallError("Latest release response did not include tag_name.")
        return normalise_tag(tag)

    def resolve_version(self, requested: str | None) -> str:
        """Return *requested* as a tag, or the latest release when omitted."""
        if requested:
            return normalise_tag(requested)
        return self.latest_version()

    def tarball_url(self, version: str) -> str:
        """Return the release tarball URL for *version*."""
        tag = normalise_tag(version)
        name = f"avalanchego-linux-{self.release.arch}-{tag}.tar.gz"
        return (
            f"{self.release.download_url}/{self.release.repository}/releases/download/{tag}/{name}"
        )

    # ------------------------------------------------------------------
    def fetch(self, version: str, *, from_source: bool = False) -> StagedRelease:
        """Download or build *version* into a staging directory."""
        tag = normalise_tag(version)
        self.install_root.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(
            tempfile.mkdtemp(prefix=f".avanodectl-{tag}-", dir=str(self.install_root))
        )
        try:
            if from_source:
                binary = self._build_from_source(tag, staging_dir)
                source = "source"
            else:
                binary = self._download_release(tag, staging_dir)
                source = "release"
        except BaseException:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise
        return StagedRelease(version=tag, source=source, binary=binary, staging_dir=staging_dir)

    def activate(self, staged: StagedRelease) -> ReleaseInstallResult:
        """Install *staged* as the active binary, keeping the replaced one."""
        previous: Path | None = None
        try:
            if self.binary_path.exists():
                shutil.copy2(self.binary_path, self.previous_path)
                previous = self.previous_path
            else:
                self.previous_path.unlink(missing_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.binary_name}.", dir=self.install_root)
            os.close(fd)
            tmp_path = Path(tmp_name)
            try:
                shutil.copyfile(staged.binary, tmp_path)
                os.chmod(tmp_path, 0o755)
                os.replace(tmp_path, self.binary_path)
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise ReleaseInstallError(f"Failed to activate {staged.version}: {exc}") from exc
        finally:
            self.discard(staged)
        installed_at = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        return ReleaseInstallResult(
            version=staged.version,
            source=staged.source,
            path=self.binary_path,
            previous=previous,
            installed_at=installed_at,
        )

    def install(self, version: str, *, from_source: bool = False) -> ReleaseInstallResult:
        """Fetch and activate *version* in one step."""
        return self.activate(self.fetch(version, from_source=from_source))

    def rollback(self) -> bool:
        """Restore the binary replaced by the last activation."""
        if not self.previous_path.exists():
            return False
        try:
            os.replace(self.previous_path, self.binary_path)
        except OSError as exc:
            raise ReleaseInstallError(f"Failed to restore previous binary: {exc}") from exc
        return True

    def uninstall(self) -> None:
        """Remove the active and previous binaries."""
        self.binary_path.unlink(missing_ok=True)
        self.previous_path.unlink(missing_ok=True)

    @staticmethod
    def discard(staged: StagedRelease) -> None:
        """Delete the staging directory of *staged*."""
        shutil.rmtree(staged.staging_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    def _retry(self, func: Callable[[], dict[str, object]], description: str) -> dict[str, object]:
        return retry_call(
            func,
            attempts=self.release.attempts,
            delay=self.release.backoff,
            sleep=self.sleep,
            description=description,
        )

    def _download_release(self, tag: str, staging_dir: Path) -> Path:
        url = self.tarball_url(tag)
        archive_path = staging_dir / "release.tar.gz"

        def _download() -> dict[str, object]:
            with self.session.get(url, stream=True, timeout=self.release.timeout) as response:
                response.raise_for_status()
                size = 0
                with archive_path.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=65536):
                        if chunk:
                            handle.write(chunk)
                            size += len(chunk)
            return {"size": size}

        try:
            self._retry(_download, f"GET {url}")
        except requests.RequestException as exc:
            raise ReleaseInstallError(f"Failed to download {url}: {exc}") from exc

        extract_dir = staging_dir / "release"
        extract_dir.mkdir()
        try:
            with tarfile.open(archive_path, "r:gz") as archive:
                for member in archive.getmembers():
                    if member.name.startswith("/") or ".." in Path(member.name).parts:
                        raise ReleaseInstallError(f"Unsafe path in release archive: {member.name}")
                archive.extractall(extract_dir, filter="data")
        except (tarfile.TarError, OSError) as exc:
            raise ReleaseInstallError(f"Unable to extract {archive_path.name}: {exc}") from exc
        return self._locate_binary(extract_dir)

    def _build_from_source(self, tag: str, staging_dir: Path) -> Path:
        checkout = staging_dir / "src"
        self._run(
            [
                "git",
                "clone",
                "--depth",
                "1",
                "--branch",
                tag,
                self.release.git_url,
                str(checkout),
            ],
            cwd=staging_dir,
            label="git clone",
        )
        self._run(["./scripts/build.sh"], cwd=checkout, label="scripts/build.sh")
        built = checkout / "build" / self.binary_name
        if not built.is_file():
            raise ReleaseInstallError(f"Build finished but {built} is missing.")
        return built

    def _locate_binary(self, root: Path) -> Path:
        for candidate in sorted(root.rglob(self.binary_name)):
            if candidate.is_file():
                return candidate
        raise ReleaseInstallError(f"Release archive did not contain '{self.binary_name}'.")

    @staticmethod
    def _run(command: list[str], *, cwd: Path, label: str) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603,S607
                command,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ReleaseInstallError(f"{command[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ReleaseInstallError(f"{label} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "ReleaseInstallError",
    "ReleaseInstallResult",
    "ReleaseInstaller",
    "StagedRelease",
]
