"""Snapshot creation, verification, restore and retention.

Snapshots live under the backups root as ``<id>/`` directories::

    20250101T120000Z/
        manifest.json
        identity/staker.crt, identity/staker.key, identity/signer.key
        config/node.json, config/deployment.yml
        data.tar.gz            (only with include_data)

A snapshot is assembled in ``.staging-*`` next to its final location, verified
there, and exposed with a single rename. Identifiers are UTC timestamps; a
``-N`` counter is appended when several snapshots are taken within the same
second so that ordering by ``(timestamp, counter)`` follows creation order.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .archive import ARCHIVE_NAME, ArchiveError, compute_checksum, create_archive, extract_archive
from .archive import list_archive
from .material import (
    CONFIG_DIR_MODE,
    DATA_DIR_MODE,
    IDENTITY_DIR_MODE,
    IDENTITY_FILES,
    KEY_MODE,
    MaterialError,
    MaterialStore,
)
from .providers.supervisor import ServiceState, ServiceSupervisor, SupervisorError

LOGGER = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_FORMAT = 1
STAGING_PREFIX = ".staging-"
SNAPSHOT_ID_RE = re.compile(r"^(?P<stamp>\d{8}T\d{6}Z)(?:-(?P<counter>\d+))?$")
SNAPSHOT_DIRS = ("identity", "config")

StepObserver = Callable[[str, str, "str | None"], None]


class BackupError(RuntimeError):
    """Raised when a snapshot cannot be created or read."""

    def __init__(self, message: str, *, violations: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.violations = list(violations)


class SnapshotNotFoundError(BackupError):
    """Raised when a snapshot identifier does not exist."""


class RestoreOutcome(str, Enum):
    """Final state of a restore."""

    OK = "ok"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"
    FATAL = "fatal"


def parse_snapshot_id(snapshot_id: str) -> tuple[str, int]:
    """Return the ``(timestamp, counter)`` ordering key for *snapshot_id*."""
    match = SNAPSHOT_ID_RE.match(snapshot_id)
    if match is None:
        raise SnapshotNotFoundError(f"Invalid snapshot identifier '{snapshot_id}'.")
    return match.group("stamp"), int(match.group("counter") or 0)


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    """A file recorded in a snapshot manifest."""

    path: str
    size: int
    sha256: str
    mode: int

    def to_dict(self) -> dict[str, object]:
        """Return the manifest representation."""
        return {
            "path": self.path,
            "size": self.size,
            "sha256": self.sha256,
            "mode": f"{self.mode:04o}",
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ManifestEntry:
        """Parse a manifest file entry."""
        return cls(
            path=str(data["path"]),
            size=int(str(data["size"])),
            sha256=str(data["sha256"]),
            mode=int(str(data["mode"]), 8),
        )


@dataclass(frozen=True, slots=True)
class ArchiveInfo:
    """The data directory archive stored in a snapshot."""

    name: str
    size: int
    sha256: str

    def to_dict(self) -> dict[str, object]:
        """Return the manifest representation."""
        return {"name": self.name, "size": self.size, "sha256": self.sha256}


@dataclass(frozen=True, slots=True)
class Snapshot:
    """An immutable, verified bundle of identity and configuration."""

    id: str
    path: Path
    created_at: str
    label: str | None
    include_data: bool
    files: tuple[ManifestEntry, ...]
    archive: ArchiveInfo | None = None

    @property
    def file_count(self) -> int:
        """Return the number of files in the manifest."""
        return len(self.files)

    @property
    def sort_key(self) -> tuple[str, int]:
        """Return the ordering key derived from the identifier."""
        return parse_snapshot_id(self.id)

    def to_manifest(self) -> dict[str, object]:
        """Return the JSON document stored as ``manifest.json``."""
        return {
            "format": MANIFEST_FORMAT,
            "id": self.id,
            "created_at": self.created_at,
            "label": self.label,
            "include_data": self.include_data,
            "file_count": self.file_count,
            "files": [entry.to_dict() for entry in self.files],
            "archive": self.archive.to_dict() if self.archive else None,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly summary including the path."""
        payload = self.to_manifest()
        payload["path"] = str(self.path)
        return payload

    @classmethod
    def from_directory(cls, path: Path) -> Snapshot:
        """Load the snapshot stored at *path*."""
        manifest_path = path / MANIFEST_NAME
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise BackupError(f"Snapshot {path.name} has no manifest.") from exc
        except (OSError, ValueError) as exc:
            raise BackupError(f"Snapshot {path.name} manifest is unreadable: {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupError(f"Snapshot {path.name} manifest must be a JSON object.")
        try:
            files_raw = data.get("files") or []
            files = tuple(
                ManifestEntry.from_dict(item) for item in files_raw if isinstance(item, Mapping)
            )
            archive_raw = data.get("archive")
            archive = None
            if isinstance(archive_raw, Mapping):
                archive = ArchiveInfo(
                    name=str(archive_raw["name"]),
                    size=int(str(archive_raw["size"])),
                    sha256=str(archive_raw["sha256"]),
                )
        except (KeyError, ValueError, TypeError) as exc:
            raise BackupError(f"Snapshot {path.name} manifest is malformed: {exc}") from exc
        snapshot_id = str(data.get("id", path.name))
        if snapshot_id != path.name:
            raise BackupError(
                f"Snapshot {path.name} manifest names a different id ({snapshot_id})."
            )
        label = data.get("label")
        return cls(
            id=snapshot_id,
            path=path,
            created_at=str(data.get("created_at", "")),
            label=str(label) if label else None,
            include_data=bool(data.get("include_data", False)),
            files=files,
            archive=archive,
        )


@dataclass(slots=True)
class VerifyReport:
    """Outcome of :meth:`BackupEngine.verify`."""

    snapshot_id: str
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no violations were found."""
        return not self.violations

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "snapshot": self.snapshot_id,
            "ok": self.ok,
            "violations": list(self.violations),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class RestoreResult:
    """Outcome of :meth:`BackupEngine.restore`."""

    outcome: RestoreOutcome
    snapshot_id: str
    pre_restore: Snapshot | None = None
    reason: str | None = None
    steps: list[str] = field(default_factory=list)
    log_tail: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when the snapshot is now live."""
        return self.outcome is RestoreOutcome.OK

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "outcome": self.outcome.value,
            "snapshot": self.snapshot_id,
            "pre_restore": str(self.pre_restore.path) if self.pre_restore else None,
            "reason": self.reason,
            "steps": list(self.steps),
            "log_tail": list(self.log_tail),
        }


@dataclass(slots=True)
class _Replacement:
    aside: Path
    moved: list[str] = field(default_factory=list)
    placing: bool = False


class _RestoreStepError(RuntimeError):
    def __init__(self, step: str, cause: BaseException | str) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step


_RECOVERABLE = (OSError, BackupError, ArchiveError, MaterialError, SupervisorError)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class BackupEngine:
    """Create and restore snapshots of the material held by a :class:`MaterialStore`."""

    def __init__(
        self,
        store: MaterialStore,
        supervisor: ServiceSupervisor,
        backups_root: Path,
        *,
        min_archive_bytes: int = 1024 * 1024,
        start_grace: float = 5.0,
        health_check: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] = _now,
        sleep: Callable[[float], None] = time.sleep,
        observer: StepObserver | None = None,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.root = Path(backups_root)
        self.min_archive_bytes = min_archive_bytes
        self.start_grace = start_grace
        self.health_check = health_check
        self.clock = clock
        self.sleep = sleep
        self.observer = observer
        self._in_use: set[str] = set()

    # ------------------------------------------------------------------
    # listing
    def ensure_root(self) -> None:
        """Create the backups root with owner-only access."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def list_snapshots(self) -> list[Snapshot]:
        """Return committed snapshots, oldest first."""
        if not self.root.is_dir():
            return []
        snapshots: list[Snapshot] = []
        for child in self.root.iterdir():
            if not child.is_dir() or SNAPSHOT_ID_RE.match(child.name) is None:
                continue
            try:
                snapshots.append(Snapshot.from_directory(child))
            except BackupError as exc:
                LOGGER.warning("Skipping unreadable snapshot %s: %s", child.name, exc)
        snapshots.sort(key=lambda item: item.sort_key)
        return snapshots

    def get(self, snapshot_id: str) -> Snapshot:
        """Return the snapshot called *snapshot_id*."""
        parse_snapshot_id(snapshot_id)
        path = self.root / snapshot_id
        if not path.is_dir():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found under {self.root}.")
        return Snapshot.from_directory(path)

    def latest(self, label: str | None = None) -> Snapshot | None:
        """Return the newest snapshot, optionally restricted to *label*."""
        candidates = [
            item for item in self.list_snapshots() if label is None or item.label == label
        ]
        return candidates[-1] if candidates else None

    # ------------------------------------------------------------------
    # backup
    def backup(self, *, include_data: bool = False, label: str | None = None) -> Snapshot:
        """Create a verified snapshot of the current identity and config."""
        return self._create(include_data=include_data, label=label, strict=True)

    def safety_backup(
        self,
        label: str,
        *,
        sources: Mapping[str, Path] | None = None,
    ) -> Snapshot:
        """Snapshot whatever material exists, without the permission precheck.

        *sources* maps snapshot directory names to the directories copied into
        them, so keys kept in a hand-made layout can be captured before they are
        adopted. Only checksums are verified.
        """
        return self._create(include_data=False, label=label, strict=False, sources=sources)

    def _create(
        self,
        *,
        include_data: bool,
        label: str | None,
        strict: bool,
        sources: Mapping[str, Path] | None = None,
    ) -> Snapshot:
        if strict:
            violations = self.store.verify_permissions()
            if violations:
                raise BackupError(
                    "Refusing to back up a layout with permission or integrity violations.",
                    violations=[str(item) for item in violations],
                )
        self.ensure_root()
        snapshot_id = self._next_id()
        created_at = self.clock().isoformat(timespec="seconds").replace("+00:00", "Z")
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=str(self.root)))
        self._step("backup.staging", "started", str(staging))
        try:
            files = self._stage_material(staging, sources)
            archive = self._stage_data(staging) if include_data else None
            snapshot = Snapshot(
                id=snapshot_id,
                path=staging,
                created_at=created_at,
                label=label,
                include_data=include_data,
                files=tuple(files),
                archive=archive,
            )
            self._write_manifest(staging, snapshot)

            report = self._verify_at(snapshot, staging, complete=strict)
            if not report.ok:
                raise BackupError(
                    f"Snapshot {snapshot_id} failed verification.",
                    violations=report.violations,
                )
            self._step("backup.verify", "success", f"{snapshot.file_count} files")

            final = self.root / snapshot_id
            if final.exists():
                raise BackupError(f"Snapshot directory {final} already exists.")
            os.rename(staging, final)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        self._step("backup.commit", "success", str(final))
        return Snapshot(
            id=snapshot.id,
            path=final,
            created_at=snapshot.created_at,
            label=snapshot.label,
            include_data=snapshot.include_data,
            files=snapshot.files,
            archive=snapshot.archive,
        )

    def _next_id(self) -> str:
        stamp = self.clock().astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
        counters: list[int] = []
        if self.root.is_dir():
            for child in self.root.iterdir():
                match = SNAPSHOT_ID_RE.match(child.name)
                if match and match.group("stamp") == stamp:
                    counters.append(int(match.group("counter") or 0))
        if not counters:
            return stamp
        return f"{stamp}-{max(counters) + 1}"

    def _stage_material(
        self,
        staging: Path,
        sources: Mapping[str, Path] | None,
    ) -> list[ManifestEntry]:
        entries: list[ManifestEntry] = []
        if sources is None:
            sources = {"identity": self.store.identity_dir, "config": self.store.config_dir}
        for name, source in sources.items():
            if not source.is_dir():
                continue
            target_dir = staging / name
            target_dir.mkdir(mode=0o700)
            for item in sorted(source.iterdir()):
                if not item.is_file() or item.name.startswith("."):
                    continue
                destination = target_dir / item.name
                shutil.copy2(item, destination)
                mode = destination.stat().st_mode & 0o777
                entries.append(
                    ManifestEntry(
                        path=f"{name}/{item.name}",
                        size=destination.stat().st_size,
                        sha256=compute_checksum(destination),
                        mode=mode,
                    )
                )
        self._step("backup.copy", "success", f"{len(entries)} files")
        return entries

    def _stage_data(self, staging: Path) -> ArchiveInfo:
        data_dir = self.store.data_dir
        if not data_dir.is_dir():
            raise BackupError(f"Data directory {data_dir} does not exist.")
        archive_path = staging / ARCHIVE_NAME
        state = self.supervisor.is_running()
        if state is ServiceState.RUNNING:
            self.supervisor.stop()
            self._step("service.stop", "success", "for data archive")
        try:
            create_archive(data_dir, archive_path)
        except ArchiveError as exc:
            raise BackupError(str(exc)) from exc
        finally:
            if state is ServiceState.RUNNING:
                self.supervisor.start()
                self._step("service.start", "success", "after data archive")
        self._step("backup.archive", "success", str(archive_path.stat().st_size))
        return ArchiveInfo(
            name=ARCHIVE_NAME,
            size=archive_path.stat().st_size,
            sha256=compute_checksum(archive_path),
        )

    @staticmethod
    def _write_manifest(directory: Path, snapshot: Snapshot) -> None:
        manifest_path = directory / MANIFEST_NAME
        manifest_path.write_text(
            json.dumps(snapshot.to_manifest(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        os.chmod(manifest_path, 0o600)

    # ------------------------------------------------------------------
    # verification
    def verify(self, snapshot: Snapshot) -> VerifyReport:
        """Check manifest completeness, checksums, modes and the data archive."""
        return self._verify_at(snapshot, snapshot.path, complete=True)

    def _verify_at(self, snapshot: Snapshot, directory: Path, *, complete: bool) -> VerifyReport:
        report = VerifyReport(snapshot_id=snapshot.id)
        if not (directory / MANIFEST_NAME).is_file():
            report.violations.append("manifest.json is missing")

        recorded = {entry.path for entry in snapshot.files}
        if complete:
            for name in IDENTITY_FILES:
                if f"identity/{name}" not in recorded:
                    report.violations.append(f"identity/{name} is not in the manifest")
            if "config/node.json" not in recorded:
                report.warnings.append("config/node.json is not in the manifest")

        for entry in snapshot.files:
            path = directory / entry.path
            if not path.is_file():
                report.violations.append(f"{entry.path} is missing")
                continue
            stat = path.stat()
            if stat.st_size != entry.size:
                report.violations.append(
                    f"{entry.path} size {stat.st_size} differs from manifest ({entry.size})"
                )
            elif compute_checksum(path) != entry.sha256:
                report.violations.append(f"{entry.path} checksum mismatch")
            mode = stat.st_mode & 0o777
            if mode != entry.mode:
                report.violations.append(
                    f"{entry.path} mode {mode:04o} differs from manifest ({entry.mode:04o})"
                )
            allowed = IDENTITY_FILES.get(Path(entry.path).name) if entry.path.startswith(
                "identity/"
            ) else None
            if complete and allowed is not None and mode & ~allowed:
                report.violations.append(f"{entry.path} mode {mode:04o} is too permissive")

        if snapshot.include_data:
            self._verify_archive(snapshot, directory, report)
        return report

    def _verify_archive(self, snapshot: Snapshot, directory: Path, report: VerifyReport) -> None:
        if snapshot.archive is None:
            report.violations.append("include_data is set but no archive is recorded")
            return
        archive_path = directory / snapshot.archive.name
        if not archive_path.is_file():
            report.violations.append(f"{snapshot.archive.name} is missing")
            return
        size = archive_path.stat().st_size
        digest = compute_checksum(archive_path)
        if size != snapshot.archive.size or digest != snapshot.archive.sha256:
            report.violations.append(f"{snapshot.archive.name} does not match the manifest")
            return
        try:
            members = list_archive(archive_path)
        except ArchiveError as exc:
            report.violations.append(f"{snapshot.archive.name} is not readable: {exc}")
            return
        if not members:
            report.violations.append(f"{snapshot.archive.name} is empty")
        if size < self.min_archive_bytes:
            report.warnings.append(
                f"{snapshot.archive.name} is only {size} bytes "
                f"(expected at least {self.min_archive_bytes}); fine for a fresh node."
            )

    # ------------------------------------------------------------------
    # restore
    def restore(self, snapshot: Snapshot) -> RestoreResult:
        """Make *snapshot* live, rolling back to the prior state on failure.

        An installed service is always started and verified after the files are
        placed, even when it was stopped beforehand. A rollback returns the
        service to the state it was found in, so a stopped node stays stopped.
        """
        result = RestoreResult(outcome=RestoreOutcome.FAILED, snapshot_id=snapshot.id)
        self._in_use.add(snapshot.id)
        try:
            return self._restore(snapshot, result)
        finally:
            self._in_use.clear()

    def _restore(self, snapshot: Snapshot, result: RestoreResult) -> RestoreResult:
        report = self.verify(snapshot)
        if not report.ok:
            result.reason = "Snapshot failed verification: " + "; ".join(report.violations)
            return result

        # Nothing has been touched until REPLACE, so failures here are plain failures.
        try:
            pre = self.safety_backup("pre-restore")
        except _RECOVERABLE as exc:
            result.reason = f"pre-backup: {exc}"
            return result
        result.pre_restore = pre
        self._in_use.add(pre.id)
        self._record(result, "pre-backup", pre.id)

        try:
            initial_state = self.supervisor.is_running()
            if initial_state is ServiceState.RUNNING:
                self.supervisor.stop()
        except SupervisorError as exc:
            result.reason = f"service-stop: {exc}"
            return result
        self._record(result, "service-stop", initial_state.value)

        replacement = _Replacement(aside=self.store.root / f".restore-{snapshot.id}")
        try:
            try:
                self._move_aside(snapshot, replacement)
                replacement.placing = True
                self._place_snapshot(snapshot)
            except _RECOVERABLE as exc:
                raise _RestoreStepError("replace", exc) from exc
            self._record(result, "replace", ", ".join(replacement.moved) or "nothing moved")

            try:
                self.store.fix_permissions()
                violations = self.store.verify_permissions()
            except _RECOVERABLE as exc:
                raise _RestoreStepError("permission-fix", exc) from exc
            if violations:
                raise _RestoreStepError("permission-fix", "; ".join(str(v) for v in violations))
            self._record(result, "permission-fix", "ok")

            if initial_state is not ServiceState.NOT_INSTALLED:
                try:
                    self.supervisor.start()
                except SupervisorError as exc:
                    raise _RestoreStepError("service-start", exc) from exc
                self._record(result, "service-start", "ok")
                if not self._verify_running():
                    raise _RestoreStepError("verify-running", "service did not stay running")
                self._record(result, "verify-running", "ok")
        except _RestoreStepError as exc:
            result.reason = str(exc)
            return self._rollback(result, snapshot, replacement, pre, initial_state)

        shutil.rmtree(replacement.aside, ignore_errors=True)
        result.outcome = RestoreOutcome.OK
        self._record(result, "done", snapshot.id)
        return result

    def _move_aside(self, snapshot: Snapshot, replacement: _Replacement) -> None:
        aside = replacement.aside
        if aside.exists():
            shutil.rmtree(aside)
        aside.mkdir(mode=0o700)
        for name in self._replaced_names(snapshot):
            current = self.store.root / name
            if current.exists():
                os.rename(current, aside / name)
                replacement.moved.append(name)

    def _place_snapshot(self, snapshot: Snapshot) -> None:
        self._place_from(snapshot)
        if snapshot.include_data and snapshot.archive is not None:
            extract_archive(snapshot.path / snapshot.archive.name, self.store.root)
            os.chmod(self.store.data_dir, DATA_DIR_MODE)

    def _place_from(self, snapshot: Snapshot) -> None:
        modes = {"identity": IDENTITY_DIR_MODE, "config": CONFIG_DIR_MODE}
        for name in SNAPSHOT_DIRS:
            target = self.store.root / name
            target.mkdir(mode=modes[name], exist_ok=True)
            os.chmod(target, modes[name])
        for entry in snapshot.files:
            source = snapshot.path / entry.path
            destination = self.store.root / entry.path
            fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
            os.close(fd)
            tmp_path = Path(tmp_name)
            try:
                os.chmod(tmp_path, KEY_MODE)
                shutil.copyfile(source, tmp_path)
                os.chmod(tmp_path, entry.mode)
                os.replace(tmp_path, destination)
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise

    def _verify_running(self) -> bool:
        if self.start_grace > 0:
            self.sleep(self.start_grace)
        if self.supervisor.is_running() is not ServiceState.RUNNING:
            return False
        if self.health_check is not None:
            return bool(self.health_check())
        return True

    def _rollback(
        self,
        result: RestoreResult,
        snapshot: Snapshot,
        replacement: _Replacement,
        pre: Snapshot,
        initial_state: ServiceState,
    ) -> RestoreResult:
        self._record(result, "rollback", result.reason)
        try:
            if self.supervisor.is_running() is ServiceState.RUNNING:
                self.supervisor.stop()
            try:
                self._move_back(snapshot, replacement)
            except OSError as exc:
                LOGGER.warning("Moving material back failed (%s); using %s", exc, pre.id)
                self._place_from(pre)
            self.store.fix_permissions()
            if initial_state is ServiceState.RUNNING:
                self.supervisor.start()
                if not self._verify_running():
                    raise BackupError("service did not come back after rollback")
        except _RECOVERABLE as exc:
            result.outcome = RestoreOutcome.FATAL
            result.reason = f"{result.reason}; rollback failed: {exc}"
            result.log_tail = self._log_tail()
            self._record(result, "rollback", "failed")
            return result
        shutil.rmtree(replacement.aside, ignore_errors=True)
        result.outcome = RestoreOutcome.ROLLED_BACK
        self._record(result, "rollback", "ok")
        return result

    def _move_back(self, snapshot: Snapshot, replacement: _Replacement) -> None:
        # Anything placed that was not moved aside did not exist before.
        for name in self._replaced_names(snapshot):
            current = self.store.root / name
            if name in replacement.moved:
                if current.exists():
                    shutil.rmtree(current)
                os.rename(replacement.aside / name, current)
            elif replacement.placing and current.exists():
                shutil.rmtree(current)

    @staticmethod
    def _replaced_names(snapshot: Snapshot) -> list[str]:
        names = list(SNAPSHOT_DIRS)
        if snapshot.include_data:
            names.append("data")
        return names

    def _log_tail(self) -> list[str]:
        try:
            return self.supervisor.tail_logs(50)
        except SupervisorError as exc:
            return [f"(log tail unavailable: {exc})"]

    # ------------------------------------------------------------------
    # retention
    def prune(self, keep: int, *, protect: Iterable[str] = ()) -> list[str]:
        """Delete snapshots beyond the newest *keep*; return the removed ids.

        Snapshots named in *protect* and those held by a running restore are
        never removed.
        """
        if keep < 1:
            raise BackupError("keep must be at least 1.")
        protected = set(protect) | self._in_use
        snapshots = self.list_snapshots()
        removable = snapshots[:-keep] if len(snapshots) > keep else []
        removed: list[str] = []
        for snapshot in removable:
            if snapshot.id in protected:
                continue
            shutil.rmtree(snapshot.path)
            removed.append(snapshot.id)
            self._step("prune.remove", "success", snapshot.id)
        self._discard_stale_staging()
        return removed

    def _discard_stale_staging(self) -> None:
        if not self.root.is_dir():
            return
        for child in self.root.iterdir():
            if child.is_dir() and child.name.startswith(STAGING_PREFIX):
                shutil.rmtree(child, ignore_errors=True)

    # ------------------------------------------------------------------
    def _record(self, result: RestoreResult, step: str, detail: str | None) -> None:
        result.steps.append(step if detail is None else f"{step}: {detail}")
        self._step(f"restore.{step}", "success" if step != "rollback" else "warning", detail)

    def _step(self, name: str, status: str, detail: str | None) -> None:
        if self.observer is not None:
            self.observer(name, status, detail)


__all__ = [
    "ArchiveInfo",
    "BackupEngine",
    "BackupError",
    "ManifestEntry",
    "RestoreOutcome",
    "RestoreResult",
    "Snapshot",
    "SnapshotNotFoundError",
    "VerifyReport",
    "parse_snapshot_id",
]
