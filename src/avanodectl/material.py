"""Key and configuration material kept under the node root.

Layout managed by :class:`MaterialStore`::

    <root>/identity/     0700  staker.crt (0640), staker.key (0600), signer.key (0600)
    <root>/config/       0750  node.json (0640), deployment.yml
    <root>/data/         0700  database
    <root>/logs/         0750  node logs

Identity files are written through temporary files that receive their final
mode and ownership before being renamed into place, so a failed write never
leaves a readable or half-written key behind.
"""
from __future__ import annotations

import grp
import json
import os
import pwd
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal

from .certificates import CertificateError, inspect_certificate
from .node_config import (
    SIGNER_KEY_NAME,
    STAKER_CERT_NAME,
    STAKER_KEY_NAME,
    NodeConfig,
    dump_config,
)

IDENTITY_DIR_NAME = "identity"
CONFIG_DIR_NAME = "config"
DATA_DIR_NAME = "data"
LOGS_DIR_NAME = "logs"
CONFIG_FILE_NAME = "node.json"

IDENTITY_DIR_MODE = 0o700
CONFIG_DIR_MODE = 0o750
DATA_DIR_MODE = 0o700
LOGS_DIR_MODE = 0o750
ROOT_DIR_MODE = 0o750

KEY_MODE = 0o600
CERT_MODE = 0o640
CONFIG_FILE_MODE = 0o640

IDENTITY_FILES: dict[str, int] = {
    STAKER_CERT_NAME: CERT_MODE,
    STAKER_KEY_NAME: KEY_MODE,
    SIGNER_KEY_NAME: KEY_MODE,
}


class MaterialError(RuntimeError):
    """Raised when key or configuration material cannot be managed."""


class IdentityNotFoundError(MaterialError):
    """Raised when the node identity files are absent."""


@dataclass(frozen=True, slots=True)
class NodeIdentity:
    """Staking certificate, staking key and BLS signer key of a node."""

    certificate: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    signer_key: bytes = field(repr=False)
    certificate_path: Path | None = None
    private_key_path: Path | None = None
    signer_key_path: Path | None = None

    def contents(self) -> dict[str, bytes]:
        """Return file contents keyed by their on-disk names."""
        return {
            STAKER_CERT_NAME: self.certificate,
            STAKER_KEY_NAME: self.private_key,
            SIGNER_KEY_NAME: self.signer_key,
        }


@dataclass(frozen=True, slots=True)
class PermissionViolation:
    """A file or directory that does not meet its required state."""

    path: Path
    expected: str
    actual: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason} (expected {self.expected}, found {self.actual})"

    def to_dict(self) -> dict[str, str]:
        """Return a JSON-friendly representation."""
        return {
            "path": str(self.path),
            "expected": self.expected,
            "actual": self.actual,
            "reason": self.reason,
        }


@dataclass(slots=True)
class DirectorySpec:
    """Desired state for a managed directory."""

    path: Path
    mode: int | None = None


@dataclass(slots=True)
class DirectoryAction:
    """Single change required to satisfy a :class:`DirectorySpec`."""

    kind: Literal["mkdir", "chmod", "chown"]
    path: Path
    description: str
    mode: int | None = None


@dataclass(slots=True)
class DirectoryPlan:
    """Ordered actions and warnings for the directory layout."""

    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class MaterialStore:
    """Own the identity and configuration files under *root*."""

    def __init__(
        self,
        root: Path,
        *,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        self.root = Path(root)
        self.owner = owner
        self.group = group

    # ------------------------------------------------------------------
    # layout
    @property
    def identity_dir(self) -> Path:
        """Return the identity directory."""
        return self.root / IDENTITY_DIR_NAME

    @property
    def config_dir(self) -> Path:
        """Return the configuration directory."""
        return self.root / CONFIG_DIR_NAME

    @property
    def data_dir(self) -> Path:
        """Return the node database directory."""
        return self.root / DATA_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        """Return the node log directory."""
        return self.root / LOGS_DIR_NAME

    @property
    def config_file(self) -> Path:
        """Return the ``node.json`` path."""
        return self.config_dir / CONFIG_FILE_NAME

    def identity_paths(self) -> dict[str, Path]:
        """Return identity file paths keyed by file name."""
        return {name: self.identity_dir / name for name in IDENTITY_FILES}

    def directory_specs(self) -> list[DirectorySpec]:
        """Return the directories the layout requires, parents first."""
        return [
            DirectorySpec(self.root),
            DirectorySpec(self.identity_dir, IDENTITY_DIR_MODE),
            DirectorySpec(self.config_dir, CONFIG_DIR_MODE),
            DirectorySpec(self.data_dir, DATA_DIR_MODE),
            DirectorySpec(self.logs_dir, LOGS_DIR_MODE),
        ]

    def plan_directory_layout(self) -> DirectoryPlan:
        """Return the actions needed to bring the layout to its target state."""
        plan = DirectoryPlan()
        uid, gid = self._resolve_ids()
        for spec in self.directory_specs():
            path = spec.path
            if path.exists() and not path.is_dir():
                plan.warnings.append(f"{path} exists but is not a directory.")
                continue
            if not path.exists():
                mode = spec.mode if spec.mode is not None else ROOT_DIR_MODE
                plan.actions.append(
                    DirectoryAction("mkdir", path, f"Create {path} ({oct(mode)}).", mode)
                )
                if uid is not None or gid is not None:
                    plan.actions.append(DirectoryAction("chown", path, f"Set owner of {path}."))
                continue
            stat = path.stat()
            if spec.mode is not None and (stat.st_mode & 0o777) != spec.mode:
                plan.actions.append(
                    DirectoryAction(
                        "chmod",
                        path,
                        f"Change mode of {path} from {oct(stat.st_mode & 0o777)} "
                        f"to {oct(spec.mode)}.",
                        spec.mode,
                    )
                )
            if (uid is not None and stat.st_uid != uid) or (gid is not None and stat.st_gid != gid):
                plan.actions.append(DirectoryAction("chown", path, f"Set owner of {path}."))
        return plan

    def ensure_directory_layout(self) -> list[Path]:
        """Create or repair the directory layout and return directories created.

        Calling it again on a correct layout is a no-op.
        """
        plan = self.plan_directory_layout()
        if plan.warnings:
            raise MaterialError("; ".join(plan.warnings))
        created: list[Path] = []
        for action in plan.actions:
            if action.kind == "mkdir":
                action.path.mkdir(parents=True, mode=action.mode or ROOT_DIR_MODE)
                if action.mode is not None:
                    os.chmod(action.path, action.mode)
                created.append(action.path)
            elif action.kind == "chmod" and action.mode is not None:
                os.chmod(action.path, action.mode)
            elif action.kind == "chown":
                self._chown(action.path)
        return created

    # ------------------------------------------------------------------
    # identity
    def has_identity(self) -> bool:
        """Return ``True`` when any identity file exists."""
        return any(path.exists() for path in self.identity_paths().values())

    def read_identity(self) -> NodeIdentity:
        """Load the node identity from disk."""
        paths = self.identity_paths()
        missing = [name for name, path in paths.items() if not path.is_file()]
        if missing:
            raise IdentityNotFoundError(
                f"Identity files missing under {self.identity_dir}: {', '.join(sorted(missing))}"
            )
        try:
            return NodeIdentity(
                certificate=paths[STAKER_CERT_NAME].read_bytes(),
                private_key=paths[STAKER_KEY_NAME].read_bytes(),
                signer_key=paths[SIGNER_KEY_NAME].read_bytes(),
                certificate_path=paths[STAKER_CERT_NAME],
                private_key_path=paths[STAKER_KEY_NAME],
                signer_key_path=paths[SIGNER_KEY_NAME],
            )
        except OSError as exc:
            raise MaterialError(f"Unable to read identity files: {exc}") from exc

    def write_identity(self, identity: NodeIdentity) -> NodeIdentity:
        """Write *identity* into the identity directory and return it with paths."""
        self.identity_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.identity_dir, IDENTITY_DIR_MODE)
        paths = self.identity_paths()
        staged: dict[str, Path] = {}
        # Replaced files sit under ``.<name>.old`` until every new file is in place.
        set_aside: dict[Path, Path] = {}
        placed: list[Path] = []
        try:
            for name, data in identity.contents().items():
                staged[name] = self._stage_file(self.identity_dir, name, data, IDENTITY_FILES[name])
            for name, path in paths.items():
                if path.exists():
                    old_path = self.identity_dir / f".{name}.old"
                    os.replace(path, old_path)
                    set_aside[path] = old_path
            for name, temp_path in staged.items():
                os.replace(temp_path, paths[name])
                placed.append(paths[name])
        except OSError as exc:
            for temp_path in staged.values():
                temp_path.unlink(missing_ok=True)
            for path in placed:
                path.unlink(missing_ok=True)
            try:
                for path, old_path in set_aside.items():
                    os.replace(old_path, path)
            except OSError as restore_exc:
                raise MaterialError(
                    f"Failed to write identity files: {exc}; previous files left as "
                    f"{', '.join(str(old) for old in set_aside.values())}: {restore_exc}"
                ) from exc
            raise MaterialError(f"Failed to write identity files: {exc}") from exc
        for old_path in set_aside.values():
            old_path.unlink(missing_ok=True)
        return replace(
            identity,
            certificate_path=paths[STAKER_CERT_NAME],
            private_key_path=paths[STAKER_KEY_NAME],
            signer_key_path=paths[SIGNER_KEY_NAME],
        )

    # ------------------------------------------------------------------
    # permissions
    def verify_permissions(self) -> list[PermissionViolation]:
        """Return every violation of the identity/config invariants."""
        violations: list[PermissionViolation] = []
        uid, _gid = self._resolve_ids()

        violations.extend(
            self._check_mode(self.identity_dir, IDENTITY_DIR_MODE, uid, directory=True)
        )
        for name, path in self.identity_paths().items():
            violations.extend(self._check_mode(path, IDENTITY_FILES[name], uid))

        cert_path = self.identity_dir / STAKER_CERT_NAME
        key_path = self.identity_dir / STAKER_KEY_NAME
        if cert_path.is_file() and key_path.is_file():
            try:
                info = inspect_certificate(cert_path.read_bytes(), key_path.read_bytes())
            except (CertificateError, OSError) as exc:
                violations.append(
                    PermissionViolation(cert_path, "parseable certificate", "invalid", str(exc))
                )
            else:
                if info.key_matches is False:
                    violations.append(
                        PermissionViolation(
                            key_path,
                            "key matching certificate",
                            "mismatch",
                            "staking key does not match the certificate",
                        )
                    )
        signer_path = self.identity_dir / SIGNER_KEY_NAME
        if signer_path.is_file() and signer_path.stat().st_size == 0:
            violations.append(
                PermissionViolation(signer_path, "non-empty", "empty", "signer key is empty")
            )

        if self.config_file.exists():
            violations.extend(self._check_mode(self.config_file, CONFIG_FILE_MODE, None))
            try:
                json.loads(self.config_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                violations.append(
                    PermissionViolation(self.config_file, "valid JSON", "invalid", str(exc))
                )
        return violations

    def fix_permissions(self) -> list[Path]:
        """Reset identity and config modes/ownership; return the paths touched."""
        touched: list[Path] = []
        targets: list[tuple[Path, int]] = [(self.identity_dir, IDENTITY_DIR_MODE)]
        targets.extend(
            (path, IDENTITY_FILES[name]) for name, path in self.identity_paths().items()
        )
        targets.extend([(self.config_dir, CONFIG_DIR_MODE), (self.config_file, CONFIG_FILE_MODE)])
        for path, mode in targets:
            if not path.exists():
                continue
            os.chmod(path, mode)
            self._chown(path)
            touched.append(path)
        return touched

    # ------------------------------------------------------------------
    # configuration
    def write_config(self, config: NodeConfig) -> bool:
        """Persist the rendered ``node.json``; return ``True`` when it changed."""
        return self.write_config_text(dump_config(config))

    def write_config_text(self, text: str) -> bool:
        """Atomically write *text* to ``node.json``."""
        target = self.config_file
        if target.exists() and target.read_text(encoding="utf-8") == text:
            return False
        self.config_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self._stage_file(
            self.config_dir, CONFIG_FILE_NAME, text.encode("utf-8"), CONFIG_FILE_MODE
        )
        try:
            os.replace(temp_path, target)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise MaterialError(f"Failed to write {target}: {exc}") from exc
        return True

    def read_config(self) -> dict[str, object] | None:
        """Return the parsed ``node.json`` or ``None`` when absent."""
        if not self.config_file.exists():
            return None
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise MaterialError(f"Unable to read {self.config_file}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise MaterialError(f"{self.config_file} must contain a JSON object.")
        return dict(data)

    # ------------------------------------------------------------------
    def _stage_file(self, directory: Path, name: str, data: bytes, mode: int) -> Path:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=directory)
        temp_path = Path(tmp_name)
        try:
            os.fchmod(fd, mode)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            self._chown(temp_path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        return temp_path

    def _resolve_ids(self) -> tuple[int | None, int | None]:
        uid: int | None = None
        gid: int | None = None
        if self.owner:
            try:
                uid = pwd.getpwnam(self.owner).pw_uid
            except KeyError as exc:
                raise MaterialError(f"Unknown owner '{self.owner}'.") from exc
        if self.group:
            try:
                gid = grp.getgrnam(self.group).gr_gid
            except KeyError as exc:
                raise MaterialError(f"Unknown group '{self.group}'.") from exc
        return uid, gid

    def _chown(self, path: Path) -> None:
        uid, gid = self._resolve_ids()
        if uid is None and gid is None:
            return
        stat = path.stat()
        want_uid = stat.st_uid if uid is None else uid
        want_gid = stat.st_gid if gid is None else gid
        if (want_uid, want_gid) == (stat.st_uid, stat.st_gid):
            return
        os.chown(path, want_uid, want_gid)

    @staticmethod
    def _check_mode(
        path: Path,
        allowed: int,
        uid: int | None,
        *,
        directory: bool = False,
    ) -> Iterable[PermissionViolation]:
        if not path.exists():
            yield PermissionViolation(path, "present", "missing", "required path is missing")
            return
        if directory and not path.is_dir():
            yield PermissionViolation(path, "directory", "file", "expected a directory")
            return
        stat = path.stat()
        mode = stat.st_mode & 0o777
        if mode & ~allowed:
            yield PermissionViolation(
                path,
                oct(allowed),
                oct(mode),
                "mode grants more access than allowed",
            )
        if uid is not None and stat.st_uid != uid:
            yield PermissionViolation(path, f"uid {uid}", f"uid {stat.st_uid}", "wrong owner")


__all__ = [
    "CONFIG_FILE_NAME",
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "IDENTITY_FILES",
    "IdentityNotFoundError",
    "MaterialError",
    "MaterialStore",
    "NodeIdentity",
    "PermissionViolation",
]
