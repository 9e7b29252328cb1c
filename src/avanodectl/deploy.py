"""Execute reconciler decisions against the host.

The :class:`Deployer` owns every side effect of install, upgrade, migrate,
backup, restore and identity regeneration. Each workflow either completes,
cleans up after itself, or rolls back through the backup engine; failures are
raised as :class:`DeploymentError` carrying the final outcome, the snapshot
taken along the way and, for fatal outcomes, the service log tail.
"""
from __future__ import annotations

import logging
import shlex
import shutil
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import NoReturn

from packaging.version import InvalidVersion, Version

from .backups import BackupEngine, BackupError, RestoreOutcome, Snapshot
from .config import AppConfig
from .discovery import HostObservation, read_legacy_identity
from .material import MaterialError, MaterialStore, NodeIdentity
from .node_config import (
    SIGNER_KEY_NAME,
    STAKER_CERT_NAME,
    STAKER_KEY_NAME,
    NodeConfig,
    launch_arguments,
)
from .preflight import PreconditionError
from .prompts import AnswerSource
from .providers import (
    ManagedUnit,
    NodeBinary,
    NodeBinaryError,
    NodeRpcClient,
    NodeRpcError,
    ReleaseInstaller,
    ReleaseInstallError,
    ServiceState,
    StagedRelease,
    SupervisorError,
    health_probe,
)
from .providers.systemd import node_id_from_logs
from .reconciler import Action, Decision, Request
from .retry import retry_call
from .service_account import (
    ServiceAccountError,
    ServiceAccountSpec,
    apply_service_account_plan,
    plan_service_account,
)
from .state import DeploymentRecord, DeploymentRecordError, DeploymentStore

LOGGER = logging.getLogger(__name__)

StepObserver = Callable[[str, str, "str | None"], None]

# Errors raised by the external pieces a workflow drives.
WORKFLOW_ERRORS: tuple[type[Exception], ...] = (
    OSError,
    BackupError,
    MaterialError,
    NodeBinaryError,
    ReleaseInstallError,
    SupervisorError,
    ServiceAccountError,
    DeploymentRecordError,
)


class Outcome(str, Enum):
    """Final state reported for a workflow."""

    OK = "ok"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    FATAL = "fatal"


class DeploymentError(RuntimeError):
    """Raised when a workflow did not complete."""

    def __init__(
        self,
        message: str,
        *,
        outcome: Outcome = Outcome.FAILED,
        snapshot: Snapshot | None = None,
        log_tail: Iterable[str] = (),
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.outcome = outcome
        self.snapshot = snapshot
        self.log_tail = list(log_tail)
        self.cause = cause


class DeploymentVerificationError(SupervisorError):
    """Raised when the service is not running after a start."""


@dataclass(slots=True)
class DeploymentResult:
    """Summary of a completed workflow."""

    action: str
    outcome: Outcome
    message: str
    version: str | None = None
    node_id: str | None = None
    snapshot: Snapshot | None = None
    pruned: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "action": self.action,
            "outcome": self.outcome.value,
            "message": self.message,
            "version": self.version,
            "node_id": self.node_id,
            "snapshot": str(self.snapshot.path) if self.snapshot else None,
            "pruned": list(self.pruned),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class _FileJournal:
    """Prior contents of files a workflow may overwrite."""

    entries: dict[Path, tuple[bytes, int] | None] = field(default_factory=dict)

    def remember(self, path: Path) -> None:
        if path in self.entries:
            return
        if path.is_file():
            self.entries[path] = (path.read_bytes(), path.stat().st_mode & 0o777)
        else:
            self.entries[path] = None

    def revert(self) -> None:
        for path, previous in self.entries.items():
            if previous is None:
                path.unlink(missing_ok=True)
                continue
            data, mode = previous
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            path.chmod(mode)


@dataclass(slots=True)
class Deployer:
    """Drive the workflows chosen by :func:`avanodectl.reconciler.reconcile`."""

    config: AppConfig
    store: MaterialStore
    unit: ManagedUnit
    binary: NodeBinary
    installer: ReleaseInstaller
    engine: BackupEngine
    deployment: DeploymentStore
    answers: AnswerSource
    rpc: NodeRpcClient | None = None
    observer: StepObserver | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rpc_attempts: int = 3
    create_account: bool = True

    # ------------------------------------------------------------------
    def execute(
        self,
        decision: Decision,
        request: Request,
        observation: HostObservation,
    ) -> DeploymentResult:
        """Run the workflow named by *decision*."""
        if not decision.allowed:
            raise DeploymentError(decision.rejected or "Request rejected.")
        if decision.destructive and not self._confirm(decision):
            return DeploymentResult(
                decision.action.value,
                Outcome.CANCELLED,
                f"{decision.action.value} cancelled by operator.",
                warnings=list(decision.warnings),
            )
        if decision.action is Action.INSTALL:
            result = self.install(self._require_config(decision), request)
        elif decision.action is Action.UPGRADE:
            result = self.upgrade(decision.node_config, request, observation)
        elif decision.action is Action.MIGRATE:
            result = self.migrate(self._require_config(decision), request, observation)
        elif decision.action is Action.BACKUP:
            result = self.backup(include_data=request.include_data, label=request.label)
        elif decision.action is Action.RESTORE:
            result = self.restore(request.snapshot_id or "")
        else:
            return DeploymentResult("cancel", Outcome.CANCELLED, "Nothing to do.")
        result.warnings[:0] = decision.warnings
        return result

    def _confirm(self, decision: Decision) -> bool:
        steps = ", ".join(decision.destructive)
        return self.answers.confirm(
            f"{decision.action.value} will perform: {steps}. Continue?",
            default=False,
        )

    @staticmethod
    def _require_config(decision: Decision) -> NodeConfig:
        if decision.node_config is None:
            raise DeploymentError(f"{decision.action.value} has no node configuration.")
        return decision.node_config

    # ------------------------------------------------------------------
    # install
    def install(self, node_config: NodeConfig, request: Request) -> DeploymentResult:
        """Install, configure and start a new node; undo everything on failure."""
        root_existed = self.store.root.exists()
        install_root_existed = self.installer.install_root.exists()
        binary_existed = self.installer.binary_path.exists()
        created_dirs: list[Path] = []
        unit_written = False
        record_written = False
        try:
            self._ensure_service_account()
            created_dirs = self.store.ensure_directory_layout()
            self._step("layout", "success", f"{len(created_dirs)} created")

            version = self.installer.resolve_version(request.version)
            installed = self.installer.install(version, from_source=request.from_source)
            self._step("binary", "success", f"{installed.version} ({installed.source})")

            if self.store.has_identity():
                self.store.read_identity()
                self._step("identity", "skipped", "existing identity kept")
            else:
                identity = self.binary.generate_identity()
                self.store.write_identity(identity)
                self._step("identity", "success", "generated")
            self.store.fix_permissions()

            self.store.write_config(node_config)
            self._step("config", "success", str(self.store.config_file))
            record = DeploymentRecord.from_node_config(
                node_config,
                allow_public_rpc=request.allow_public_rpc,
                version=installed.version,
                source=installed.source,
            )
            self.deployment.save(record)
            record_written = True

            unit_written = True
            self.unit.render_unit(self._unit_context(node_config))
            self.unit.enable()
            self.unit.start()
            self._step("unit", "success", str(self.unit.unit_path))
            self._verify_running()
        except WORKFLOW_ERRORS as exc:
            self._cleanup_install(
                root_existed=root_existed,
                install_root_existed=install_root_existed,
                binary_existed=binary_existed,
                created_dirs=created_dirs,
                unit_written=unit_written,
                record_written=record_written,
            )
            raise DeploymentError(f"Install failed: {exc}", cause=exc) from exc

        node_id = self._report_node_id()
        if node_id:
            self.deployment.save(record.updated(node_id=node_id))
        return DeploymentResult(
            "install",
            Outcome.OK,
            f"Installed AvalancheGo {installed.version} as a {node_config.role.value} node.",
            version=installed.version,
            node_id=node_id,
        )

    def _cleanup_install(
        self,
        *,
        root_existed: bool,
        install_root_existed: bool,
        binary_existed: bool,
        created_dirs: list[Path],
        unit_written: bool,
        record_written: bool,
    ) -> None:
        problems: list[str] = []
        if unit_written:
            try:
                if self.unit.is_running() is ServiceState.RUNNING:
                    self.unit.stop()
                self.unit.remove()
            except SupervisorError as exc:
                problems.append(f"unit: {exc}")
        if record_written:
            self.deployment.remove()
        if not binary_existed:
            self.installer.uninstall()
        if not install_root_existed:
            shutil.rmtree(self.installer.install_root, ignore_errors=True)
        if not root_existed and self.store.root.exists():
            shutil.rmtree(self.store.root, ignore_errors=True)
        else:
            for path in sorted(created_dirs, key=lambda item: len(item.parts), reverse=True):
                shutil.rmtree(path, ignore_errors=True)
        if problems:
            self._step("cleanup", "warning", "; ".join(problems))
        else:
            self._step("cleanup", "success", "partial install removed")

    def _ensure_service_account(self) -> None:
        if not self.create_account or not self.config.service_user:
            self._step("service-account", "skipped", None)
            return
        home = self.store.root.parent if self.store.root.name.startswith(".") else None
        spec = ServiceAccountSpec(
            name=self.config.service_user,
            group=self.config.service_group,
            home=home,
        )
        plan = plan_service_account(spec)
        performed = apply_service_account_plan(plan)
        for warning in plan.warnings:
            self._step("service-account", "warning", warning)
        self._step("service-account", "success", f"{len(performed)} actions")

    # ------------------------------------------------------------------
    # upgrade
    def upgrade(
        self,
        node_config: NodeConfig | None,
        request: Request,
        observation: HostObservation,
    ) -> DeploymentResult:
        """Replace the node binary, regenerating ``node.json`` for managed installs."""
        binary_path = observation.binary_path or self.installer.binary_path
        installer = replace(
            self.installer,
            install_root=binary_path.parent,
            binary_name=binary_path.name,
        )
        try:
            target = installer.resolve_version(request.version)
        except ReleaseInstallError as exc:
            raise DeploymentError(str(exc), cause=exc) from exc
        current = observation.version
        comparison = _compare_versions(target, current)
        if comparison == 0:
            return DeploymentResult(
                "upgrade",
                Outcome.UNCHANGED,
                f"AvalancheGo {current} is already installed.",
                version=current,
            )
        if comparison is not None and comparison < 0 and not request.allow_downgrade:
            raise DeploymentError(
                f"Refusing to downgrade from {current} to {target} without --allow-downgrade.",
                cause=PreconditionError("downgrade"),
            )

        try:
            staged = installer.fetch(target, from_source=request.from_source)
        except ReleaseInstallError as exc:
            raise DeploymentError(f"Upgrade aborted: {exc}", cause=exc) from exc
        self._step("fetch", "success", f"{staged.version} ({staged.source})")

        try:
            if node_config is not None:
                snapshot = self.engine.backup(label="pre-upgrade")
            else:
                snapshot = self.engine.safety_backup(
                    "pre-upgrade", sources=self._material_sources(observation)
                )
        except WORKFLOW_ERRORS as exc:
            installer.discard(staged)
            raise DeploymentError(f"Pre-upgrade backup failed: {exc}", cause=exc) from exc
        self._step("pre-upgrade-backup", "success", str(snapshot.path))

        return self._swap_binary(installer, staged, node_config, observation, snapshot)

    def _swap_binary(
        self,
        installer: ReleaseInstaller,
        staged: StagedRelease,
        node_config: NodeConfig | None,
        observation: HostObservation,
        snapshot: Snapshot,
    ) -> DeploymentResult:
        was_running = False
        activated = False
        try:
            was_running = self.unit.is_running() is ServiceState.RUNNING
            if was_running:
                self.unit.stop()
                self._step("stop", "success", None)
            installed = installer.activate(staged)
            activated = True
            self._step("swap-binary", "success", installed.version)
            if node_config is not None:
                self.store.write_config(node_config)
                self.deployment.save(self._updated_record(node_config, installed.version))
                self.unit.render_unit(self._unit_context(node_config, installer.binary_path))
                self._step("config", "success", str(self.store.config_file))
            self.unit.start()
            self._verify_running()
        except WORKFLOW_ERRORS as exc:
            if not activated:
                installer.discard(staged)
            self._rollback_upgrade(
                installer,
                node_config,
                snapshot,
                was_running=was_running,
                activated=activated,
                exc=exc,
            )

        node_id = self._report_node_id()
        return DeploymentResult(
            "upgrade",
            Outcome.OK,
            f"Upgraded AvalancheGo to {installed.version}.",
            version=installed.version,
            node_id=node_id,
            snapshot=snapshot,
        )

    def _rollback_upgrade(
        self,
        installer: ReleaseInstaller,
        node_config: NodeConfig | None,
        snapshot: Snapshot,
        *,
        was_running: bool,
        activated: bool,
        exc: BaseException,
    ) -> NoReturn:
        reason = f"Upgrade failed: {exc}"
        self._step("rollback", "warning", reason)
        try:
            if activated:
                if self.unit.is_running() is ServiceState.RUNNING:
                    self.unit.stop()
                installer.rollback()
        except WORKFLOW_ERRORS as rollback_exc:
            raise DeploymentError(
                f"{reason}; restoring the previous binary failed: {rollback_exc}",
                outcome=Outcome.FATAL,
                snapshot=snapshot,
                log_tail=self._log_tail(),
                cause=exc,
            ) from exc

        if node_config is None:
            try:
                if was_running:
                    self.unit.start()
                    self._verify_running()
            except WORKFLOW_ERRORS as restart_exc:
                raise DeploymentError(
                    f"{reason}; the previous binary did not come back: {restart_exc}",
                    outcome=Outcome.FATAL,
                    snapshot=snapshot,
                    log_tail=self._log_tail(),
                    cause=exc,
                ) from exc
            raise DeploymentError(
                f"{reason}; previous binary restored.",
                outcome=Outcome.ROLLED_BACK,
                snapshot=snapshot,
                cause=exc,
            ) from exc

        restored = self.engine.restore(snapshot)
        if restored.outcome is RestoreOutcome.OK:
            raise DeploymentError(
                f"{reason}; previous binary and configuration restored from {snapshot.id}.",
                outcome=Outcome.ROLLED_BACK,
                snapshot=snapshot,
                cause=exc,
            ) from exc
        raise DeploymentError(
            f"{reason}; rollback through {snapshot.id} failed: {restored.reason}",
            outcome=Outcome.FATAL,
            snapshot=snapshot,
            log_tail=restored.log_tail or self._log_tail(),
            cause=exc,
        ) from exc

    def _updated_record(self, node_config: NodeConfig, version: str) -> DeploymentRecord:
        existing = self.deployment.load()
        if existing is None:
            return DeploymentRecord.from_node_config(node_config, version=version, source="release")
        return existing.updated(version=version)

    # ------------------------------------------------------------------
    # migrate
    def migrate(
        self,
        node_config: NodeConfig,
        request: Request,
        observation: HostObservation,
    ) -> DeploymentResult:
        """Adopt an unmanaged installation, leaving its identity untouched."""
        identity_dir = observation.identity_dir
        if identity_dir is None:
            raise DeploymentError("No staking identity found to migrate.")
        legacy: dict[str, bytes] = {}
        if identity_dir != self.store.identity_dir:
            try:
                legacy = read_legacy_identity(identity_dir)
            except MaterialError as exc:
                raise DeploymentError(str(exc), cause=exc) from exc
            missing = [
                name
                for name in (STAKER_CERT_NAME, STAKER_KEY_NAME, SIGNER_KEY_NAME)
                if not legacy.get(name)
            ]
            if missing:
                raise DeploymentError(
                    f"{identity_dir} is missing {', '.join(missing)}; start the node once "
                    "so it writes its signer key, then migrate.",
                    cause=PreconditionError("incomplete identity"),
                )

        try:
            snapshot = self.engine.safety_backup(
                "pre-migrate", sources=self._material_sources(observation)
            )
        except WORKFLOW_ERRORS as exc:
            raise DeploymentError(f"Pre-migrate backup failed: {exc}", cause=exc) from exc
        self._step("safety-backup", "success", str(snapshot.path))

        journal = _FileJournal()
        previous_unit = self.unit.read_unit()
        was_running = False
        try:
            for path in (
                self.store.config_file,
                self.deployment.path,
                *self.store.identity_paths().values(),
            ):
                journal.remember(path)
            was_running = self.unit.is_running() is ServiceState.RUNNING
            if was_running:
                self.unit.stop()
                self._step("stop", "success", None)

            self.store.ensure_directory_layout()
            if legacy:
                self.store.write_identity(
                    NodeIdentity(
                        certificate=legacy[STAKER_CERT_NAME],
                        private_key=legacy[STAKER_KEY_NAME],
                        signer_key=legacy[SIGNER_KEY_NAME],
                    )
                )
                self._step("adopt-identity", "success", f"copied from {identity_dir}")
            else:
                self._step("adopt-identity", "skipped", "already in place")
            self.store.fix_permissions()

            self.store.write_config(node_config)
            record = DeploymentRecord.from_node_config(
                node_config,
                allow_public_rpc=request.allow_public_rpc,
                version=observation.version,
                source="adopted",
            )
            self.deployment.save(record)
            self.unit.render_unit(self._unit_context(node_config, observation.binary_path))
            self.unit.enable()
            self.unit.start()
            self._step("unit", "success", str(self.unit.unit_path))
            self._verify_running()
        except WORKFLOW_ERRORS as exc:
            self._rollback_migrate(journal, previous_unit, was_running, snapshot, exc)

        node_id = self._report_node_id()
        if node_id:
            self.deployment.save(record.updated(node_id=node_id))
        return DeploymentResult(
            "migrate",
            Outcome.OK,
            f"Migrated the {node_config.role.value} node to avanodectl management.",
            version=observation.version,
            node_id=node_id,
            snapshot=snapshot,
        )

    def _rollback_migrate(
        self,
        journal: _FileJournal,
        previous_unit: str | None,
        was_running: bool,
        snapshot: Snapshot,
        exc: BaseException,
    ) -> NoReturn:
        reason = f"Migrate failed: {exc}"
        self._step("rollback", "warning", reason)
        try:
            if self.unit.is_running() is ServiceState.RUNNING:
                self.unit.stop()
            journal.revert()
            if previous_unit is None:
                self.unit.remove()
            else:
                self.unit.write_unit_text(previous_unit)
            if was_running:
                self.unit.start()
                self._verify_running()
        except WORKFLOW_ERRORS as rollback_exc:
            raise DeploymentError(
                f"{reason}; rollback failed: {rollback_exc}",
                outcome=Outcome.FATAL,
                snapshot=snapshot,
                log_tail=self._log_tail(),
                cause=exc,
            ) from exc
        raise DeploymentError(
            f"{reason}; the original installation was put back.",
            outcome=Outcome.ROLLED_BACK,
            snapshot=snapshot,
            cause=exc,
        ) from exc

    def _material_sources(self, observation: HostObservation) -> dict[str, Path]:
        sources = {"identity": observation.identity_dir or self.store.identity_dir}
        config_file = observation.config_file
        sources["config"] = config_file.parent if config_file else self.store.config_dir
        return sources

    # ------------------------------------------------------------------
    # backup / restore
    def backup(self, *, include_data: bool = False, label: str | None = None) -> DeploymentResult:
        """Create a verified snapshot and apply the retention policy."""
        try:
            snapshot = self.engine.backup(include_data=include_data, label=label)
        except WORKFLOW_ERRORS as exc:
            raise DeploymentError(f"Backup failed: {exc}", cause=exc) from exc
        try:
            pruned = self.engine.prune(self.config.backups.keep, protect=[snapshot.id])
        except (OSError, BackupError) as exc:
            pruned = []
            self._step("prune", "warning", f"retention not applied: {exc}")
        return DeploymentResult(
            "backup",
            Outcome.OK,
            f"Snapshot {snapshot.id} created ({snapshot.file_count} files).",
            snapshot=snapshot,
            pruned=pruned,
        )

    def restore(self, snapshot_id: str) -> DeploymentResult:
        """Restore *snapshot_id* through the backup engine."""
        try:
            snapshot = self.engine.get(snapshot_id)
        except BackupError as exc:
            raise DeploymentError(str(exc), cause=exc) from exc
        result = self.engine.restore(snapshot)
        if result.outcome is RestoreOutcome.OK:
            return DeploymentResult(
                "restore",
                Outcome.OK,
                f"Snapshot {snapshot.id} restored.",
                snapshot=result.pre_restore,
            )
        outcome = {
            RestoreOutcome.ROLLED_BACK: Outcome.ROLLED_BACK,
            RestoreOutcome.FATAL: Outcome.FATAL,
        }.get(result.outcome, Outcome.FAILED)
        raise DeploymentError(
            f"Restore of {snapshot.id} failed: {result.reason}",
            outcome=outcome,
            snapshot=result.pre_restore,
            log_tail=result.log_tail,
        )

    # ------------------------------------------------------------------
    # identity
    def regenerate_identity(self) -> DeploymentResult:
        """Replace the staking identity with a freshly generated one.

        The current identity is snapshotted first and restored if the node does
        not come back with the new keys.
        """
        if not self.answers.confirm(
            "Regenerating the identity changes the NodeID; a registered validator "
            "stops validating. Continue?",
            default=False,
        ):
            return DeploymentResult(
                "regenerate-identity", Outcome.CANCELLED, "Regeneration cancelled."
            )
        try:
            snapshot = self.engine.safety_backup("pre-regenerate")
            identity = self.binary.generate_identity()
        except WORKFLOW_ERRORS as exc:
            raise DeploymentError(f"Identity regeneration aborted: {exc}", cause=exc) from exc
        self._step("pre-regenerate-backup", "success", str(snapshot.path))

        state = ServiceState.NOT_INSTALLED
        try:
            state = self.unit.is_running()
            if state is ServiceState.RUNNING:
                self.unit.stop()
            self.store.write_identity(identity)
            self.store.fix_permissions()
            if state is ServiceState.RUNNING:
                self.unit.start()
                self._verify_running()
        except WORKFLOW_ERRORS as exc:
            restored = self.engine.restore(snapshot)
            outcome = (
                Outcome.ROLLED_BACK if restored.outcome is RestoreOutcome.OK else Outcome.FATAL
            )
            raise DeploymentError(
                f"Identity regeneration failed: {exc}",
                outcome=outcome,
                snapshot=snapshot,
                log_tail=restored.log_tail,
                cause=exc,
            ) from exc

        node_id = self._report_node_id() if state is ServiceState.RUNNING else None
        record = self.deployment.load()
        if record is not None:
            self.deployment.save(record.updated(node_id=node_id))
        return DeploymentResult(
            "regenerate-identity",
            Outcome.OK,
            "Staking identity regenerated.",
            node_id=node_id,
            snapshot=snapshot,
        )

    # ------------------------------------------------------------------
    # helpers
    def _unit_context(
        self,
        node_config: NodeConfig,
        binary_path: Path | None = None,
    ) -> dict[str, object]:
        binary_path = binary_path or self.installer.binary_path
        argv = [str(binary_path), *launch_arguments(node_config, self.store.config_file)]
        return {
            "role": node_config.role.value,
            "network": node_config.network.value,
            "service_user": self.config.service_user or "root",
            "service_group": self.config.service_group,
            "working_directory": str(self.store.root),
            "exec_start": shlex.join(argv),
            "stop_timeout": int(self.config.service.stop_timeout),
            "environment": [],
            "node_root": str(self.store.root),
        }

    def _verify_running(self) -> None:
        grace = self.config.service.start_grace
        if grace > 0:
            self.sleep(grace)
        state = self.unit.is_running()
        if state is not ServiceState.RUNNING:
            raise DeploymentVerificationError(
                f"{self.unit.unit_path.name} is {state.value} after {grace:.0f}s."
            )
        if self.rpc is None:
            self._step("verify", "success", "service running")
            return
        probe = health_probe(self.rpc, attempts=self.rpc_attempts, delay=grace, sleep=self.sleep)
        if not probe():
            raise DeploymentVerificationError(
                f"{self.unit.unit_path.name} is running but /ext/health never answered."
            )
        self._step("verify", "success", "service running, health endpoint answering")

    def _report_node_id(self) -> str | None:
        if self.rpc is not None:
            rpc = self.rpc
            try:
                node_id = retry_call(
                    rpc.node_id,
                    attempts=self.rpc_attempts,
                    delay=self.config.service.start_grace,
                    retry_on=(NodeRpcError,),
                    sleep=self.sleep,
                    description="info.getNodeID",
                )
            except NodeRpcError as exc:
                self._step("report-node-id", "warning", f"RPC unavailable: {exc}")
            else:
                self._step("report-node-id", "success", node_id)
                return node_id
        try:
            node_id = node_id_from_logs(self.unit.tail_logs(500))
        except SupervisorError as exc:
            self._step("report-node-id", "warning", str(exc))
            return None
        self._step("report-node-id", "success" if node_id else "warning", node_id or "not found")
        return node_id

    def _log_tail(self) -> list[str]:
        try:
            return self.unit.tail_logs(50)
        except SupervisorError as exc:
            return [f"(log tail unavailable: {exc})"]

    def _step(self, name: str, status: str, detail: str | None) -> None:
        LOGGER.debug("%s: %s %s", name, status, detail or "")
        if self.observer is not None:
            self.observer(name, status, detail)


def _compare_versions(target: str, current: str | None) -> int | None:
    if not current:
        return None
    try:
        left = Version(target.lstrip("v"))
        right = Version(current.lstrip("v"))
    except InvalidVersion:
        return None
    return (left > right) - (left < right)


__all__ = [
    "Deployer",
    "DeploymentError",
    "DeploymentResult",
    "DeploymentVerificationError",
    "Outcome",
    "WORKFLOW_ERRORS",
]
