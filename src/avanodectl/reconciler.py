"""Decide the next deployment action from an observed host state.

Everything here is pure: it takes a :class:`HostObservation` and a
:class:`Request` and returns a :class:`Decision`. The :mod:`avanodectl.deploy`
driver performs the side effects.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from .discovery import HostObservation
from .node_config import NodeConfig, NodeConfigError, build_node_config, infer_node_config
from .providers.supervisor import ServiceState
from .state import DeploymentRecordError


class HostState(str, Enum):
    """Coarse deployment state of the host."""

    UNINSTALLED = "uninstalled"
    INSTALLED_UNMANAGED = "installed-unmanaged"
    INSTALLED_MANAGED_RUNNING = "installed-managed-running"
    INSTALLED_MANAGED_STOPPED = "installed-managed-stopped"


class Action(str, Enum):
    """Workflow the operator may request."""

    INSTALL = "install"
    UPGRADE = "upgrade"
    MIGRATE = "migrate"
    BACKUP = "backup"
    RESTORE = "restore"
    CANCEL = "cancel"


ALLOWED_ACTIONS: Mapping[HostState, tuple[Action, ...]] = {
    HostState.UNINSTALLED: (Action.INSTALL, Action.CANCEL),
    HostState.INSTALLED_UNMANAGED: (Action.BACKUP, Action.MIGRATE, Action.UPGRADE, Action.CANCEL),
    HostState.INSTALLED_MANAGED_RUNNING: (
        Action.BACKUP,
        Action.UPGRADE,
        Action.RESTORE,
        Action.CANCEL,
    ),
    HostState.INSTALLED_MANAGED_STOPPED: (
        Action.BACKUP,
        Action.UPGRADE,
        Action.RESTORE,
        Action.CANCEL,
    ),
}


@dataclass(frozen=True, slots=True)
class Request:
    """What the operator asked for, gathered from flags or prompts."""

    action: Action
    role: str | None = None
    network: str | None = None
    rpc_scope: str | None = None
    allow_public_rpc: bool = False
    public_ip: str | None = None
    version: str | None = None
    from_source: bool = False
    allow_downgrade: bool = False
    snapshot_id: str | None = None
    include_data: bool = False
    label: str | None = None


@dataclass(slots=True)
class Decision:
    """The action to perform and how."""

    action: Action
    state: HostState
    node_config: NodeConfig | None = None
    steps: tuple[str, ...] = ()
    destructive: tuple[str, ...] = ()
    warnings: list[str] = field(default_factory=list)
    rejected: str | None = None
    invalid: bool = False

    @property
    def allowed(self) -> bool:
        """Return ``True`` when the request can be executed."""
        return self.rejected is None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "action": self.action.value,
            "state": self.state.value,
            "allowed": self.allowed,
            "rejected": self.rejected,
            "steps": list(self.steps),
            "destructive": list(self.destructive),
            "warnings": list(self.warnings),
            "node_config": self.node_config.summary() if self.node_config else None,
        }


INSTALL_STEPS = (
    "preflight",
    "service-account",
    "layout",
    "binary",
    "identity",
    "config",
    "record",
    "unit",
    "start",
    "verify",
    "report-node-id",
)
UPGRADE_STEPS = (
    "pre-upgrade-backup",
    "stop",
    "swap-binary",
    "config",
    "record",
    "start",
    "verify",
)
UNMANAGED_UPGRADE_STEPS = ("safety-backup", "stop", "swap-binary", "start", "verify")
MIGRATE_STEPS = (
    "safety-backup",
    "stop",
    "adopt-identity",
    "config",
    "record",
    "unit",
    "start",
    "verify",
)
RESTORE_STEPS = (
    "pre-backup",
    "stop",
    "replace",
    "permission-fix",
    "start",
    "verify",
)


def classify(observation: HostObservation) -> HostState:
    """Map an observation onto a :class:`HostState`."""
    if not observation.installed:
        return HostState.UNINSTALLED
    if not observation.managed:
        return HostState.INSTALLED_UNMANAGED
    if observation.service is ServiceState.RUNNING:
        return HostState.INSTALLED_MANAGED_RUNNING
    return HostState.INSTALLED_MANAGED_STOPPED


def allowed_actions(state: HostState) -> tuple[Action, ...]:
    """Return the actions offered in *state*."""
    return ALLOWED_ACTIONS[state]


def reconcile(observation: HostObservation, request: Request) -> Decision:
    """Return the :class:`Decision` for *request* against *observation*."""
    state = classify(observation)
    decision = Decision(action=request.action, state=state)
    if request.action not in allowed_actions(state):
        offered = ", ".join(action.value for action in allowed_actions(state))
        decision.rejected = (
            f"'{request.action.value}' is not available when the host is {state.value} "
            f"(allowed: {offered})."
        )
        return decision

    handler = _HANDLERS.get(request.action)
    if handler is not None:
        handler(observation, request, decision)
    return decision


def _reject(decision: Decision, message: str) -> None:
    decision.rejected = message
    decision.invalid = True


def _plan_install(observation: HostObservation, request: Request, decision: Decision) -> None:
    if not request.role or not request.network:
        _reject(decision, "install requires --role and --network.")
        return
    try:
        config, warnings = build_node_config(
            observation.root,
            network=request.network,
            role=request.role,
            rpc_scope=request.rpc_scope,
            allow_public_rpc=request.allow_public_rpc,
            public_ip=request.public_ip,
        )
    except NodeConfigError as exc:
        _reject(decision, str(exc))
        return
    decision.node_config = config
    decision.warnings.extend(warnings)
    decision.steps = INSTALL_STEPS


def _plan_upgrade(observation: HostObservation, request: Request, decision: Decision) -> None:
    if decision.state is HostState.INSTALLED_UNMANAGED:
        decision.steps = UNMANAGED_UPGRADE_STEPS
        decision.destructive = ("stop", "swap-binary")
        decision.warnings.append(
            "The installation is not managed by avanodectl; node.json and the unit "
            "file are left as they are. Run 'migrate' to adopt it."
        )
        return

    if observation.record is not None:
        try:
            config, warnings = observation.record.to_node_config(observation.root)
        except DeploymentRecordError as exc:
            _reject(decision, str(exc))
            return
    elif observation.config_document is not None:
        try:
            config, warnings = infer_node_config(observation.config_document, observation.root)
        except NodeConfigError as exc:
            _reject(decision, f"Unable to read the current node configuration: {exc}")
            return
        warnings = [
            "No deployment record found; settings were inferred from node.json.",
            *warnings,
        ]
    else:
        _reject(decision, "No deployment record or node.json to regenerate the config from.")
        return
    decision.node_config = config
    decision.warnings.extend(warnings)
    decision.steps = UPGRADE_STEPS
    decision.destructive = ("stop", "swap-binary")


def _plan_migrate(observation: HostObservation, request: Request, decision: Decision) -> None:
    if observation.identity_dir is None:
        _reject(decision, "No staking identity found to migrate.")
        return
    try:
        if observation.config_document is not None:
            config, warnings = infer_node_config(
                observation.config_document,
                observation.root,
                role=request.role,
                allow_public_rpc=request.allow_public_rpc,
            )
        elif request.role and request.network:
            config, warnings = build_node_config(
                observation.root,
                network=request.network,
                role=request.role,
                rpc_scope=request.rpc_scope,
                allow_public_rpc=request.allow_public_rpc,
                public_ip=request.public_ip,
            )
        else:
            _reject(decision, "No node.json found; migrate requires --role and --network.")
            return
    except NodeConfigError as exc:
        _reject(decision, str(exc))
        return
    if request.network and config.network.value != request.network:
        decision.warnings.append(
            f"Keeping network '{config.network.value}' from the existing configuration."
        )
    decision.node_config = config
    decision.warnings.extend(warnings)
    decision.steps = MIGRATE_STEPS
    decision.destructive = ("stop", "rewrite-config", "rewrite-unit")


def _plan_backup(observation: HostObservation, request: Request, decision: Decision) -> None:
    steps = ["staging", "verify", "commit"]
    if request.include_data:
        steps[1:1] = ["stop", "archive", "start"]
        decision.destructive = ("stop",)
    decision.steps = tuple(steps)


def _plan_restore(observation: HostObservation, request: Request, decision: Decision) -> None:
    if not request.snapshot_id:
        _reject(decision, "restore requires --snapshot.")
        return
    decision.steps = RESTORE_STEPS
    decision.destructive = ("stop", "replace")


def _plan_cancel(observation: HostObservation, request: Request, decision: Decision) -> None:
    decision.steps = ()


_HANDLERS = {
    Action.INSTALL: _plan_install,
    Action.UPGRADE: _plan_upgrade,
    Action.MIGRATE: _plan_migrate,
    Action.BACKUP: _plan_backup,
    Action.RESTORE: _plan_restore,
    Action.CANCEL: _plan_cancel,
}


__all__ = [
    "ALLOWED_ACTIONS",
    "Action",
    "Decision",
    "HostState",
    "Request",
    "allowed_actions",
    "classify",
    "reconcile",
]
