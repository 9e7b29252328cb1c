"""Command-line entry point for avanodectl.

Every command observes the host afresh, asks the reconciler what the request
means in the current state and hands the decision to the deployer. Commands
that change the host run the preflight checks and hold the node lock for their
whole duration; each one records a structured entry in the operations log.
"""
from __future__ import annotations

import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupEngine, BackupError, SnapshotNotFoundError
from .certificates import CertificateError, inspect_certificate
from .config import AppConfig, ConfigError, load_config
from .deploy import Deployer, DeploymentError, DeploymentResult, Outcome
from .discovery import HostObservation, inspect_host
from .exit_codes import ExitCode
from .locking import BINARY_LOCK_NAME, SNAPSHOTS_LOCK_NAME, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .material import MaterialError, MaterialStore
from .node_config import Network, NodeConfigError, Role, RpcScope
from .preflight import PreconditionError, run_preflight
from .prompts import AnswerSource, InteractiveAnswers, PromptError, answers_for
from .providers import (
    NodeBinary,
    NodeRpcClient,
    NodeRpcError,
    ReleaseInstaller,
    ServiceState,
    SupervisorError,
    SystemdProvider,
    health_probe,
)
from .reconciler import Action, Request, allowed_actions, classify, reconcile
from .state import DeploymentStore
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Path to an alternate avanodectl config file.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    help="Skip confirmation prompts and proceed non-interactively.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON output.")
VERSION_OPTION = typer.Option(
    None,
    "--version",
    help="AvalancheGo release tag to install (default: latest).",
)
FROM_SOURCE_OPTION = typer.Option(
    False,
    "--from-source",
    help="Build AvalancheGo from the git repository instead of downloading a release.",
)

_OUTCOME_STYLE = {
    Outcome.OK: "[green]ok[/green]",
    Outcome.UNCHANGED: "[cyan]unchanged[/cyan]",
    Outcome.CANCELLED: "[yellow]cancelled[/yellow]",
    Outcome.FAILED: "[red]failed[/red]",
    Outcome.ROLLED_BACK: "[yellow]rolled back[/yellow]",
    Outcome.FATAL: "[bold red]FATAL[/bold red]",
}
_STEP_STYLE = {
    "success": "green",
    "skipped": "cyan",
    "warning": "yellow",
    "error": "red",
}
# Named locks taken after the global lock, per action.
ACTION_LOCKS: dict[Action, tuple[str, ...]] = {
    Action.INSTALL: (BINARY_LOCK_NAME,),
    Action.UPGRADE: (BINARY_LOCK_NAME, SNAPSHOTS_LOCK_NAME),
    Action.MIGRATE: (SNAPSHOTS_LOCK_NAME,),
    Action.BACKUP: (SNAPSHOTS_LOCK_NAME,),
    Action.RESTORE: (SNAPSHOTS_LOCK_NAME,),
}


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        AvalancheGo node deployment CLI.

        Installs, upgrades, migrates, backs up and restores a single
        AvalancheGo node supervised by systemd on Ubuntu.
        """
    ).strip(),
)
snapshots_app = typer.Typer(help="List, verify and prune node snapshots.")
identity_app = typer.Typer(help="Inspect or regenerate the staking identity.")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    templates: TemplateEngine
    store: MaterialStore
    unit: SystemdProvider
    binary: NodeBinary
    installer: ReleaseInstaller
    deployment: DeploymentStore
    rpc: NodeRpcClient


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    service = config.service
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        templates=templates,
        store=MaterialStore(
            config.node_root,
            owner=config.service_user,
            group=config.service_group,
        ),
        unit=SystemdProvider(
            templates=templates,
            unit_name=service.unit_name,
            unit_dir=service.unit_dir,
            systemctl_bin=service.systemctl_bin,
            journalctl_bin=service.journalctl_bin,
            stop_timeout=service.stop_timeout,
            poll_interval=service.poll_interval,
        ),
        binary=NodeBinary(config.binary_path),
        installer=ReleaseInstaller(
            install_root=config.install_root,
            release=config.release,
            binary_name=config.binary_name,
        ),
        deployment=DeploymentStore.for_root(config.node_root),
        rpc=NodeRpcClient(base_url=config.rpc.url, timeout=config.rpc.timeout),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the avanodectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"avanodectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# shared helpers


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc), context=dict(context or {}))
    raise typer.Exit(code=int(rc))


def _node_target(runtime: RuntimeContext) -> dict[str, object]:
    return {
        "kind": "node",
        "root": str(runtime.config.node_root),
        "unit": runtime.unit.unit,
    }


def _step_observer(op: OperationScope) -> Callable[[str, str, str | None], None]:
    def _observe(name: str, status: str, detail: str | None) -> None:
        op.add_step(name, status=status, detail=detail)
        style = _STEP_STYLE.get(status, "white")
        suffix = f" {detail}" if detail else ""
        console.print(f"  [{style}]{status:>7}[/{style}] {name}{suffix}")

    return _observe


def _backup_engine(runtime: RuntimeContext, op: OperationScope | None = None) -> BackupEngine:
    config = runtime.config
    return BackupEngine(
        runtime.store,
        runtime.unit,
        config.backups.root,
        min_archive_bytes=config.backups.min_archive_bytes,
        start_grace=config.service.start_grace,
        health_check=health_probe(runtime.rpc, delay=config.service.start_grace),
        observer=_step_observer(op) if op is not None else None,
    )


def _deployer(runtime: RuntimeContext, op: OperationScope, answers: AnswerSource) -> Deployer:
    observer = _step_observer(op)
    return Deployer(
        config=runtime.config,
        store=runtime.store,
        unit=runtime.unit,
        binary=runtime.binary,
        installer=runtime.installer,
        engine=_backup_engine(runtime, op),
        deployment=runtime.deployment,
        answers=answers,
        rpc=runtime.rpc,
        observer=observer,
    )


def _observe(runtime: RuntimeContext) -> HostObservation:
    return inspect_host(
        store=runtime.store,
        unit=runtime.unit,
        binary=runtime.binary,
        deployment=runtime.deployment,
    )


def _require_preflight(
    runtime: RuntimeContext,
    op: OperationScope,
    extra_commands: Sequence[str] = (),
) -> None:
    report = run_preflight(runtime.config.preflight, extra_commands=extra_commands)
    for result in report.results:
        op.add_step(
            f"preflight.{result.id}",
            status="success" if result.ok else "error",
            detail=result.message,
        )
    try:
        report.raise_for_failures()
    except PreconditionError as exc:
        for result in report.failures:
            console.print(f"[red]x[/red] {result.message}")
            if result.remediation:
                console.print(f"  remediation: {result.remediation}")
        _command_error(op, str(exc), rc=ExitCode.PRECONDITION, errors=exc.failures)


def _exit_code_for(exc: DeploymentError) -> ExitCode:
    if exc.outcome is Outcome.ROLLED_BACK:
        return ExitCode.ROLLED_BACK
    if exc.outcome is Outcome.FATAL:
        return ExitCode.FATAL
    cause = exc.cause
    if isinstance(cause, (SnapshotNotFoundError, NodeConfigError, ValueError)):
        return ExitCode.VALIDATION
    if cause is None or isinstance(cause, PreconditionError):
        return ExitCode.PRECONDITION
    return ExitCode.PROVIDER


def _deployment_failure(op: OperationScope, exc: DeploymentError) -> NoReturn:
    rc = _exit_code_for(exc)
    context: dict[str, object] = {"outcome": exc.outcome.value}
    console.print(f"Outcome: {_OUTCOME_STYLE[exc.outcome]}")
    if exc.snapshot is not None:
        label = "Last good snapshot" if exc.outcome is Outcome.FATAL else "Snapshot"
        console.print(f"{label}: {exc.snapshot.path}")
        context["snapshot"] = str(exc.snapshot.path)
    if exc.outcome is Outcome.FATAL:
        console.print("[bold red]Manual intervention required.[/bold red]")
        if exc.log_tail:
            console.print("Service log tail:")
            for line in exc.log_tail:
                console.print(f"  {line}", markup=False, highlight=False)
        context["log_tail"] = list(exc.log_tail)
    _command_error(op, str(exc), rc=rc, context=context)


def _report_result(op: OperationScope, result: DeploymentResult) -> None:
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    console.print(f"Outcome: {_OUTCOME_STYLE[result.outcome]}")
    if result.outcome is Outcome.CANCELLED:
        console.print(f"[yellow]{result.message}[/yellow]")
        op.warning(result.message, warnings=["user-cancelled"])
        return
    console.print(result.message)
    if result.version:
        console.print(f"Version: {result.version}")
    if result.node_id:
        console.print(f"NodeID: [bold]{result.node_id}[/bold]")
    backups: list[str] = []
    if result.snapshot is not None:
        console.print(f"Snapshot: {result.snapshot.path}")
        backups.append(result.snapshot.id)
    if result.pruned:
        console.print(f"Pruned snapshots: {', '.join(result.pruned)}")
    changed = 0 if result.outcome is Outcome.UNCHANGED else 1
    if result.warnings:
        op.warning(
            result.message,
            warnings=result.warnings,
            changed=changed,
            backups=backups,
            context=result.to_dict(),
        )
    else:
        op.success(result.message, changed=changed, backups=backups, context=result.to_dict())


def _print_decision_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]note:[/yellow] {warning}")


def _perform(
    runtime: RuntimeContext,
    op: OperationScope,
    observation: HostObservation,
    request: Request,
    answers: AnswerSource,
) -> DeploymentResult:
    decision = reconcile(observation, request)
    op.add_step("reconcile", status="success", detail=decision.to_dict())
    if not decision.allowed:
        rc = ExitCode.VALIDATION if decision.invalid else ExitCode.PRECONDITION
        _command_error(
            op,
            decision.rejected or "Request rejected.",
            rc=rc,
            context={"state": decision.state.value},
        )
    _print_decision_warnings(observation.warnings)
    console.print(
        f"Host is [bold]{decision.state.value}[/bold]; "
        f"running {decision.action.value}: {', '.join(decision.steps) or 'nothing'}"
    )
    deployer = _deployer(runtime, op, answers)
    try:
        return deployer.execute(decision, request, observation)
    except DeploymentError as exc:
        _deployment_failure(op, exc)


def _run_request(
    ctx: typer.Context,
    command: str,
    request: Request,
    *,
    yes: bool,
    extra_commands: Sequence[str] = (),
) -> None:
    runtime = _get_runtime(ctx)
    args = {key: value for key, value in _request_args(request).items() if value is not None}
    args["yes"] = yes
    with runtime.logger.operation(command, args=args, target=_node_target(runtime)) as op:
        _require_preflight(runtime, op, extra_commands)
        try:
            with runtime.locks.mutate_node(ACTION_LOCKS.get(request.action, ())) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                observation = _observe(runtime)
                result = _perform(runtime, op, observation, request, answers_for(assume_yes=yes))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        _report_result(op, result)


def _request_args(request: Request) -> dict[str, object]:
    return {
        "action": request.action.value,
        "role": request.role,
        "network": request.network,
        "rpc_scope": request.rpc_scope,
        "allow_public_rpc": request.allow_public_rpc or None,
        "public_ip": request.public_ip,
        "version": request.version,
        "from_source": request.from_source or None,
        "allow_downgrade": request.allow_downgrade or None,
        "snapshot": request.snapshot_id,
        "include_data": request.include_data or None,
        "label": request.label,
    }


# ---------------------------------------------------------------------------
# workflows


@app.command()
def install(
    ctx: typer.Context,
    role: Role = typer.Option(..., "--role", help="Node role: validator, archival or api."),
    network: Network = typer.Option(..., "--network", help="Network to join."),
    rpc_scope: RpcScope | None = typer.Option(
        None,
        "--rpc-scope",
        help="Interfaces the HTTP API listens on (default: loopback).",
    ),
    allow_public_rpc: bool = typer.Option(
        False,
        "--allow-public-rpc",
        help="Permit a public RPC endpoint on a validator.",
    ),
    public_ip: str | None = typer.Option(
        None,
        "--public-ip",
        help="Public IP advertised to peers (default: resolved by the node).",
    ),
    version: str | None = VERSION_OPTION,
    from_source: bool = FROM_SOURCE_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Install, configure and start a new node."""
    request = Request(
        action=Action.INSTALL,
        role=role.value,
        network=network.value,
        rpc_scope=rpc_scope.value if rpc_scope else None,
        allow_public_rpc=allow_public_rpc,
        public_ip=public_ip,
        version=version,
        from_source=from_source,
    )
    extra = ("git",) if from_source else ()
    _run_request(ctx, "install", request, yes=yes, extra_commands=extra)


@app.command()
def upgrade(
    ctx: typer.Context,
    version: str | None = VERSION_OPTION,
    from_source: bool = FROM_SOURCE_OPTION,
    allow_downgrade: bool = typer.Option(
        False,
        "--allow-downgrade",
        help="Allow installing a release older than the current one.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Replace the node binary with another release, rolling back on failure."""
    request = Request(
        action=Action.UPGRADE,
        version=version,
        from_source=from_source,
        allow_downgrade=allow_downgrade,
    )
    extra = ("git",) if from_source else ()
    _run_request(ctx, "upgrade", request, yes=yes, extra_commands=extra)


@app.command()
def migrate(
    ctx: typer.Context,
    role: Role | None = typer.Option(
        None,
        "--role",
        help="Role to assume when it cannot be inferred from the existing config.",
    ),
    network: Network | None = typer.Option(
        None,
        "--network",
        help="Network to use when no node config exists.",
    ),
    allow_public_rpc: bool = typer.Option(
        False,
        "--allow-public-rpc",
        help="Keep a public RPC endpoint on a validator.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Adopt an existing, unmanaged node installation."""
    request = Request(
        action=Action.MIGRATE,
        role=role.value if role else None,
        network=network.value if network else None,
        allow_public_rpc=allow_public_rpc,
    )
    _run_request(ctx, "migrate", request, yes=yes)


@app.command()
def backup(
    ctx: typer.Context,
    include_data: bool = typer.Option(
        False,
        "--include-data",
        help="Also archive the chain data directory (stops the node while archiving).",
    ),
    label: str | None = typer.Option(None, "--label", help="Free-form label for the snapshot."),
    yes: bool = YES_OPTION,
) -> None:
    """Create a verified snapshot of the identity and configuration."""
    request = Request(action=Action.BACKUP, include_data=include_data, label=label)
    _run_request(ctx, "backup", request, yes=yes)


@app.command()
def restore(
    ctx: typer.Context,
    snapshot: str = typer.Option(..., "--snapshot", help="Identifier of the snapshot to restore."),
    yes: bool = YES_OPTION,
) -> None:
    """Restore a snapshot, rolling back to the current state on failure."""
    request = Request(action=Action.RESTORE, snapshot_id=snapshot)
    _run_request(ctx, "restore", request, yes=yes)


@app.command("reconcile")
def reconcile_command(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Show the host state and pick one of the actions it allows."""
    runtime = _get_runtime(ctx)
    menu = InteractiveAnswers()
    with runtime.logger.operation(
        "reconcile",
        args={"yes": yes},
        target=_node_target(runtime),
    ) as op:
        observation = _observe(runtime)
        state = classify(observation)
        _render_observation(observation)
        options = [action.value for action in allowed_actions(state)]
        try:
            choice = Action(
                menu.choose(
                    f"Host is {state.value}. Choose an action:",
                    options,
                    default=Action.CANCEL.value,
                )
            )
            if choice is Action.CANCEL:
                console.print("[yellow]Nothing to do.[/yellow]")
                op.warning("Reconcile cancelled by operator.", warnings=["user-cancelled"])
                return
            request = _interactive_request(runtime, choice, observation, menu)
        except PromptError as exc:
            _command_error(op, str(exc))

        extra = ("git",) if request.from_source else ()
        _require_preflight(runtime, op, extra)
        try:
            with runtime.locks.mutate_node(ACTION_LOCKS.get(request.action, ())) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                # The host may have changed while the operator was choosing.
                observation = _observe(runtime)
                result = _perform(runtime, op, observation, request, answers_for(assume_yes=yes))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        _report_result(op, result)


def _interactive_request(
    runtime: RuntimeContext,
    action: Action,
    observation: HostObservation,
    menu: AnswerSource,
) -> Request:
    if action is Action.INSTALL:
        role = menu.choose("Node role:", [role.value for role in Role], default=Role.API.value)
        network = menu.choose(
            "Network:",
            [network.value for network in Network],
            default=Network.MAINNET.value,
        )
        return Request(action=action, role=role, network=network)
    if action is Action.MIGRATE and observation.config_document is None:
        role = menu.choose("Node role:", [role.value for role in Role], default=Role.API.value)
        network = menu.choose(
            "Network:",
            [network.value for network in Network],
            default=Network.MAINNET.value,
        )
        return Request(action=action, role=role, network=network)
    if action is Action.BACKUP:
        include_data = menu.confirm("Include the chain data directory?", default=False)
        return Request(action=action, include_data=include_data)
    if action is Action.RESTORE:
        snapshots = [snapshot.id for snapshot in reversed(_backup_engine(runtime).list_snapshots())]
        if not snapshots:
            raise PromptError("No snapshots available to restore.")
        snapshot_id = menu.choose("Snapshot to restore:", snapshots, default=snapshots[0])
        return Request(action=action, snapshot_id=snapshot_id)
    return Request(action=action)


# ---------------------------------------------------------------------------
# read-only commands


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report what is installed and which actions are available."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target=_node_target(runtime),
    ) as op:
        observation = _observe(runtime)
        state = classify(observation)
        payload = observation.to_dict()
        payload["state"] = state.value
        actions = [action.value for action in allowed_actions(state)]
        payload["allowed_actions"] = actions
        payload["node_id"] = observation.record.node_id if observation.record else None

        if observation.service is ServiceState.RUNNING:
            try:
                payload["node_id"] = runtime.rpc.node_id()
                payload["bootstrapped"] = runtime.rpc.is_bootstrapped()
            except NodeRpcError as exc:
                observation.warnings.append(f"Node API unavailable: {exc}")
                payload["warnings"] = list(observation.warnings)

        latest = _backup_engine(runtime).latest()
        payload["latest_snapshot"] = latest.id if latest else None

        if json_output:
            console.print_json(data=payload)
        else:
            _render_observation(observation)
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            table.add_row("State", state.value)
            table.add_row("Allowed actions", ", ".join(actions))
            table.add_row("NodeID", str(payload["node_id"] or "-"))
            if "bootstrapped" in payload:
                table.add_row("Bootstrapped", "yes" if payload["bootstrapped"] else "no")
            table.add_row("Latest snapshot", str(payload["latest_snapshot"] or "-"))
            console.print(table)
        op.success("Reported node status.", changed=0, context={"state": state.value})


def _render_observation(observation: HostObservation) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Item")
    table.add_column("Value")
    table.add_row("Node root", str(observation.root))
    presence = "present" if observation.unit_exists else "absent"
    table.add_row("Unit", f"{observation.unit_path} ({presence})")
    table.add_row("Managed", "yes" if observation.managed else "no")
    table.add_row("Service", observation.service.value)
    table.add_row("Binary", str(observation.binary_path or "-"))
    table.add_row("Version", observation.version or "-")
    table.add_row("Role", observation.role or "-")
    table.add_row("Network", observation.network or "-")
    table.add_row("Identity", str(observation.identity_dir or "-"))
    table.add_row("Config", str(observation.config_file or "-"))
    console.print(table)
    for warning in observation.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@app.command()
def logs(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Number of journal lines."),
) -> None:
    """Print the tail of the node service journal."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"lines": lines},
        target=_node_target(runtime),
    ) as op:
        try:
            output = runtime.unit.tail_logs(lines)
        except SupervisorError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        for line in output:
            console.print(line, markup=False, highlight=False)
        op.success(f"Printed {len(output)} journal lines.", changed=0)


# ---------------------------------------------------------------------------
# snapshots


@snapshots_app.command("list")
def snapshots_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List snapshots, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots list",
        args={"json": json_output},
        target={"kind": "snapshots", "root": str(runtime.config.backups.root)},
    ) as op:
        snapshots = _backup_engine(runtime).list_snapshots()
        if json_output:
            console.print_json(data={"snapshots": [snapshot.to_dict() for snapshot in snapshots]})
        elif not snapshots:
            console.print("No snapshots found.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID")
            table.add_column("Created")
            table.add_column("Label")
            table.add_column("Files", justify="right")
            table.add_column("Data")
            for snapshot in snapshots:
                table.add_row(
                    snapshot.id,
                    snapshot.created_at,
                    snapshot.label or "-",
                    str(snapshot.file_count),
                    "yes" if snapshot.include_data else "no",
                )
            console.print(table)
        op.success(f"Listed {len(snapshots)} snapshots.", changed=0)


@snapshots_app.command("verify")
def snapshots_verify(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check a snapshot against its manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots verify",
        args={"snapshot": snapshot_id, "json": json_output},
        target={"kind": "snapshot", "id": snapshot_id},
    ) as op:
        engine = _backup_engine(runtime)
        try:
            report = engine.verify(engine.get(snapshot_id))
        except SnapshotNotFoundError as exc:
            _command_error(op, str(exc))
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            for warning in report.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")
            for violation in report.violations:
                console.print(f"[red]x[/red] {violation}")
            if report.ok:
                console.print(f"[green]Snapshot {snapshot_id} verified.[/green]")
        if not report.ok:
            op.error(
                f"Snapshot {snapshot_id} failed verification.",
                errors=report.violations,
                rc=ExitCode.PRECONDITION,
            )
            raise typer.Exit(code=ExitCode.PRECONDITION)
        if report.warnings:
            op.warning(f"Snapshot {snapshot_id} verified with warnings.", warnings=report.warnings)
        else:
            op.success(f"Snapshot {snapshot_id} verified.", changed=0)


@snapshots_app.command("prune")
def snapshots_prune(
    ctx: typer.Context,
    keep: int | None = typer.Option(
        None,
        "--keep",
        min=1,
        help="Number of newest snapshots to keep (default from config).",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Delete the oldest snapshots beyond the retention count."""
    runtime = _get_runtime(ctx)
    keep_count = keep or runtime.config.backups.keep
    with runtime.logger.operation(
        "snapshots prune",
        args={"keep": keep_count, "yes": yes},
        target={"kind": "snapshots", "root": str(runtime.config.backups.root)},
    ) as op:
        engine = _backup_engine(runtime, op)
        try:
            with runtime.locks.mutate_node([SNAPSHOTS_LOCK_NAME]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                snapshots = engine.list_snapshots()
                excess = max(0, len(snapshots) - keep_count)
                if excess == 0:
                    console.print(f"{len(snapshots)} snapshots present; nothing to prune.")
                    op.success("Nothing to prune.", changed=0)
                    return
                if not yes and not typer.confirm(
                    f"Delete the {excess} oldest snapshots (keeping {keep_count})?",
                    default=True,
                ):
                    console.print("[yellow]Prune cancelled.[/yellow]")
                    op.warning("Prune cancelled by operator.", warnings=["user-cancelled"])
                    return
                removed = engine.prune(keep_count)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        console.print(f"Removed {len(removed)} snapshots: {', '.join(removed) or '-'}")
        op.success(f"Pruned {len(removed)} snapshots.", changed=len(removed))


# ---------------------------------------------------------------------------
# identity


@identity_app.command("show")
def identity_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Describe the staking certificate and the NodeID."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "identity show",
        args={"json": json_output},
        target=_node_target(runtime),
    ) as op:
        try:
            identity = runtime.store.read_identity()
            info = inspect_certificate(identity.certificate, identity.private_key)
        except MaterialError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        except CertificateError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        payload: dict[str, object] = {
            "identity_dir": str(runtime.store.identity_dir),
            "certificate": info.to_dict(),
            "node_id": None,
        }
        record = runtime.deployment.load()
        if record is not None:
            payload["node_id"] = record.node_id
        try:
            payload["node_id"] = runtime.rpc.node_id()
        except NodeRpcError as exc:
            payload.setdefault("warnings", [f"Node API unavailable: {exc}"])

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            table.add_row("Identity", str(runtime.store.identity_dir))
            table.add_row("NodeID", str(payload["node_id"] or "-"))
            table.add_row("Subject", info.subject)
            table.add_row("Fingerprint", info.fingerprint_sha256)
            table.add_row("Valid from", info.not_valid_before.isoformat())
            table.add_row("Valid until", info.not_valid_after.isoformat())
            table.add_row("Key matches", "yes" if info.key_matches else "no")
            console.print(table)
        if info.key_matches is False:
            op.warning("Staking key does not match the certificate.", changed=0)
        else:
            op.success("Described staking identity.", changed=0)


@identity_app.command("regenerate")
def identity_regenerate(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Replace the staking identity with a freshly generated one."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "identity regenerate",
        args={"yes": yes},
        target=_node_target(runtime),
    ) as op:
        _require_preflight(runtime, op)
        try:
            with runtime.locks.mutate_node([SNAPSHOTS_LOCK_NAME]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                observation = _observe(runtime)
                if not observation.managed:
                    _command_error(
                        op,
                        "The identity can only be regenerated on a managed installation.",
                        rc=ExitCode.PRECONDITION,
                    )
                deployer = _deployer(runtime, op, answers_for(assume_yes=yes))
                try:
                    result = deployer.regenerate_identity()
                except DeploymentError as exc:
                    _deployment_failure(op, exc)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.PRECONDITION)
        _report_result(op, result)


app.add_typer(snapshots_app, name="snapshots")
app.add_typer(identity_app, name="identity")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
