"""Typer-powered command line interface for ``labctl``.

``plan``/``apply``/``destroy`` drive the resource planner and applier against
the configured backend; ``bootstrap`` and ``verify`` run on the lab host
itself. Every command records one structured operation in ``operations.jsonl``
and exits with a code from :class:`labctl.exit_codes.ExitCode`.
"""
from __future__ import annotations

import json
import signal
import textwrap
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .applier import (
    Applier,
    ApplyReport,
    CancelToken,
    OperationResult,
    OperationStatus,
    RetryPolicy,
)
from .backends import BackendError, ResourceBackend, SandboxBackend
from .bootstrap import (
    BootstrapLog,
    BootstrapLogError,
    BootstrapReport,
    BootstrapRunner,
    BootstrapStep,
    HostShell,
    StepStatus,
    lab_sequence,
    next_steps,
    service_urls,
)
from .bootstrap.notes import UNKNOWN_HOST
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .graph import GraphError, ResourceGraph, build_graph
from .health import (
    Connector,
    HealthEngine,
    HealthReport,
    ProbeContext,
    ProbeOptions,
    ProbeStatus,
    collect_probes,
    tcp_connect,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .planner import Plan, Planner
from .providers import ProviderRegistry
from .sensitive import mask
from .state import StateRecord, StateStore, StateStoreError
from .topology import declarations_for

console = Console(soft_wrap=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to labctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
YES_OPTION = typer.Option(False, "--yes", "-y", help="Skip the interactive approval prompt.")
NO_REFRESH_OPTION = typer.Option(
    False,
    "--no-refresh",
    help="Plan from recorded state only; do not observe the backend for drift.",
)

_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_STEP_STATUS_STYLE = {
    StepStatus.PENDING: "[dim]pending[/dim]",
    StepStatus.RUNNING: "[cyan]running[/cyan]",
    StepStatus.SUCCEEDED: "[green]succeeded[/green]",
    StepStatus.FAILED: "[red]failed[/red]",
    StepStatus.SKIPPED: "[blue]skipped[/blue]",
}
_OPERATION_STATUS_STYLE = {
    OperationStatus.SUCCEEDED: "[green]ok[/green]",
    OperationStatus.FAILED: "[red]failed[/red]",
    OperationStatus.BLOCKED: "[yellow]blocked[/yellow]",
    OperationStatus.CANCELLED: "[yellow]cancelled[/yellow]",
}
_OUTCOME_EXIT_CODES = {
    "success": ExitCode.OK,
    "partial": ExitCode.PARTIAL,
    "failed": ExitCode.PROVIDER,
    "cancelled": ExitCode.INTERRUPTED,
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision and bootstrap a single-host CI lab (Jenkins, Docker,
        SonarQube, Trivy).

        Resources are planned against recorded state and applied in
        dependency order; the host bootstrap is an idempotent, sequential
        step runner.
        """
    ).strip(),
)
state_app = typer.Typer(help="Inspect recorded resource state.")
bootstrap_app = typer.Typer(help="Configure the lab host (run on the instance).")
app.add_typer(state_app, name="state")
app.add_typer(bootstrap_app, name="bootstrap")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    store: StateStore | None = None
    backend: ResourceBackend | None = None
    providers: ProviderRegistry | None = None


def _build_backend(config: AppConfig) -> ResourceBackend:
    """Return the resource backend selected by *config*."""
    return SandboxBackend(config.backend.sandbox_file, settle_polls=config.backend.settle_polls)


def _build_host_shell() -> HostShell:
    """Return the shell used for bootstrap commands and health probes."""
    return HostShell()


def _build_connector() -> Connector:
    """Return the function the port checks use to open TCP connections."""
    return tcp_connect


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
        console.print(f"[red]Configuration error:[/red] {exc}", highlight=False)
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _resource_runtime(
    runtime: RuntimeContext, op: OperationScope
) -> tuple[StateStore, ProviderRegistry]:
    """Open the state store and backend on first use."""
    store = runtime.store
    if store is None:
        try:
            store = StateStore(runtime.config.state_file)
        except StateStoreError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        for warning in store.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)
        runtime.store = store
    providers = runtime.providers
    if providers is None:
        try:
            backend = _build_backend(runtime.config)
        except BackendError as exc:
            _command_error(op, f"Backend unavailable: {exc.message}", rc=ExitCode.ENVIRONMENT)
        providers = ProviderRegistry.for_backend(backend)
        runtime.backend = backend
        runtime.providers = providers
    return store, providers


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the labctl version and exit.",
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
            console.print(f"labctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _emit_text(text: str) -> None:
    console.print(text, markup=False, highlight=False, end="" if text.endswith("\n") else "\n")


def _emit_json(payload: object) -> None:
    console.print(json.dumps(payload, indent=2, sort_keys=True), markup=False, highlight=False)


def _load_graph(runtime: RuntimeContext, op: OperationScope) -> ResourceGraph:
    try:
        graph = build_graph(declarations_for(runtime.config))
    except GraphError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    op.add_step("graph.build", detail={"resources": len(graph), "version": graph.version})
    return graph


def _plan_changes(
    op: OperationScope,
    graph: ResourceGraph,
    store: StateStore,
    providers: ProviderRegistry,
    *,
    refresh: bool,
) -> Plan:
    try:
        return Planner(graph, store, providers.observe).plan(refresh=refresh)
    except GraphError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    except BackendError as exc:
        _command_error(op, f"Refresh failed: {exc.message}", rc=ExitCode.PROVIDER)


def _lock_names(graph: ResourceGraph | None, store: StateStore) -> list[str]:
    names = {record.name for record in store.list()}
    if graph is not None:
        names.update(graph.names)
    return sorted(names)


@contextmanager
def _cancel_on_interrupt(token: CancelToken) -> Iterator[None]:
    """Turn SIGINT into a cancellation request for the running apply."""

    def _handler(signum: int, frame: object) -> None:
        console.print(
            "[yellow]Interrupt received; finishing in-flight operations.[/yellow]"
        )
        token.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread; cancellation stays programmatic only.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _render_apply_report(report: ApplyReport) -> None:
    for result in report.results:
        label = _OPERATION_STATUS_STYLE[result.status]
        console.print(
            f"{label} {result.action.value} {result.name} ({result.resource_type})",
            highlight=False,
        )
        if result.error:
            console.print(f"  error: {result.error}", markup=False, highlight=False)
    counts = report.counts()
    console.print(
        "Apply {outcome}: {created} created, {updated} updated, {destroyed} destroyed, "
        "{failed} failed, {blocked} blocked, {cancelled} cancelled.".format(
            outcome=report.outcome, **counts
        ),
        highlight=False,
    )


def _record_progress(op: OperationScope) -> Callable[[OperationResult], None]:
    def _on_event(result: OperationResult) -> None:
        op.add_step(
            f"{result.action.value}:{result.name}",
            status=result.status.value,
            detail={"attempts": result.attempts, "error": result.error},
        )

    return _on_event


def _finish_apply(op: OperationScope, report: ApplyReport, verb: str) -> None:
    context = {"report": report.to_dict()}
    changed = report.created + report.updated + report.destroyed
    exit_code = _OUTCOME_EXIT_CODES[report.outcome]
    failures = [
        f"{result.key}: {result.error}"
        for result in report.results
        if result.status in (OperationStatus.FAILED, OperationStatus.BLOCKED)
    ]
    if exit_code is ExitCode.OK:
        op.success(f"{verb} completed.", changed=changed, context=context)
        return
    message = f"{verb} finished with outcome '{report.outcome}'."
    op.error(
        message,
        errors=failures or [message],
        rc=int(exit_code),
        changed=changed,
        context=context,
    )
    raise typer.Exit(code=int(exit_code))


def _run_plan(
    runtime: RuntimeContext,
    store: StateStore,
    providers: ProviderRegistry,
    plan: Plan,
    graph: ResourceGraph | None,
    op: OperationScope,
    *,
    max_concurrency: int,
    verb: str,
) -> None:
    token = CancelToken()
    applier = Applier(
        store,
        providers,
        policy=RetryPolicy.from_config(runtime.config.backend),
        max_concurrency=max_concurrency,
        cancel=token,
        on_event=_record_progress(op),
    )
    with _cancel_on_interrupt(token):
        report = applier.apply(plan, graph)
    _render_apply_report(report)
    _finish_apply(op, report, verb)


# ---------------------------------------------------------------------------
# Resource commands
# ---------------------------------------------------------------------------


@app.command()
def plan(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    no_refresh: bool = NO_REFRESH_OPTION,
) -> None:
    """Show what ``apply`` would change."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"json": json_output, "refresh": not no_refresh},
        target={"kind": "lab", "scope": runtime.config.lab.name},
    ) as op:
        graph = _load_graph(runtime, op)
        store, providers = _resource_runtime(runtime, op)
        result = _plan_changes(op, graph, store, providers, refresh=not no_refresh)
        if json_output:
            _emit_json(result.to_dict())
        else:
            _emit_text(result.render())
        op.success(
            result.summary_line() if not result.is_empty else "No changes.",
            changed=0,
            context={"summary": result.counts(), "drift": len(result.drift)},
        )


@app.command()
def apply(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    accept_drift: bool = typer.Option(
        False,
        "--accept-drift",
        help="Proceed even though resources changed outside labctl.",
    ),
    no_refresh: bool = NO_REFRESH_OPTION,
    max_concurrency: int | None = typer.Option(
        None,
        "--max-concurrency",
        min=1,
        help="Maximum operations dispatched in parallel within one level.",
    ),
) -> None:
    """Plan, ask for approval, then create/update/delete resources."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={
            "yes": yes,
            "accept_drift": accept_drift,
            "refresh": not no_refresh,
            "max_concurrency": max_concurrency,
        },
        target={"kind": "lab", "scope": runtime.config.lab.name},
    ) as op:
        graph = _load_graph(runtime, op)
        store, providers = _resource_runtime(runtime, op)
        try:
            with runtime.locks.mutate_resources(_lock_names(graph, store)) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                store.reload()
                result = _plan_changes(op, graph, store, providers, refresh=not no_refresh)
                _emit_text(result.render())
                if result.drift and not accept_drift:
                    _command_error(
                        op,
                        f"{len(result.drift)} resource(s) drifted outside labctl. "
                        "Review the plan and re-run with --accept-drift to reconcile.",
                        rc=ExitCode.DRIFT,
                        errors=[f"{item.name}: {item.kind}" for item in result.drift],
                    )
                if result.is_empty:
                    op.success("No changes.", changed=0)
                    return
                if not yes and not typer.confirm("Apply these changes?", default=False):
                    console.print("Apply cancelled; no changes were made.")
                    op.warning("Apply declined by user.", warnings=["declined"], changed=0)
                    raise typer.Exit(code=ExitCode.DECLINED)
                _run_plan(
                    runtime,
                    store,
                    providers,
                    result,
                    graph,
                    op,
                    max_concurrency=max_concurrency or runtime.config.backend.max_concurrency,
                    verb="Apply",
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except StateStoreError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


@app.command()
def destroy(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
) -> None:
    """Delete every recorded resource in reverse dependency order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"yes": yes},
        target={"kind": "lab", "scope": runtime.config.lab.name},
    ) as op:
        store, providers = _resource_runtime(runtime, op)
        try:
            with runtime.locks.mutate_resources(_lock_names(None, store)) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                store.reload()
                result = Planner(None, store).plan_destroy()
                _emit_text(result.render())
                if result.is_empty:
                    op.success("Nothing to destroy.", changed=0)
                    return
                if not yes and not typer.confirm(
                    "Destroy all recorded resources?", default=False
                ):
                    console.print("Destroy cancelled; no changes were made.")
                    op.warning("Destroy declined by user.", warnings=["declined"], changed=0)
                    raise typer.Exit(code=ExitCode.DECLINED)
                _run_plan(
                    runtime,
                    store,
                    providers,
                    result,
                    None,
                    op,
                    max_concurrency=runtime.config.backend.max_concurrency,
                    verb="Destroy",
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except StateStoreError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


@dataclass(frozen=True)
class LabOutputs:
    """What an operator needs to reach the lab host."""

    instance: str
    instance_id: str | None
    public_ip: str | None
    public_dns: str | None
    urls: Mapping[str, str]
    ssh: str
    private_key_path: Path
    next_steps: Sequence[str]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the outputs."""
        return {
            "instance": self.instance,
            "instance_id": self.instance_id,
            "public_ip": self.public_ip,
            "public_dns": self.public_dns,
            "urls": dict(self.urls),
            "ssh": self.ssh,
            "private_key_path": str(self.private_key_path),
            "next_steps": list(self.next_steps),
        }


def _lab_outputs(config: AppConfig, store: StateStore) -> LabOutputs | None:
    instance = next(
        (record for record in store.list() if record.type == "compute-instance"), None
    )
    if instance is None:
        return None
    address = instance.outputs.get("public_ip")
    dns = instance.outputs.get("public_dns")
    urls = service_urls(str(dns or address), config.lab.ports)
    ssh_port = config.lab.ports.get("ssh", 22)
    key_path = config.lab.key.private_key_path
    ssh = f"ssh -i {key_path} {config.lab.instance.user}@{address}"
    if ssh_port != 22:
        ssh += f" -p {ssh_port}"
    return LabOutputs(
        instance=instance.name,
        instance_id=instance.resource_id,
        public_ip=str(address) if address else None,
        public_dns=str(dns) if dns else None,
        urls=urls,
        ssh=ssh,
        private_key_path=key_path,
        next_steps=next_steps(urls, config.bootstrap.docker_users),
    )


def _render_next_steps(lines: Sequence[str]) -> None:
    if not lines:
        return
    console.print("Next steps:", style="bold", highlight=False)
    for line in lines:
        console.print(f"  {line}", markup=False, highlight=False)


@app.command()
def output(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the lab's address, service URLs, SSH command and next steps."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "output",
        args={"json": json_output},
        target={"kind": "lab", "scope": runtime.config.lab.name},
    ) as op:
        store, _ = _resource_runtime(runtime, op)
        outputs = _lab_outputs(runtime.config, store)
        if outputs is None:
            _command_error(
                op,
                "No compute instance is recorded in state. Run 'labctl apply' first.",
                rc=ExitCode.ENVIRONMENT,
            )
        if json_output:
            _emit_json(outputs.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Output", style="bold")
            table.add_column("Value")
            table.add_row("public_ip", str(outputs.public_ip))
            table.add_row("public_dns", str(outputs.public_dns))
            for service, url in outputs.urls.items():
                table.add_row(f"{service}_url", url)
            table.add_row("ssh", outputs.ssh)
            console.print(table)
            _render_next_steps(outputs.next_steps)
        op.success("Reported lab outputs.", changed=0)


@app.command()
def graph(ctx: typer.Context) -> None:
    """Print the dependency graph in Graphviz DOT format."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "graph",
        target={"kind": "lab", "scope": runtime.config.lab.name},
    ) as op:
        resource_graph = _load_graph(runtime, op)
        _emit_text(resource_graph.to_dot())
        op.success("Rendered dependency graph.", changed=0)


# ---------------------------------------------------------------------------
# State commands
# ---------------------------------------------------------------------------


def _masked_record(record: StateRecord) -> dict[str, object]:
    payload = record.to_dict()
    payload["outputs"] = mask(payload["outputs"])
    return payload


@state_app.command("list")
def state_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded resources in declaration order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state list",
        args={"json": json_output},
        target={"kind": "state", "scope": "resources"},
    ) as op:
        store, _ = _resource_runtime(runtime, op)
        records = store.list()
        if json_output:
            _emit_json(
                {
                    "serial": store.serial,
                    "lineage": store.lineage,
                    "resources": [
                        {
                            "name": record.name,
                            "type": record.type,
                            "resource_id": record.resource_id,
                            "status": record.status,
                        }
                        for record in records
                    ],
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Type")
            table.add_column("ID")
            table.add_column("Status")
            if not records:
                table.add_row("(none)", "", "", "")
            for record in records:
                table.add_row(record.name, record.type, record.resource_id or "", record.status)
            console.print(table)
        op.success("Listed state records.", changed=0, context={"count": len(records)})


@state_app.command("show")
def state_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Logical resource name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one recorded resource; sensitive outputs are masked."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state show",
        args={"json": json_output},
        target={"kind": "resource", "name": name},
    ) as op:
        store, _ = _resource_runtime(runtime, op)
        record = store.get(name)
        if record is None:
            _command_error(
                op, f"Resource '{name}' is not recorded in state.", rc=ExitCode.VALIDATION
            )
        payload = _masked_record(record)
        if json_output:
            _emit_json(payload)
        else:
            _emit_text(json.dumps(payload, indent=2, sort_keys=True, default=str))
        op.success(f"Showed resource '{name}'.", changed=0)


# ---------------------------------------------------------------------------
# Host commands
# ---------------------------------------------------------------------------


def _health_report(config: AppConfig, shell: HostShell) -> HealthReport:
    context = ProbeContext(
        shell=shell,
        ports=config.lab.ports,
        sonarqube_container=config.bootstrap.sonarqube_container,
        options=ProbeOptions(
            connect_timeout=config.bootstrap.probe_timeout, connect=_build_connector()
        ),
    )
    return HealthEngine(context).run(collect_probes(context))


def _render_health_report(report: HealthReport) -> None:
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} "
            + escape(f"[{result.category}] {result.id}: {result.message}"),
            highlight=False,
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}", markup=False, highlight=False)
        containers = (result.data or {}).get("containers")
        if containers:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Container", style="bold")
            table.add_column("Image")
            table.add_column("Status")
            for container in containers:
                table.add_row(container["name"], container["image"], container["status"])
            console.print(table)
    console.print(report.summary.line(), highlight=False)


def _render_bootstrap_report(report: BootstrapReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="bold")
    table.add_column("Policy")
    table.add_column("Status")
    table.add_column("Detail")
    for step in report.steps:
        table.add_row(step.name, step.policy.value, _STEP_STATUS_STYLE[step.status], step.message)
    console.print(table)
    console.print(report.summary_line(), highlight=False)


@bootstrap_app.command("run")
def bootstrap_run(
    ctx: typer.Context,
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        dir_okay=False,
        help="Append the bootstrap log here instead of the configured path.",
    ),
    skip_verify: bool = typer.Option(
        False,
        "--skip-verify",
        help="Do not run the verification probes after the steps.",
    ),
) -> None:
    """Run the host bootstrap sequence, then verify the services."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    log_path = log_file or config.bootstrap.log_file
    with runtime.logger.operation(
        "bootstrap run",
        args={"log_file": log_path, "skip_verify": skip_verify},
        target={"kind": "host", "scope": "bootstrap"},
    ) as op:
        try:
            steps = lab_sequence(config.bootstrap, config.lab.ports)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        shell = _build_host_shell()

        def _on_step(step: BootstrapStep, status: StepStatus, message: str) -> None:
            if status is StepStatus.RUNNING:
                console.print(f"==> {step.name}: {step.description}", highlight=False)
            op.add_step(step.name, status=status.value, detail=message or None)

        try:
            with BootstrapLog(log_path) as log:
                runner = BootstrapRunner(
                    steps,
                    shell,
                    log,
                    verifier=lambda: _health_report(config, shell),
                    on_step=_on_step,
                    next_steps=next_steps(
                        service_urls(UNKNOWN_HOST, config.lab.ports),
                        config.bootstrap.docker_users,
                    ),
                )
                report = runner.run(verify=not skip_verify)
        except BootstrapLogError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        _render_bootstrap_report(report)
        if report.verification is not None:
            _render_health_report(report.verification)
        _render_next_steps(report.next_steps)

        context = {"report": report.to_dict()}
        changed = report.count(StepStatus.SUCCEEDED)
        if report.failed:
            failed = next(step for step in report.steps if step.name == report.halted_at)
            _command_error(
                op,
                f"Bootstrap halted at '{failed.name}': {failed.message}",
                rc=ExitCode.PROVIDER,
            )
        verification_code = report.verification.summary.exit_code if report.verification else 0
        if verification_code:
            op.error(
                "Bootstrap completed but verification failed.",
                rc=verification_code,
                changed=changed,
                context=context,
            )
            raise typer.Exit(code=verification_code)
        if report.warnings:
            op.warning(
                "Bootstrap completed with warnings.",
                warnings=report.warnings,
                changed=changed,
                context=context,
            )
            return
        op.success("Bootstrap completed.", changed=changed, context=context)


@bootstrap_app.command("check")
def bootstrap_check(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report which bootstrap steps are already satisfied, changing nothing."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "bootstrap check",
        args={"json": json_output},
        target={"kind": "host", "scope": "bootstrap"},
    ) as op:
        try:
            steps = lab_sequence(runtime.config.bootstrap, runtime.config.lab.ports)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        log = BootstrapLog(runtime.config.bootstrap.log_file)
        runner = BootstrapRunner(steps, _build_host_shell(), log)
        report = runner.check()
        if json_output:
            _emit_json(report.to_dict())
        else:
            _render_bootstrap_report(report)
        pending = [step.name for step in report.steps if step.status is StepStatus.PENDING]
        if pending:
            op.warning("Bootstrap steps still needed.", warnings=pending, changed=0)
        else:
            op.success("All bootstrap steps satisfied.", changed=0)


@app.command()
def verify(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Probe the lab services on this host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "verify",
        args={"json": json_output},
        target={"kind": "host", "scope": "health"},
    ) as op:
        report = _health_report(runtime.config, _build_host_shell())
        payload = report.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            _render_health_report(report)
        summary = report.summary
        warning_ids = [r.id for r in report.results if r.status is ProbeStatus.YELLOW]
        error_ids = [r.id for r in report.results if r.status is ProbeStatus.RED]
        if summary.exit_code == 0:
            if summary.status is ProbeStatus.YELLOW:
                op.warning(
                    "Verification passed with warnings.",
                    warnings=warning_ids,
                    context={"report": payload},
                )
            else:
                op.success("Verification passed.", context={"report": payload})
            return
        op.error(
            "Verification failed.",
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context={"report": payload},
        )
        raise typer.Exit(code=summary.exit_code)


def main() -> None:  # pragma: no cover - thin wrapper for python -m
    """Run the CLI."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
