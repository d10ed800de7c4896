"""Typer-powered command line interface for ``mnodectl``.

Every command opens a structured operation, resolves the shared
:class:`RuntimeContext` and converts :class:`~mnodectl.errors.NodeManagerError`
into a red message and exit code ``1``. Mutating commands hold the global
registry lock plus the per-node lock for their whole duration.
"""
from __future__ import annotations

import json
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import NodeManagerError, ValidationError
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import NodeOrchestrator, NodeStatus, OperationOutcome
from .ports import PortAllocator, PortProber
from .prompts import ConsolePrompter, InputProvider, NonInteractivePrompter
from .providers import ContainerBackend, NodeBackend, ProcessBackend, SystemdProvider
from .state import NodeMethod, NodeRecord, RegistryStore
from .templates import TemplateEngine

console = Console()

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Marzban multi-node manager.

        Install, edit and remove isolated Marzban-node instances on one host,
        each with its own port pair, certificate and Docker Compose project or
        systemd unit.
        """
    ).strip(),
)
ports_app = typer.Typer(help="Inspect port allocation.")
config_app = typer.Typer(help="Inspect configuration and manage registry settings.")
registry_app = typer.Typer(help="Registry maintenance.")

app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")
app.add_typer(registry_app, name="registry")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mnodectl's YAML config file.",
)
NAME_OPTION = typer.Option(..., "--name", "-n", help="Node name.")
OPTIONAL_NAME_OPTION = typer.Option(None, "--name", "-n", help="Node name.")
SERVICE_PORT_OPTION = typer.Option(
    None,
    "--service-port",
    "-s",
    help="SERVICE_PORT for the node (auto-allocated when omitted).",
)
XRAY_PORT_OPTION = typer.Option(
    None,
    "--xray-port",
    "-x",
    help="XRAY_API_PORT for the node (auto-allocated when omitted).",
)
INBOUNDS_OPTION = typer.Option(
    None,
    "--inbounds",
    "-i",
    help="Comma-separated inbound names to serve (empty for all).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip confirmation prompts and proceed non-interactively.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")


@dataclass
class RuntimeContext:
    """Shared objects constructed once per CLI invocation."""

    config: AppConfig
    store: RegistryStore
    allocator: PortAllocator
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    backends: dict[NodeMethod, NodeBackend]


def _build_backends(
    config: AppConfig,
    templates: TemplateEngine,
) -> dict[NodeMethod, NodeBackend]:
    container_cfg = config.container
    process_cfg = config.process
    systemd_cfg = config.systemd
    systemd = SystemdProvider(
        templates=templates,
        systemd_dir=systemd_cfg.unit_dir,
        systemctl_bin=systemd_cfg.systemctl_bin,
        journalctl_bin=systemd_cfg.journalctl_bin,
        unit_prefix=process_cfg.unit_prefix,
    )
    return {
        NodeMethod.CONTAINER: ContainerBackend(
            templates=templates,
            image=container_cfg.image,
            docker_bin=container_cfg.docker_bin,
            compose_command=container_cfg.compose_command,
            log_tail=container_cfg.log_tail,
            service_protocol=process_cfg.service_protocol,
        ),
        NodeMethod.PROCESS: ProcessBackend(
            templates=templates,
            systemd=systemd,
            repository=process_cfg.repository,
            git_bin=process_cfg.git_bin,
            python_bin=process_cfg.python_bin,
            xray_executable=process_cfg.xray_executable,
            xray_assets=process_cfg.xray_assets,
            xray_install_url=process_cfg.xray_install_url,
            service_protocol=process_cfg.service_protocol,
            log_lines=container_cfg.log_tail,
        ),
    }


def _make_prompter(assume_yes: bool) -> InputProvider:
    if assume_yes or not sys.stdin.isatty():
        return NonInteractivePrompter(console)
    return ConsolePrompter(console)


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
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    store = RegistryStore(config.database)
    try:
        store.ensure_initialized()
    except NodeManagerError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        store=store,
        allocator=PortAllocator(store, PortProber(), config.ports),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        backends=_build_backends(config, templates),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _orchestrator(runtime: RuntimeContext, *, assume_yes: bool = False) -> NodeOrchestrator:
    return NodeOrchestrator(
        runtime.config,
        runtime.store,
        runtime.allocator,
        runtime.backends,
        _make_prompter(assume_yes),
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mnodectl version and exit.",
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
        console.print(f"mnodectl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _cancelled(op: OperationScope, message: str) -> None:
    console.print(f"[yellow]{message}[/yellow]")
    op.success(message, changed=0, context={"cancelled": True})


def _print_warnings(outcome: OperationOutcome) -> None:
    for warning in outcome.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


def _print_kv(label: str, value: object) -> None:
    console.print(f"  [bold]{label + ':':<16}[/bold] {value}")


def _inbounds_label(record: NodeRecord) -> str:
    return record.inbounds_value or "(all inbounds)"


# ----------------------------------------------------------------------
# Lifecycle commands
# ----------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    name: str = NAME_OPTION,
    method: str = typer.Option(
        NodeMethod.CONTAINER.value,
        "--method",
        "-m",
        help="Installation method: container (docker) or process (normal).",
    ),
    service_port: int | None = SERVICE_PORT_OPTION,
    xray_port: int | None = XRAY_PORT_OPTION,
    cert: Path | None = typer.Option(
        None,
        "--cert",
        "-c",
        dir_okay=False,
        help="Path to the client certificate (PEM).",
    ),
    cert_content: str | None = typer.Option(
        None,
        "--cert-content",
        help="Client certificate content (PEM).",
    ),
    inbounds: str | None = INBOUNDS_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Install and start a new node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={
            "method": method,
            "service_port": service_port,
            "xray_port": xray_port,
            "cert": cert,
            "cert_content": bool(cert_content),
            "inbounds": inbounds,
            "yes": yes,
        },
        target={"kind": "node", "name": name},
    ) as op:
        orchestrator = _orchestrator(runtime, assume_yes=yes)
        try:
            with runtime.locks.mutate_nodes([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = orchestrator.install(
                    name,
                    method,
                    service_port=service_port,
                    xray_api_port=xray_port,
                    cert_path=str(cert) if cert is not None else None,
                    cert_content=cert_content,
                    inbounds=inbounds,
                    assume_yes=yes,
                    op=op,
                )
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))

        if outcome.cancelled:
            _cancelled(op, "Installation cancelled.")
            return

        record = outcome.record
        assert record is not None
        _print_warnings(outcome)
        console.print(f"[green]Node '{record.name}' installed successfully.[/green]")
        _print_kv("Method", record.method.value)
        _print_kv("SERVICE_PORT", record.service_port)
        _print_kv("XRAY_API_PORT", record.xray_api_port)
        _print_kv("INBOUNDS", _inbounds_label(record))
        _print_kv("Install Dir", record.install_dir)
        _print_kv("Data Dir", record.data_dir)
        context = {"record": record.to_dict()}
        if outcome.warnings:
            op.warning(
                "Node installed with warnings.",
                warnings=outcome.warnings,
                changed=1,
                context=context,
            )
        else:
            op.success("Node installed.", changed=1, context=context)


@app.command()
def uninstall(
    ctx: typer.Context,
    name: str = NAME_OPTION,
    purge_data: bool | None = typer.Option(
        None,
        "--purge-data/--keep-data",
        help="Remove (or keep) the data directory without asking.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Stop a node, remove its runtime and unregister it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall",
        args={"purge_data": purge_data, "yes": yes},
        target={"kind": "node", "name": name},
    ) as op:
        orchestrator = _orchestrator(runtime, assume_yes=yes)
        try:
            with runtime.locks.mutate_nodes([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = orchestrator.uninstall(
                    name,
                    remove_data=purge_data,
                    assume_yes=yes,
                    op=op,
                )
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))

        if outcome.cancelled:
            _cancelled(op, "Uninstall cancelled.")
            return

        _print_warnings(outcome)
        console.print(f"[green]Node '{name}' uninstalled successfully.[/green]")
        if outcome.warnings:
            op.warning("Node uninstalled with warnings.", warnings=outcome.warnings, changed=1)
        else:
            op.success("Node uninstalled.", changed=1)


@app.command()
def edit(
    ctx: typer.Context,
    name: str = NAME_OPTION,
    service_port: int | None = SERVICE_PORT_OPTION,
    xray_port: int | None = XRAY_PORT_OPTION,
    inbounds: str | None = INBOUNDS_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Change a node's ports or inbound filter and restart it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "edit",
        args={
            "service_port": service_port,
            "xray_port": xray_port,
            "inbounds": inbounds,
            "yes": yes,
        },
        target={"kind": "node", "name": name},
    ) as op:
        orchestrator = _orchestrator(runtime, assume_yes=yes)
        try:
            with runtime.locks.mutate_nodes([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = orchestrator.edit(
                    name,
                    service_port=service_port,
                    xray_api_port=xray_port,
                    inbounds=inbounds,
                    assume_yes=yes,
                    op=op,
                )
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))

        if outcome.cancelled:
            _cancelled(op, "Edit cancelled.")
            return

        record = outcome.record
        assert record is not None
        console.print(f"[green]Node '{name}' updated successfully.[/green]")
        _print_kv("SERVICE_PORT", record.service_port)
        _print_kv("XRAY_API_PORT", record.xray_api_port)
        _print_kv("INBOUNDS", _inbounds_label(record))
        op.success(
            "Node updated.",
            changed=1 if outcome.changed else 0,
            context={"record": record.to_dict()},
        )


@app.command()
def status(
    ctx: typer.Context,
    name: str | None = OPTIONAL_NAME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show live status for one node or all nodes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "node", "name": name} if name else {"kind": "nodes"},
    ) as op:
        try:
            statuses = _orchestrator(runtime).status(name)
        except NodeManagerError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data={"nodes": [entry.to_dict() for entry in statuses]})
            op.success("Reported node status as JSON.", changed=0)
            return

        if name is not None:
            _render_node_detail(statuses[0])
        elif not statuses:
            console.print("No nodes registered. Use 'mnodectl install' to add a node.")
        else:
            _render_status_table(statuses)
        op.success("Reported node status.", changed=0)


def _render_status_table(statuses: Sequence[NodeStatus]) -> None:
    console.print(f"Total nodes: {len(statuses)}")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("Method")
    table.add_column("Ports")
    table.add_column("Status")
    table.add_column("Container/PID")
    for entry in statuses:
        record = entry.record
        state = "[green]● Up[/green]" if entry.running else "[dim]○ Down[/dim]"
        table.add_row(
            record.name,
            record.method.value,
            f"{record.service_port}/{record.xray_api_port}",
            state,
            entry.identifier or "-",
        )
    console.print(table)


def _render_node_detail(entry: NodeStatus) -> None:
    record = entry.record
    state = "[green]up[/green]" if entry.running else "[red]down[/red]"
    console.print(f"[bold]Node: {record.name}[/bold] ({state})")
    _print_kv("Method", record.method.value)
    _print_kv("SERVICE_PORT", record.service_port)
    _print_kv("XRAY_API_PORT", record.xray_api_port)
    _print_kv("INBOUNDS", _inbounds_label(record))
    _print_kv("Install Dir", record.install_dir)
    _print_kv("Data Dir", record.data_dir)
    _print_kv("Container/PID", entry.identifier or "-")
    created = record.created_at.isoformat() if record.created_at else "-"
    _print_kv("Created", created)


def _delegate(ctx: typer.Context, command: str, name: str, verb: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        target={"kind": "node", "name": name},
    ) as op:
        orchestrator = _orchestrator(runtime)
        try:
            with runtime.locks.mutate_nodes([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                getattr(orchestrator, command)(name)
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))
        console.print(f"[green]Node '{name}' {verb}.[/green]")
        op.success(f"Node {verb}.", changed=1)


@app.command()
def start(ctx: typer.Context, name: str = NAME_OPTION) -> None:
    """Start a node."""
    _delegate(ctx, "start", name, "started")


@app.command()
def stop(ctx: typer.Context, name: str = NAME_OPTION) -> None:
    """Stop a node."""
    _delegate(ctx, "stop", name, "stopped")


@app.command()
def restart(ctx: typer.Context, name: str = NAME_OPTION) -> None:
    """Restart a node."""
    _delegate(ctx, "restart", name, "restarted")


@app.command()
def update(ctx: typer.Context, name: str = NAME_OPTION) -> None:
    """Pull the latest image or code for a node and restart it."""
    _delegate(ctx, "update", name, "updated")


@app.command()
def logs(
    ctx: typer.Context,
    name: str = NAME_OPTION,
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream logs until interrupted."),
) -> None:
    """Show recent logs for a node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"follow": follow},
        target={"kind": "node", "name": name},
    ) as op:
        try:
            output = _orchestrator(runtime).logs(name, follow=follow)
        except NodeManagerError as exc:
            _command_error(op, str(exc))
        if output:
            typer.echo(output.rstrip("\n"))
        op.success("Displayed node logs.", changed=0)


@app.command("list")
def list_nodes(ctx: typer.Context) -> None:
    """Print registered node names, one per line."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("list", target={"kind": "nodes"}) as op:
        try:
            names = _orchestrator(runtime).list_names()
        except NodeManagerError as exc:
            _command_error(op, str(exc))
        for node_name in names:
            typer.echo(node_name)
        op.success("Listed nodes.", changed=0, context={"count": len(names)})


# ----------------------------------------------------------------------
# ports
# ----------------------------------------------------------------------
@ports_app.command("list")
def ports_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List ports allocated to managed nodes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            records = runtime.store.list()
        except NodeManagerError as exc:
            _command_error(op, str(exc))

        entries = [
            {
                "name": record.name,
                "service_port": record.service_port,
                "xray_api_port": record.xray_api_port,
            }
            for record in records
        ]
        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port allocations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Node", style="bold")
        table.add_column("SERVICE_PORT")
        table.add_column("XRAY_API_PORT")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry["service_port"]),
                str(entry["xray_api_port"]),
            )
        console.print(table)
        op.success("Reported port allocations.", changed=0)


@ports_app.command("check")
def ports_check(
    ctx: typer.Context,
    port: int = typer.Argument(..., help="Port number to check."),
    name: str | None = typer.Option(
        None,
        "--name",
        "-n",
        help="Treat ports owned by this node as available.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a port is available; exit 1 when it is not."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports check",
        args={"port": port, "name": name, "json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            check = runtime.allocator.check_port(port, excluding_name=name)
        except NodeManagerError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data=check.to_dict())
        elif check.available:
            console.print(f"[green]{check.describe()}[/green]")
        else:
            console.print(f"[red]{check.describe()}[/red]")

        if check.available:
            op.success("Port available.", changed=0, context=check.to_dict())
            return
        op.error(check.describe(), rc=ExitCode.FAILURE, context=check.to_dict())
        raise typer.Exit(code=ExitCode.FAILURE)


@ports_app.command("suggest")
def ports_suggest(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Suggest a free port pair for the next node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports suggest",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            service, xray = runtime.allocator.allocate_pair()
        except NodeManagerError as exc:
            _command_error(op, str(exc))

        payload = {"service_port": service, "xray_api_port": xray}
        if json_output:
            console.print_json(data=payload)
        else:
            console.print("Suggested ports for next node:")
            _print_kv("SERVICE_PORT", f"[green]{service}[/green]")
            _print_kv("XRAY_API_PORT", f"[green]{xray}[/green]")
        op.success("Suggested ports.", changed=0, context=payload)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration and registry settings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        data = runtime.config.to_dict()
        try:
            data["registry"] = runtime.store.list_config()
        except NodeManagerError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = "\n".join(f"{k}: {v}" for k, v in sorted(value.items()))
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("get")
def config_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Registry setting name."),
) -> None:
    """Print a registry setting; exit 1 when it is not set."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config get",
        args={"key": key},
        target={"kind": "config", "key": key},
    ) as op:
        try:
            value = runtime.store.get_config(key)
        except NodeManagerError as exc:
            _command_error(op, str(exc))
        if value is None:
            _command_error(op, f"Setting '{key}' is not set.")
        typer.echo(value)
        op.success("Read setting.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Registry setting name."),
    value: str = typer.Argument(..., help="Value to store."),
) -> None:
    """Store a registry setting."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"key": key, "value": value},
        target={"kind": "config", "key": key},
    ) as op:
        try:
            if key == "schema_version":
                raise ValidationError("Setting 'schema_version' is managed by mnodectl.")
            with runtime.locks.mutate_nodes([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.store.set_config(key, value)
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))
        console.print(f"[green]Set {key} = {value}[/green]")
        op.success("Stored setting.", changed=1)


@config_app.command("unset")
def config_unset(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Registry setting name."),
) -> None:
    """Remove a registry setting."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config unset",
        args={"key": key},
        target={"kind": "config", "key": key},
    ) as op:
        try:
            if key == "schema_version":
                raise ValidationError("Setting 'schema_version' is managed by mnodectl.")
            with runtime.locks.mutate_nodes([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                removed = runtime.store.delete_config(key)
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))
        if removed:
            console.print(f"[green]Removed {key}.[/green]")
        else:
            console.print(f"[yellow]Setting '{key}' was not set.[/yellow]")
        op.success("Removed setting.", changed=1 if removed else 0)


# ----------------------------------------------------------------------
# registry
# ----------------------------------------------------------------------
@registry_app.command("export")
def registry_export(
    ctx: typer.Context,
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        dir_okay=False,
        help="Write the export to this file instead of stdout.",
    ),
) -> None:
    """Export every node record as JSON."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "registry export",
        args={"output": output},
        target={"kind": "registry"},
    ) as op:
        try:
            nodes = runtime.store.export()
        except NodeManagerError as exc:
            _command_error(op, str(exc))

        payload = {"nodes": nodes}
        if output is None:
            console.print_json(data=payload)
            op.success("Exported registry.", changed=0, context={"count": len(nodes)})
            return

        try:
            output.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            _command_error(op, f"Failed to write {output}: {exc}")
        console.print(f"[green]Exported {len(nodes)} node(s) to {output}.[/green]")
        op.success("Exported registry.", changed=0, context={"count": len(nodes)})


@registry_app.command("vacuum")
def registry_vacuum(ctx: typer.Context) -> None:
    """Compact the registry database."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("registry vacuum", target={"kind": "registry"}) as op:
        try:
            with runtime.locks.mutate_nodes([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.store.vacuum()
        except (NodeManagerError, LockTimeoutError) as exc:
            _command_error(op, str(exc))
        console.print("[green]Registry compacted.[/green]")
        op.success("Vacuumed registry.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
