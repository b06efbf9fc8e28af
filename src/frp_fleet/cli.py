"""Non-interactive command line for frp-fleet."""

from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .commands import Fleet
from .common.logging import setup_logging
from .common.utils import parse_duration
from .execution import ExecutionContext, ExecutionOptions, ExitCode
from .models import ProcessRecord, ProcessState, Role, TunnelConfig
from .query import BulkOperation, BulkResult, OptimizationReport
from .settings import FleetSettings
from .store import ImportMode, ImportReport
from .templates import InstantiationReport, Template

app = typer.Typer(
    name="frp-fleet",
    help="Manage a fleet of FRP tunnels: registry, processes and maintenance.",
    no_args_is_help=True,
    add_completion=False,
)

template_app = typer.Typer(help="Manage tunnel templates.", no_args_is_help=True)
app.add_typer(template_app, name="template")

STATE_STYLES = {
    ProcessState.RUNNING: "green",
    ProcessState.STARTING: "cyan",
    ProcessState.STOPPING: "yellow",
    ProcessState.CRASHED: "red",
    ProcessState.UNKNOWN: "magenta",
    ProcessState.STOPPED: "dim",
}


def _fleet(ctx: typer.Context) -> Fleet:
    fleet = ctx.obj
    if not isinstance(fleet, Fleet):
        raise RuntimeError("CLI context not initialized")
    return fleet


def _run(ctx: typer.Context, verb: str, render: Any = None, **params: Any) -> None:
    fleet = _fleet(ctx)
    outcome = fleet.dispatch(verb, **params)
    if outcome.error is None and render is not None:
        render(fleet.context, outcome.value)
    if outcome.exit_code != ExitCode.SUCCESS:
        raise typer.Exit(code=int(outcome.exit_code))


# Rendering


def _render_bulk(context: ExecutionContext, result: BulkResult) -> None:
    for item in result.items:
        if item.ok:
            context.print(f"[green]ok[/green]     {escape(item.name)}: {escape(item.message)}")
        else:
            context.error(f"{item.name}: {item.message}")
    if len(result.items) > 1:
        context.print(
            f"{result.operation.value}: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed ({result.outcome.value})"
        )


def _render_status(context: ExecutionContext, rows: list[tuple[TunnelConfig, ProcessRecord]]) -> None:
    table = Table(title="Tunnels")
    for column in ("Name", "Role", "State", "PID", "Enabled", "Tags"):
        table.add_column(column)
    for tunnel, record in rows:
        style = STATE_STYLES.get(record.state, "")
        table.add_row(
            tunnel.name,
            tunnel.role.value,
            f"[{style}]{record.state.value}[/{style}]" if style else record.state.value,
            str(record.pid or "-"),
            "yes" if tunnel.enabled else "no",
            escape(", ".join(tunnel.tags)),
        )
        if record.state == ProcessState.CRASHED and record.last_exit_reason:
            table.add_row("", "", f"[red]{escape(record.last_exit_reason.splitlines()[-1])}[/red]", "", "", "")
    context.print(table)


def _render_tunnels(context: ExecutionContext, tunnels: list[TunnelConfig]) -> None:
    if not tunnels:
        context.print("No matching tunnels")
        return
    table = Table()
    for column in ("Name", "Role", "Endpoint", "Enabled", "Tags"):
        table.add_column(column)
    for tunnel in tunnels:
        conn = tunnel.connection
        if tunnel.role == Role.SERVER:
            endpoint = f"{conn.bind_addr}:{conn.bind_port}"
        else:
            endpoint = f"{conn.server_addr}:{conn.server_port}"
        table.add_row(tunnel.name, tunnel.role.value, endpoint, "yes" if tunnel.enabled else "no",
                      escape(", ".join(tunnel.tags)))
    context.print(table)


def _render_issues(context: ExecutionContext, results: dict[str, list]) -> None:
    for name, issues in results.items():
        if not issues:
            context.print(f"[green]valid[/green]  {escape(name)}")
        for issue in issues:
            context.warn(f"{name}: {issue}")


def _render_import(context: ExecutionContext, report: ImportReport) -> None:
    prefix = "Would import" if report.dry_run else "Imported"
    context.print(
        f"{prefix} ({report.mode.value}): {len(report.added)} added, "
        f"{len(report.updated)} updated, {len(report.failed)} failed"
    )
    _render_issues(context, {name: issues for name, issues in report.warnings.items() if issues})
    for name, issues in report.failed.items():
        context.error(f"{name}: " + "; ".join(str(issue) for issue in issues))


def _render_optimize(context: ExecutionContext, report: OptimizationReport) -> None:
    actions = report.actions()
    if not actions:
        context.print("Nothing to clean up")
        return
    verb = "Applied" if report.applied else "Proposed"
    context.print(f"{verb} cleanup:")
    for action in actions:
        context.print(f"  - {escape(action)}")
    if not report.applied:
        context.print("Run 'frp-fleet optimize --apply' to clean up")


def _render_warnings(context: ExecutionContext, warnings: list) -> None:
    for issue in warnings:
        context.warn(str(issue))
    context.print("Tunnel added")


def _render_text(context: ExecutionContext, text: str) -> None:
    context.print(text, markup=False, highlight=False, end="")


def _render_backups(context: ExecutionContext, backups: list[Path]) -> None:
    if not backups:
        context.print("No backups")
    for backup in backups:
        context.print(str(backup), markup=False, highlight=False)


def _render_templates(context: ExecutionContext, templates: list[Template]) -> None:
    if not templates:
        context.print("No templates")
        return
    table = Table(title="Templates")
    for column in ("Name", "Version", "Variables", "Tags", "Description"):
        table.add_column(column)
    for template in templates:
        table.add_row(
            template.name,
            template.version,
            escape(", ".join(template.variables)),
            escape(", ".join(template.tags)),
            escape(template.description),
        )
    context.print(table)


def _render_template(context: ExecutionContext, template: Template) -> None:
    context.print(template.content, markup=False, highlight=False, end="")


def _render_template_created(context: ExecutionContext, template: Template) -> None:
    variables = ", ".join(template.variables) or "none"
    context.print(f"Template created: {escape(template.name)} (variables: {escape(variables)})")


def _render_template_deleted(context: ExecutionContext, name: str) -> None:
    context.print(f"Template deleted: {escape(name)}")


def _render_instantiated(context: ExecutionContext, result: tuple[TunnelConfig, list]) -> None:
    tunnel, warnings = result
    for issue in warnings:
        context.warn(str(issue))
    context.print(f"Tunnel added: {escape(tunnel.name)}")


def _render_instantiation(context: ExecutionContext, report: InstantiationReport) -> None:
    for name in report.added:
        context.print(f"[green]ok[/green]     {escape(name)}")
    _render_issues(context, {name: issues for name, issues in report.warnings.items() if issues})
    for row, issues in report.failed.items():
        context.error(f"{row}: " + "; ".join(str(issue) for issue in issues))
    context.print(f"{report.template}: {len(report.added)} added, {len(report.failed)} failed", markup=False)


def _render_version(context: ExecutionContext, versions: dict) -> None:
    context.print(f"frp-fleet {__version__}")
    for role, (binary, version) in versions.items():
        context.print(f"{role.value}: {version} ({binary or 'no binary'})", markup=False)


# Commands


@app.callback()
def _root(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Assume yes for every confirmation."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print errors."),
    timeout: str | None = typer.Option(None, "--timeout", help="Deadline such as 30, 30s, 2m or 1h."),
    config_dir: Path | None = typer.Option(None, "--config-dir", help="Registry and runtime directory."),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    err_console = Console(stderr=True)
    try:
        setup_logging(level=log_level, json_format=json_logs)
        settings = FleetSettings.from_env(config_dir=config_dir)
        seconds = parse_duration(timeout) if timeout is not None else settings.default_timeout
    except ValueError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from None

    options = ExecutionOptions(assume_yes=yes, quiet=quiet, timeout=seconds)
    ctx.obj = Fleet(settings, ExecutionContext(options, err_console=err_console))


@app.command()
def start(
    ctx: typer.Context,
    selector: str = typer.Argument(..., help="Name, glob, tag:<tag>, role:<role> or all."),
    parallel: int = typer.Option(1, "--parallel", min=1, help="Tunnels to start concurrently."),
) -> None:
    """Start tunnels."""
    _run(ctx, "start", _render_bulk, selector=selector, parallel=parallel)


@app.command()
def stop(
    ctx: typer.Context,
    selector: str = typer.Argument(...),
    force: bool = typer.Option(False, "--force", help="Kill without waiting for a graceful exit."),
    parallel: int = typer.Option(1, "--parallel", min=1),
) -> None:
    """Stop tunnels (asks for confirmation)."""
    _run(ctx, "stop", _render_bulk, selector=selector, graceful=not force, parallel=parallel)


@app.command()
def restart(
    ctx: typer.Context,
    selector: str = typer.Argument(...),
    parallel: int = typer.Option(1, "--parallel", min=1),
) -> None:
    """Restart tunnels."""
    _run(ctx, "restart", _render_bulk, selector=selector, parallel=parallel)


@app.command()
def status(ctx: typer.Context, selector: str | None = typer.Argument(None)) -> None:
    """Show tunnel process state."""
    _run(ctx, "status", _render_status, selector=selector)


@app.command()
def add(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    role: Role = typer.Option(..., "--role"),
    server_addr: str | None = typer.Option(None, "--server-addr"),
    server_port: int | None = typer.Option(None, "--server-port"),
    bind_port: int | None = typer.Option(None, "--bind-port"),
    token: str | None = typer.Option(None, "--token", help="Auth token shared by server and clients."),
    protocol: str = typer.Option("tcp", "--protocol"),
    proxy: list[str] = typer.Option([], "--proxy", help="NAME:TYPE:LOCAL_PORT[:REMOTE_PORT], repeatable."),
    domain: list[str] = typer.Option([], "--domain", help="Custom domain for http/https proxies."),
    tag: list[str] = typer.Option([], "--tag"),
    disabled: bool = typer.Option(False, "--disabled"),
    config_version: str | None = typer.Option(None, "--config-version"),
    description: str | None = typer.Option(None, "--description"),
) -> None:
    """Add a tunnel to the registry."""
    proxies = []
    for raw in proxy:
        parts = raw.split(":")
        if len(parts) not in (3, 4) or not all(p.isdigit() for p in parts[2:]):
            raise typer.BadParameter(f"expected NAME:TYPE:LOCAL_PORT[:REMOTE_PORT], got '{raw}'")
        entry: dict[str, Any] = {"name": parts[0], "type": parts[1], "local_port": int(parts[2])}
        if len(parts) == 4:
            entry["remote_port"] = int(parts[3])
        if parts[1] in ("http", "https"):
            entry["custom_domains"] = list(domain)
        proxies.append(entry)

    connection: dict[str, Any] = {
        "server_addr": server_addr,
        "server_port": server_port,
        "bind_port": bind_port,
        "auth_token": token,
        "protocol": protocol,
        "proxies": proxies,
    }
    tunnel: dict[str, Any] = {
        "name": name,
        "role": role,
        "connection": connection,
        "tags": tag,
        "enabled": not disabled,
        "description": description,
    }
    if config_version:
        tunnel["config_version"] = config_version
    _run(ctx, "add", _render_warnings, tunnel=tunnel)


@app.command()
def remove(ctx: typer.Context, selector: str = typer.Argument(...)) -> None:
    """Stop and remove tunnels (asks for confirmation)."""
    _run(ctx, "remove", _render_bulk, selector=selector)


@app.command()
def tag(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tunnel name or selector."),
    label: str = typer.Argument(..., metavar="TAG"),
    remove: bool = typer.Option(False, "--remove", help="Remove the tag instead."),
) -> None:
    """Add or remove a tag."""
    _run(ctx, "tag", _render_bulk, selector=name, tag=label, remove=remove)


@app.command()
def bulk(
    ctx: typer.Context,
    operation: BulkOperation = typer.Argument(...),
    selector: str = typer.Argument(...),
    label: str | None = typer.Option(None, "--tag", help="Tag for tag/untag."),
    parallel: int = typer.Option(1, "--parallel", min=1),
) -> None:
    """Apply one operation to every selected tunnel."""
    _run(ctx, "bulk", _render_bulk, operation=operation, selector=selector, tag=label, parallel=parallel)


@app.command()
def search(ctx: typer.Context, query: list[str] = typer.Argument(..., help="Terms such as tag:prod or 6000.")) -> None:
    """Search tunnels; all terms must match."""
    _run(ctx, "search", _render_tunnels, query=" ".join(query))


@app.command()
def validate(ctx: typer.Context, target: str = typer.Argument(..., help="Export file or selector.")) -> None:
    """Validate an export file or registry tunnels."""
    _run(ctx, "validate", _render_issues, target=target)


@app.command("export")
def export_(
    ctx: typer.Context,
    path: Path | None = typer.Argument(None, help="Output file; stdout when omitted."),
    selector: str | None = typer.Option(None, "--selector", "-s"),
) -> None:
    """Export tunnels to a YAML blob."""
    render = None if path is not None else _render_text
    _run(ctx, "export", render, path=path, selector=selector)


@app.command("import")
def import_(
    ctx: typer.Context,
    path: Path = typer.Argument(...),
    mode: ImportMode = typer.Option(ImportMode.MERGE, "--mode"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without saving."),
) -> None:
    """Import tunnels from an export blob."""
    _run(ctx, "import", _render_import, path=path, mode=mode, dry_run=dry_run)


@app.command()
def optimize(
    ctx: typer.Context,
    apply: bool = typer.Option(False, "--apply", help="Apply the cleanup (asks for confirmation)."),
) -> None:
    """Reconcile processes and report orphans, stale files and crashed tunnels."""
    _run(ctx, "optimize", _render_optimize, apply=apply)


@app.command()
def backups(
    ctx: typer.Context,
    restore: str | None = typer.Option(None, "--restore", help="Backup file to restore."),
) -> None:
    """List registry backups or restore one."""
    _run(ctx, "backups", _render_backups, restore=restore)


@app.command()
def version(ctx: typer.Context) -> None:
    """Show frp-fleet and detected FRP versions."""
    _run(ctx, "version", _render_version)


@template_app.command("list")
def template_list(ctx: typer.Context) -> None:
    """List stored templates."""
    _run(ctx, "template-list", _render_templates)


@template_app.command("show")
def template_show(ctx: typer.Context, name: str = typer.Argument(...)) -> None:
    """Print a template."""
    _run(ctx, "template-show", _render_template, name=name)


@template_app.command("create")
def template_create(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    source: Path = typer.Argument(..., help="YAML file with ${VAR} placeholders."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing template (asks for confirmation)."),
) -> None:
    """Store a template from a file."""
    _run(ctx, "template-create", _render_template_created, name=name, source=source, overwrite=force)


@template_app.command("delete")
def template_delete(ctx: typer.Context, name: str = typer.Argument(...)) -> None:
    """Delete a template (asks for confirmation)."""
    _run(ctx, "template-delete", _render_template_deleted, name=name)


@template_app.command("instantiate")
def template_instantiate(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    var: list[str] = typer.Option([], "--var", help="KEY=VALUE, repeatable."),
) -> None:
    """Add one tunnel rendered from a template."""
    _run(ctx, "template-instantiate", _render_instantiated, name=name, variables=var)


@template_app.command("bulk")
def template_bulk(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    rows: Path = typer.Argument(..., help="CSV with a header row, or a YAML list of mappings."),
) -> None:
    """Add one tunnel per row of variables."""
    _run(ctx, "template-bulk", _render_instantiation, name=name, rows=rows)


def main() -> None:
    app()
