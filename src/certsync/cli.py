"""Typer-powered command line interface for ``certsync``.

``certsync run`` is meant to be invoked by an external scheduler (cron or a
systemd timer). It prints one status line per stage and exits with a code
identifying the failing stage, see :class:`certsync.exit_codes.ExitCode`.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .backups import RetentionPolicy, prune_destinations
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .installer import build_destination
from .locking import LockError, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .sync import CertificateSync, Reporter, SyncOutcome, SyncState

console = Console()

app = typer.Typer(
    help="Rotate TLS certificates for appliances that read them from fixed paths.",
    no_args_is_help=False,
    add_completion=False,
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
backups_app = typer.Typer(help="Manage date-stamped certificate backups.")
app.add_typer(config_app, name="config")
app.add_typer(backups_app, name="backups")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to certsync's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

_STATE_STYLES = {
    SyncState.UP_TO_DATE: "green",
    SyncState.PENDING: "yellow",
    SyncState.DONE: "green",
    SyncState.FAILED: "red",
}


@dataclass(slots=True)
class RuntimeContext:
    """Objects shared by every command of one CLI invocation."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the certsync version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"certsync {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _stage_reporter(op: OperationScope, *, quiet: bool) -> Reporter:
    def report(state: SyncState, message: str) -> None:
        status = "error" if state is SyncState.FAILED else "success"
        op.add_step(f"sync.{state.value}", status=status, detail=message)
        if quiet:
            return
        style = _STATE_STYLES.get(state)
        label = f"[{style}]{state.value}[/{style}]" if style else state.value
        console.print(f"{label}: {message}")

    return report


def _finish_run(op: OperationScope, outcome: SyncOutcome) -> None:
    context: Mapping[str, object] = {"outcome": outcome.to_dict()}
    backups = [str(path) for path in outcome.backups]
    warnings = [str(warning) for warning in outcome.warnings]
    changed = len(outcome.installed)
    if outcome.state is SyncState.FAILED and outcome.error is not None:
        message = f"Certificate sync failed during {outcome.error.stage}."
        if outcome.error.stage == "reload":
            message = (
                "New certificate is installed but the service was not reloaded; "
                "it may still be serving the old certificate."
            )
        op.error(
            message,
            errors=[str(outcome.error)],
            rc=int(outcome.exit_code),
            changed=changed,
            context=context,
        )
        return
    if warnings:
        op.warning(
            "Certificate sync completed with warnings.",
            warnings=warnings,
            changed=changed,
            backups=backups,
            context=context,
        )
        return
    op.success(
        "Certificate sync completed.",
        changed=changed,
        backups=backups,
        context=context,
    )


def _render_outcome(outcome: SyncOutcome, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=outcome.to_dict())
        return
    if outcome.state is SyncState.FAILED and outcome.error is not None:
        if outcome.error.stage == "reload":
            console.print(
                "[red]Reload failed:[/red] new certificate material is installed, "
                "but the service may still be using the old certificate."
            )
        else:
            console.print(f"[red]Certificate sync failed during {outcome.error.stage}.[/red]")
        return
    if outcome.state is SyncState.DONE:
        console.print("[green]Certificate sync complete.[/green]")
    elif outcome.state is SyncState.PENDING:
        console.print("[yellow]Dry run[/yellow]: installed material differs; update pending.")
    else:
        console.print("[green]Nothing to do.[/green]")


@app.command()
def run(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Fetch and compare only; report whether an update is pending.",
    ),
    force_compare: bool = typer.Option(
        False,
        "--force-compare",
        help="Always compare bytes, even when the mtime fast path is configured.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Fetch certificate material and install it when it changed."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    args = {"dry_run": dry_run, "force_compare": force_compare, "json": json_output}
    with runtime.logger.operation(
        "run",
        args=args,
        target={"kind": "destination", **config.destination.to_dict()},
    ) as op:
        try:
            sync = CertificateSync.from_config(
                config,
                force_compare=force_compare,
                reporter=_stage_reporter(op, quiet=json_output),
            )
        except (ConfigError, ValueError) as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.VALIDATION)

        try:
            with runtime.locks.sync_lock() as handle:
                op.add_step("lock.acquire", status="success", detail=f"{handle.wait_ms}ms")
                outcome = sync.run(dry_run=dry_run)
        except LockTimeoutError as exc:
            _command_error(op, f"Another certsync run is in progress: {exc}", rc=ExitCode.LOCKED)
        except LockError as exc:
            _command_error(op, str(exc), rc=ExitCode.LOCKED)

        _finish_run(op, outcome)
        _render_outcome(outcome, json_output=json_output)
    raise typer.Exit(code=int(outcome.exit_code))


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the resolved configuration (tokens redacted)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation("config show", args={"json": json_output}) as op:
        if json_output:
            console.print_json(data=data)
        else:
            table = Table("Key", "Value")
            for key, value in _flatten(data):
                table.add_row(key, "" if value is None else str(value))
            console.print(table)
            missing = runtime.config.missing_settings()
            if missing:
                console.print(f"[yellow]Not yet configured:[/yellow] {', '.join(missing)}")
        op.success("Displayed configuration.", changed=0)


@backups_app.command("prune")
def backups_prune(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="List expired backups without deleting them.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove backups older than the configured retention window."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    retention = RetentionPolicy(days=config.backups.retention_days)
    with runtime.logger.operation(
        "backups prune",
        args={"dry_run": dry_run, "retention_days": retention.days},
    ) as op:
        try:
            destination = build_destination(config.destination)
        except ValueError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.VALIDATION)

        result = prune_destinations(destination.paths(), retention, dry_run=dry_run)
        removed = [str(path) for path in result.removed]
        warnings = [str(warning) for warning in result.warnings]
        if json_output:
            console.print_json(
                data={"dry_run": dry_run, "removed": removed, "warnings": warnings}
            )
        else:
            verb = "Would remove" if dry_run else "Removed"
            for path in removed:
                console.print(f"{verb} {path}")
            for warning in warnings:
                console.print(f"[yellow]Could not remove[/yellow] {warning}")
            console.print(f"{verb} {len(removed)} backup(s) older than {retention.days} days.")
        changed = 0 if dry_run else len(removed)
        if warnings:
            op.warning(
                "Backup pruning completed with warnings.",
                warnings=warnings,
                changed=changed,
            )
        else:
            op.success("Backup pruning completed.", changed=changed, context={"removed": removed})


def _flatten(data: Mapping[str, object], prefix: str = "") -> list[tuple[str, object]]:
    rows: list[tuple[str, object]] = []
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, Mapping):
            rows.extend(_flatten(value, f"{name}."))
        else:
            rows.append((name, value))
    return rows


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
