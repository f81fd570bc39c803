"""Typer-powered command line interface for ``gsdctl``.

Every command opens a structured operation scope so the outcome lands in
``operations.jsonl`` regardless of success, and exits with one of the codes
defined in :mod:`gsdctl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupInfo, BackupManager
from .config import AppConfig, ConfigError, load_config
from .errors import GsdctlError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .migrations import MigrationRegistryError, MigrationRunner
from .sources import SourceAcquirer
from .upgrade import (
    SOURCE_CHOICES,
    UpgradeContext,
    UpgradeOptions,
    UpgradeOrchestrator,
    UpgradeOutcome,
    UpgradePreview,
    UpgradeState,
)
from .versions import LocalSource, RegistrySource, UpgradeSource, Version, VersionResolver

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to gsdctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)
SOURCE_OPTION = typer.Option(
    None,
    "--source",
    help="Upgrade source: 'registry' or 'local' (auto-detected when omitted).",
)
LOCAL_PATH_OPTION = typer.Option(
    None,
    "--local-path",
    help="Directory holding an unpacked toolkit to upgrade from.",
    file_okay=False,
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not ask for confirmation.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Upgrade and recovery tool for an installed GSD for Tabnine toolkit.

        Upgrades fetch the new release from the package registry (or a local
        directory), back up the installation, merge user configuration,
        run migrations and roll back automatically on failure.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    resolver: VersionResolver
    acquirer: SourceAcquirer
    backups: BackupManager
    orchestrator: UpgradeOrchestrator


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    logger = StructuredLogger(config.logs_dir)
    try:
        orchestrator = UpgradeOrchestrator.from_config(config)
    except MigrationRegistryError as exc:
        console.print(f"[red]Migration registry error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        resolver=orchestrator.resolver,
        acquirer=orchestrator.acquirer,
        backups=orchestrator.backups,
        orchestrator=orchestrator,
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
        help="Show the gsdctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"gsdctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
    backups: Sequence[object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, backups=backups)
    raise typer.Exit(code=rc)


def _engine_error(op: OperationScope, exc: GsdctlError) -> NoReturn:
    backups = [exc.backup_path] if exc.backup_path is not None else None
    _command_error(op, str(exc), rc=int(exc.exit_code), backups=backups)


def _upgrade_options(
    op: OperationScope,
    *,
    source: str | None,
    local_path: Path | None,
    version: str | None = None,
    dry_run: bool = False,
    force: bool = False,
) -> UpgradeOptions:
    if source is not None and source not in SOURCE_CHOICES:
        _command_error(op, f"--source must be one of: {', '.join(SOURCE_CHOICES)}.")
    return UpgradeOptions(
        source=source,
        local_path=local_path,
        version=version,
        dry_run=dry_run,
        force=force,
    )


def _parse_version_option(op: OperationScope, value: str | None, label: str) -> Version | None:
    if value is None:
        return None
    try:
        return Version.parse(value)
    except ValueError:
        _command_error(op, f"{label} must be a version like 1.2.0 (got {value!r}).")


# ---------------------------------------------------------------------------
# check / upgrade
# ---------------------------------------------------------------------------


def _detect_check_source(runtime: RuntimeContext, op: OperationScope) -> UpgradeSource:
    probe = runtime.resolver.registry_available()
    if probe.available:
        op.add_step("source.detect", detail="registry reachable")
        return RegistrySource(runtime.config.package_name)
    local, tried = runtime.acquirer.detect_local()
    if local is None:
        tried_text = ", ".join(str(path) for path in tried) or "(none)"
        _command_error(
            op,
            f"No upgrade source available. Registry: {probe.reason}. "
            f"Local candidates tried: {tried_text}",
            rc=int(ExitCode.ENVIRONMENT),
        )
    op.add_step("source.detect", detail=f"registry unavailable: {probe.reason}", path=local.path)
    return LocalSource(local.path)


@app.command()
def check(
    ctx: typer.Context,
    source: str | None = SOURCE_OPTION,
    local_path: Path | None = LOCAL_PATH_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a newer toolkit version is available."""
    runtime = _get_runtime(ctx)
    install_dir = runtime.config.install_dir

    with runtime.logger.operation(
        "check",
        args={"source": source, "local_path": local_path, "json": json_output},
        target={"kind": "install", "path": install_dir},
    ) as op:
        options = _upgrade_options(op, source=source, local_path=local_path)
        try:
            explicit = options.explicit_source(runtime.config.package_name)
        except ValueError as exc:
            _command_error(op, str(exc))
        chosen = explicit if explicit is not None else _detect_check_source(runtime, op)
        result = runtime.resolver.check(install_dir, chosen)
        payload = result.to_dict()

        if json_output:
            console.print_json(data=payload)
        elif result.error:
            console.print(f"[yellow]{result.error}[/yellow] (source: {chosen.describe()})")
        elif result.has_update:
            console.print(
                f"Update available: [bold]{result.current}[/bold] -> "
                f"[bold green]{result.latest}[/bold green] ({result.kind.value}) "
                f"from {chosen.describe()}"
            )
        else:
            console.print(f"[green]Up to date[/green] ({result.current}).")

        if result.error:
            op.error(result.error, rc=int(ExitCode.ENVIRONMENT), context=payload)
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        op.success("Checked for updates.", changed=0, context=payload)


def _render_preview(preview: UpgradePreview) -> None:
    console.print(
        f"\n[bold]Upgrade preview[/bold]: {preview.current} -> {preview.latest} "
        f"({preview.kind.value}, source: {preview.source})"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Strategy", style="bold")
    table.add_column("Files")
    for label, files in (
        ("update", preview.files_to_update),
        ("preserve", preview.files_to_preserve),
        ("merge", preview.files_to_merge),
    ):
        shown = ", ".join(files[:8]) + (f" (+{len(files) - 8} more)" if len(files) > 8 else "")
        table.add_row(f"{label} ({len(files)})", shown or "-")
    console.print(table)
    if preview.migrations:
        console.print("Migrations to run:")
        for migration in preview.migrations:
            console.print(f"  - {migration.description} ({migration.version})")
    else:
        console.print("No migrations required.")


def _render_outcome(outcome: UpgradeOutcome) -> None:
    if outcome.status == "up-to-date":
        current = outcome.from_version
        console.print(f"[green]Already on the latest version[/green] ({current}).")
        return
    if outcome.preview is not None and outcome.status in {"dry-run-preview", "needs-confirmation"}:
        _render_preview(outcome.preview)
    if outcome.status == "dry-run-preview":
        console.print("[yellow]Dry run[/yellow]: no changes applied.")
    elif outcome.status == "needs-confirmation":
        console.print(
            f"\n[yellow]This will upgrade from {outcome.from_version} "
            f"to {outcome.to_version}.[/yellow]"
            "\nA backup is created first. Re-run with --force to proceed."
        )
    elif outcome.status == "success":
        console.print(
            f"[green]Upgrade complete[/green]: {outcome.from_version} -> {outcome.to_version}\n"
            f"Backup: {outcome.backup_path}\nSource: {outcome.source}"
        )
    elif outcome.status == "failure":
        console.print(f"[red]Upgrade failed at stage '{outcome.stage}':[/red] {outcome.error}")
        if outcome.rollback == "rolled-back":
            console.print(f"[yellow]Rolled back[/yellow] from backup {outcome.backup_path}.")
        else:
            console.print(f"[red]Rollback failed:[/red] {outcome.rollback_error}")
            console.print("[bold]Manual recovery required:[/bold]")
            for index, step in enumerate(outcome.recovery_steps, 1):
                console.print(f"  {index}. {step}")
    for note in outcome.notes:
        console.print(f"[dim]{note}[/dim]")


def _outcome_exit_code(outcome: UpgradeOutcome) -> int:
    if outcome.status != "failure":
        return int(ExitCode.OK)
    if outcome.rollback == "failed":
        return int(ExitCode.RECOVERY_REQUIRED)
    if outcome.error is not None:
        return int(outcome.error.exit_code)
    return int(ExitCode.PROVIDER)


@app.command()
def upgrade(
    ctx: typer.Context,
    source: str | None = SOURCE_OPTION,
    local_path: Path | None = LOCAL_PATH_OPTION,
    version: str | None = typer.Option(
        None,
        "--version",
        help="Registry version to upgrade to (defaults to latest).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Preview the upgrade without changing anything.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Apply the upgrade without asking for confirmation.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Upgrade the installed toolkit with backup and automatic rollback."""
    runtime = _get_runtime(ctx)
    install_dir = runtime.config.install_dir

    with runtime.logger.operation(
        "upgrade",
        args={
            "source": source,
            "local_path": local_path,
            "version": version,
            "dry_run": dry_run,
            "force": force,
        },
        target={"kind": "install", "path": install_dir},
    ) as op:
        options = _upgrade_options(
            op,
            source=source,
            local_path=local_path,
            version=version,
            dry_run=dry_run,
            force=force,
        )

        def _record(state: UpgradeState, _ctx: UpgradeContext) -> None:
            op.add_step(f"upgrade.{state.value}")

        try:
            outcome = runtime.orchestrator.upgrade(options, on_transition=_record)
        except ValueError as exc:
            _command_error(op, str(exc))
        except GsdctlError as exc:
            _engine_error(op, exc)

        payload = outcome.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_outcome(outcome)

        rc = _outcome_exit_code(outcome)
        backups = [outcome.backup_path] if outcome.backup_path else None
        if outcome.status == "failure":
            message = f"Upgrade failed at {outcome.stage}; rollback {outcome.rollback}."
            op.error(
                message,
                errors=[str(outcome.error), *filter(None, [outcome.rollback_error])],
                rc=rc,
                backups=backups,
                context=payload,
            )
            raise typer.Exit(code=rc)
        if outcome.status == "needs-confirmation":
            op.warning(
                "Upgrade requires confirmation (--force).",
                warnings=["confirmation required"],
                context=payload,
            )
            return
        changed = 1 if outcome.status == "success" else 0
        op.success(f"Upgrade {outcome.status}.", changed=changed, backups=backups, context=payload)


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------

backups_app = typer.Typer(help="Create, inspect and restore installation backups.")
migrations_app = typer.Typer(help="Inspect registered migrations.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(backups_app, name="backup")
app.add_typer(migrations_app, name="migrations")
app.add_typer(config_app, name="config")


def _render_backups(entries: Sequence[BackupInfo]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Backup", style="bold")
    table.add_column("Version")
    table.add_column("Files")
    table.add_column("Created")
    table.add_column("Valid")
    if not entries:
        table.add_row("(none)", "", "", "", "")
    for entry in entries:
        valid = "[green]yes[/green]" if entry.valid else "[red]no[/red]"
        table.add_row(entry.name, entry.version, str(entry.files), entry.created, valid)
    console.print(table)


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Take a backup of the installation now."""
    runtime = _get_runtime(ctx)
    install_dir = runtime.config.install_dir

    with runtime.logger.operation(
        "backup create",
        args={"json": json_output},
        target={"kind": "install", "path": install_dir},
    ) as op:
        try:
            info = runtime.backups.create(install_dir)
        except GsdctlError as exc:
            _engine_error(op, exc)
        op.add_step("backup.create", path=info.path, files=info.files)
        if json_output:
            console.print_json(data=info.to_dict())
        else:
            console.print(f"[green]Backup created[/green]: {info.path} ({info.files} files)")
        op.success("Backup created.", changed=1, backups=[info.path], context=info.to_dict())


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List backups, newest first."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backups", "path": runtime.backups.root},
    ) as op:
        entries = runtime.backups.list_backups()
        if json_output:
            console.print_json(data={"backups": [entry.to_dict() for entry in entries]})
        else:
            _render_backups(entries)
        op.success(f"Listed {len(entries)} backup(s).", changed=0)


@backups_app.command("validate")
def backup_validate(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup name (backup-<millis>) or path."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check a backup is complete and restorable."""
    runtime = _get_runtime(ctx)
    path = runtime.backups.resolve(name)

    with runtime.logger.operation(
        "backup validate",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "path": path},
    ) as op:
        result = runtime.backups.validate(path)
        if json_output:
            console.print_json(data={"path": str(path), **result.to_dict()})
        elif result.valid:
            console.print(f"[green]Backup valid[/green]: {path}")
        else:
            console.print(f"[red]Backup invalid[/red]: {path}")
            for error in result.errors:
                console.print(f"  - {error}")
        if not result.valid:
            op.error("Backup invalid.", errors=list(result.errors), rc=int(ExitCode.VALIDATION))
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        op.success("Backup valid.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup name (backup-<millis>) or path."),
    keep_node_modules: bool = typer.Option(
        True,
        "--keep-node-modules/--no-keep-node-modules",
        help="Keep the installed node_modules directory across the restore.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Replace the installation with the contents of a backup."""
    runtime = _get_runtime(ctx)
    install_dir = runtime.config.install_dir
    path = runtime.backups.resolve(name)

    with runtime.logger.operation(
        "backup restore",
        args={"name": name, "keep_node_modules": keep_node_modules, "yes": yes},
        target={"kind": "install", "path": install_dir, "backup": path},
    ) as op:
        if not yes and not typer.confirm(f"Replace {install_dir} with {path}?", default=False):
            console.print("[yellow]Restore cancelled.[/yellow]")
            op.warning("Restore cancelled by user.", warnings=["cancelled"])
            return
        try:
            runtime.backups.restore(path, install_dir, preserve_node_modules=keep_node_modules)
        except GsdctlError as exc:
            _engine_error(op, exc)
        console.print(f"[green]Restored[/green] {install_dir} from {path}.")
        op.success("Backup restored.", changed=1, backups=[path])


@backups_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup name (backup-<millis>) or path."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete a backup permanently."""
    runtime = _get_runtime(ctx)
    path = runtime.backups.resolve(name)

    with runtime.logger.operation(
        "backup delete",
        args={"name": name, "yes": yes},
        target={"kind": "backup", "path": path},
    ) as op:
        if not yes and not typer.confirm(f"Delete backup {path}?", default=False):
            console.print("[yellow]Delete cancelled.[/yellow]")
            op.warning("Delete cancelled by user.", warnings=["cancelled"])
            return
        try:
            runtime.backups.delete(path)
        except GsdctlError as exc:
            _engine_error(op, exc)
        console.print(f"Deleted {path}.")
        op.success("Backup deleted.", changed=1, backups=[path])


# ---------------------------------------------------------------------------
# migrations / config
# ---------------------------------------------------------------------------


@migrations_app.command("list")
def migrations_list(
    ctx: typer.Context,
    from_version: str | None = typer.Option(None, "--from", help="Installed version."),
    to_version: str | None = typer.Option(None, "--to", help="Target version."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered migrations, optionally only those for an upgrade range."""
    runtime = _get_runtime(ctx)
    runner: MigrationRunner = runtime.orchestrator.migrations

    with runtime.logger.operation(
        "migrations list",
        args={"from": from_version, "to": to_version, "json": json_output},
        target={"kind": "migrations"},
    ) as op:
        lower = _parse_version_option(op, from_version, "--from")
        upper = _parse_version_option(op, to_version, "--to")
        if (lower is None) != (upper is None):
            _command_error(op, "--from and --to must be given together.")
        if lower is not None and upper is not None:
            selected = runner.applicable(lower, upper)
        else:
            selected = sorted(runner.migrations, key=lambda m: (m.version, m.id))

        if json_output:
            console.print_json(data={"migrations": [m.to_dict() for m in selected]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Id", style="bold")
            table.add_column("Version")
            table.add_column("Type")
            table.add_column("Description")
            if not selected:
                table.add_row("(none)", "", "", "")
            for migration in selected:
                table.add_row(
                    migration.id, str(migration.version), migration.type, migration.description
                )
            console.print(table)
        op.success(f"Listed {len(selected)} migration(s).", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
