"""Sync commands: sync, diff."""

from __future__ import annotations

import click
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..sync.engine import SyncEngine
from ..sync.models import (
    ConflictStrategy,
    DiffResult,
    ExitCode,
    SyncOptions,
    SyncReport,
    SyncStatus,
)
from ._common import (
    build_target,
    conflict_prompt,
    console,
    env_path,
    fatal_errors,
    info,
    make_backend,
    make_client,
    mask,
    resolve_settings,
    target_options,
)


def _print_report(report: SyncReport) -> None:
    d = report.diff
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Change")
    table.add_column("Keys", justify="right")
    table.add_row("[green]added from vault[/]", str(len(d.additions)))
    table.add_row("[red]local only[/]", str(len(d.deletions)))
    table.add_row("[yellow]modified[/]", str(len(d.modifications)))
    table.add_row("[dim]unchanged[/]", str(len(d.unchanged)))
    console.print(table)

    lines = [f"Variables: {report.merged_count}"]
    if report.local_written:
        lines.append(f"Local file: [cyan]{report.env_file}[/] updated")
    if report.remote_created:
        lines.append(f"Vault: created [cyan]{report.target.label}[/]")
    elif report.remote_fields_pushed:
        lines.append(f"Vault: {report.remote_fields_pushed} field(s) pushed")
    if report.backup_path:
        lines.append(f"Backup: [dim]{report.backup_path}[/]")

    if report.status == SyncStatus.UNRESOLVED:
        lines.append(f"[yellow]Unresolved conflicts:[/] {escape(', '.join(report.skipped))}")
        console.print(Panel("\n".join(lines), title="Sync Incomplete", border_style="yellow"))
    else:
        console.print(Panel("\n".join(lines), title="Sync Complete", border_style="green"))


def _print_diff(result: DiffResult, local, remote) -> None:
    for key in sorted(result.additions):
        console.print(f"  [green]+ {escape(key)}[/] = {mask(remote[key])}")
    for key in sorted(result.deletions):
        console.print(f"  [red]- {escape(key)}[/] = {mask(local[key])}")
    for key in sorted(result.modifications):
        console.print(f"  [yellow]± {escape(key)}[/]")
        console.print(f"      Local:  {mask(local[key])}")
        console.print(f"      Remote: {mask(remote[key])}")


def register_sync_commands(main: click.Group) -> None:
    """Register the sync and diff commands."""

    @main.command("sync")
    @target_options
    @click.option(
        "--strategy",
        type=click.Choice([s.value for s in ConflictStrategy], case_sensitive=False),
        default=None,
        help="Conflict strategy (default: interactive).",
    )
    @click.option("--no-backup", is_flag=True, help="Do not back up the local file.")
    @click.option("--dry-run", is_flag=True, help="Preview without contacting the vault.")
    @click.option("--three-way", is_flag=True, help="Use the last sync state as merge base.")
    @click.pass_context
    @fatal_errors
    def sync(ctx, env_file, vault, item, section, strategy, no_backup, dry_run, three_way):
        """Two-way sync between a local .env file and 1Password.

        Exit status: 0 synced, 1 conflicts left unresolved, 2 error.

        Examples:

            op-env-manager sync --vault Personal --item myapp

            op-env-manager sync --vault Personal --section prod --strategy theirs
        """
        settings = resolve_settings(ctx, env_file, vault, item, section, strategy)
        target = build_target(settings)
        path = env_path(settings)
        options = SyncOptions(
            strategy=settings.strategy,
            dry_run=dry_run,
            backup=settings.backup and not no_backup,
            three_way=three_way,
        )

        engine = SyncEngine(
            make_backend(check=not dry_run),
            path,
            target,
            client=make_client(),
            prompt=conflict_prompt(options.strategy),
        )

        info(f"\n  Syncing [cyan]{path}[/] <-> [cyan]{target.label}[/]")
        report = engine.run(options)

        if report.status == SyncStatus.DRY_RUN:
            info(
                f"  [yellow]DRY RUN:[/] {report.local_count} local variable(s) in {path}; "
                "the vault was not contacted."
            )
        elif report.status == SyncStatus.UP_TO_DATE:
            info("  [green]Already in sync.[/] No changes needed.\n")
        else:
            _print_report(report)

        raise SystemExit(int(report.exit_code))

    @main.command("diff")
    @target_options
    @click.pass_context
    @fatal_errors
    def diff_cmd(ctx, env_file, vault, item, section):
        """Show differences between a local .env file and 1Password.

        Exit status: 0 identical, 1 differences found, 2 error.
        """
        settings = resolve_settings(ctx, env_file, vault, item, section)
        target = build_target(settings)
        path = env_path(settings)

        engine = SyncEngine(make_backend(), path, target, client=make_client())
        snapshot, result = engine.diff()

        if not snapshot.remote_exists:
            info(f"  [yellow]Record {target.label} does not exist in the vault.[/]")

        if result.is_empty:
            info(f"  [green]No differences[/] ({len(result.unchanged)} variable(s) identical)")
            raise SystemExit(int(ExitCode.OK))

        console.print(f"\n  [bold]{path}[/] vs [bold]{target.label}[/]\n")
        _print_diff(result, snapshot.local, snapshot.remote)
        console.print(
            f"\n  {len(result.additions)} remote only, {len(result.deletions)} local only, "
            f"{len(result.modifications)} modified, {len(result.unchanged)} unchanged\n"
        )
        raise SystemExit(int(ExitCode.UNRESOLVED))
