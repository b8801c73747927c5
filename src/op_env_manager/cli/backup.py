"""Backup commands: list, restore."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import click
from rich.table import Table

from ..errors import LocalIOError
from ..sync.backup import BackupManager
from ..sync.models import BackupHandle
from ._common import console, env_path, fatal_errors, info, resolve_settings


def register_backup_commands(main: click.Group) -> None:
    """Register the backups command group."""

    @main.group()
    def backups():
        """Backups of local .env files taken before each sync."""

    @backups.command("list")
    @click.option("--env-file", "-f", default=None, help="Local .env file (default: .env).")
    @click.pass_context
    def backups_list(ctx, env_file):
        """List backups of a local .env file, newest first."""
        path = env_path(resolve_settings(ctx, env_file=env_file))
        found = BackupManager().list_backups(path)

        if not found:
            console.print(f"\n[dim]No backups found for {path}.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Backup", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Modified", style="dim")

        for b in found:
            st = b.stat()
            modified = datetime.fromtimestamp(st.st_mtime).strftime("%Y-%m-%d %H:%M:%S")
            table.add_row(b.name, f"{st.st_size} B", modified)

        console.print(f"\n[bold]{len(found)}[/] backup(s) of {path}:\n")
        console.print(table)
        console.print()

    @backups.command("restore")
    @click.argument("backup_file", type=click.Path(dir_okay=False))
    @click.option("--env-file", "-f", default=None, help="File to restore (default: .env).")
    @click.pass_context
    @fatal_errors
    def backups_restore(ctx, backup_file, env_file):
        """Restore a local .env file from a backup.

        Examples:

            op-env-manager backups restore .op-env-manager/backups/.env.20260101_120000_000000.bak
        """
        path = env_path(resolve_settings(ctx, env_file=env_file))
        backup_path = Path(backup_file).expanduser()
        if not backup_path.is_file():
            raise LocalIOError(backup_path, "Backup not found")

        BackupManager().restore(BackupHandle(source=path, backup_path=backup_path, mode=0o600))
        info(f"  [green]Restored[/] [cyan]{path}[/] from {backup_path.name}")
