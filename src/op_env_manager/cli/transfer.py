"""One-way transfer commands: push, inject."""

from __future__ import annotations

from pathlib import Path

import click

from ..sync.engine import SyncEngine
from ._common import (
    build_target,
    console,
    env_path,
    fatal_errors,
    info,
    make_backend,
    make_client,
    resolve_settings,
    target_options,
)


def register_transfer_commands(main: click.Group) -> None:
    """Register the push and inject commands."""

    @main.command("push")
    @target_options
    @click.option("--dry-run", is_flag=True, help="Show what would be pushed.")
    @click.pass_context
    @fatal_errors
    def push(ctx, env_file, vault, item, section, dry_run):
        """Push a local .env file to a 1Password item.

        All variables are stored as concealed fields in one batched call.
        The item is created (tagged op-env-manager) if it does not exist.

        Examples:

            op-env-manager push --vault Personal --item myapp -f .env.production
        """
        settings = resolve_settings(ctx, env_file, vault, item, section)
        target = build_target(settings)
        path = env_path(settings)

        engine = SyncEngine(make_backend(check=not dry_run), path, target, client=make_client())
        count = engine.push(dry_run=dry_run)

        if dry_run:
            info(f"  [yellow]DRY RUN:[/] would push {count} variable(s) to [cyan]{target.label}[/]")
        elif count:
            info(f"  [green]Pushed {count} variable(s)[/] to [cyan]{target.label}[/]")
        else:
            console.print(f"  [yellow]No variables found in {path}[/]")

    @main.command("inject")
    @target_options
    @click.option("--output", "-o", default=None, help="Output file (default: the --env-file path).")
    @click.option("--overwrite", is_flag=True, help="Replace an existing output file.")
    @click.pass_context
    @fatal_errors
    def inject(ctx, env_file, vault, item, section, output, overwrite):
        """Write the variables of a 1Password item to a local file.

        The file is created with mode 0600.

        Examples:

            op-env-manager inject --vault Personal --item myapp --section prod -o .env.prod
        """
        settings = resolve_settings(ctx, env_file, vault, item, section)
        target = build_target(settings)
        out_path = Path(output).expanduser() if output else env_path(settings)

        engine = SyncEngine(make_backend(), out_path, target, client=make_client())
        count = engine.inject(out_path, overwrite=overwrite)
        info(f"  [green]Injected {count} variable(s)[/] into [cyan]{out_path}[/]")
