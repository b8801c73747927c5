"""
op-env-manager CLI -- keep .env files and 1Password in step.

This package organizes the CLI into modular command groups.
The main Click group is defined here and all subcommands
are registered via register functions.

Entry point: op_env_manager.cli:main
"""

from __future__ import annotations

import logging

import click
from rich.markup import escape

from .. import __version__
from ..config import load_project_config
from ..errors import ConfigError
from ..sync.models import ExitCode
from ._common import err_console


@click.group()
@click.version_option(version=__version__, prog_name="op-env-manager")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Project config file (default: ./.op-env-manager.yaml).",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path):
    """op-env-manager -- sync .env files with 1Password.

    Push local variables to a vault, inject them back, convert op://
    references, and reconcile both sides with conflict resolution.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        ctx.obj = load_project_config(config_path)
    except ConfigError as exc:
        err_console.print(f"[bold red]Error:[/] {escape(str(exc))}")
        raise SystemExit(int(ExitCode.FATAL))


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .transfer import register_transfer_commands
from .convert import register_convert_commands
from .backup import register_backup_commands

register_sync_commands(main)
register_transfer_commands(main)
register_convert_commands(main)
register_backup_commands(main)
