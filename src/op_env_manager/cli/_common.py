"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the shared vault-target options,
value masking, the interactive conflict prompt, and fatal-error handling.
"""

from __future__ import annotations

import functools
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from ..config import ProjectConfig
from ..errors import ConfigError, OpEnvError
from ..retry import ResilientClient, RetryConfig
from ..sync.backends import OnePasswordBackend
from ..sync.conflicts import parse_strategy
from ..sync.models import ConflictStrategy, Decision, ExitCode, VaultTarget

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger("op_env_manager.cli")


def quiet() -> bool:
    """True when OP_QUIET_MODE=true suppresses informational output."""
    return os.environ.get("OP_QUIET_MODE", "false") == "true"


def info(message: str) -> None:
    if not quiet():
        console.print(message)


def mask(value: str, keep: int = 8, threshold: int = 12) -> str:
    """Show only the first ``keep`` characters of a long secret, markup-escaped."""
    if len(value) > threshold:
        value = value[:keep] + "..."
    return escape(value)


def truncate(value: str, limit: int = 60) -> str:
    if len(value) > limit:
        value = value[:limit] + "..."
    return escape(value)


def target_options(func):
    """Add the --env-file/--vault/--item/--section options to a command."""
    options = [
        click.option("--env-file", "-f", default=None, help="Local .env file (default: .env)."),
        click.option("--vault", default=None, help="1Password vault name."),
        click.option("--item", default=None, help="Item name (default: env-secrets)."),
        click.option("--section", default=None, help="Section within the item (e.g. dev, prod)."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def resolve_settings(
    ctx: click.Context,
    env_file: Optional[str] = None,
    vault: Optional[str] = None,
    item: Optional[str] = None,
    section: Optional[str] = None,
    strategy: Optional[str] = None,
) -> ProjectConfig:
    """Merge command-line options over the project config file."""
    base: ProjectConfig = ctx.obj or ProjectConfig()
    return base.merged(
        env_file=env_file,
        vault=vault,
        item=item,
        section=section,
        strategy=parse_strategy(strategy) if strategy else None,
    )


def build_target(settings: ProjectConfig) -> VaultTarget:
    """Vault target for the merged settings.

    Raises:
        ConfigError: If no vault was given on the command line or in config.
    """
    if not settings.vault:
        raise ConfigError("--vault is required (or set 'vault' in .op-env-manager.yaml)")
    return VaultTarget(
        vault=settings.vault,
        record=settings.item,
        subsection=settings.section or None,
    )


def make_backend(check: bool = True) -> OnePasswordBackend:
    backend = OnePasswordBackend()
    if check and not backend.available():
        raise ConfigError(
            "1Password CLI (op) not found on PATH. "
            "Install it from https://developer.1password.com/docs/cli/get-started/"
        )
    return backend


def make_client() -> ResilientClient:
    return ResilientClient(RetryConfig.from_env())


def prompt_conflict(key: str, local_value: str, remote_value: str) -> Decision:
    """Ask the user how to resolve one conflicting key."""
    console.print(f"\n[bold yellow]Conflict:[/] [cyan]{escape(key)}[/]")
    console.print(f"  Local:  {truncate(local_value)}")
    console.print(f"  Remote: {truncate(remote_value)}")
    choice = click.prompt(
        "  Keep [l]ocal, [r]emote, [e]dit, or [s]kip",
        type=click.Choice(["l", "r", "e", "s"]),
        default="s",
        show_choices=False,
    )
    if choice == "l":
        return Decision.local()
    if choice == "r":
        return Decision.remote()
    if choice == "e":
        return Decision.edit(click.prompt("  New value", default="", show_default=False))
    return Decision.skip()


def conflict_prompt(strategy: ConflictStrategy):
    """The interactive prompt, or None when stdin is not a terminal."""
    if strategy == ConflictStrategy.INTERACTIVE and sys.stdin.isatty():
        return prompt_conflict
    return None


def fatal_errors(func):
    """Map OpEnvError to a red message and exit code 2."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OpEnvError as exc:
            logger.debug("Fatal error", exc_info=True)
            err_console.print(f"[bold red]Error:[/] {escape(str(exc))}")
            raise SystemExit(int(ExitCode.FATAL))

    return wrapper


def env_path(settings: ProjectConfig) -> Path:
    return Path(settings.env_file).expanduser()
