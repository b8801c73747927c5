"""Convert command: resolve op:// references and push them to an item."""

from __future__ import annotations

from pathlib import Path

import click
from rich.markup import escape

from ..convert import Converter
from ..references import DEFAULT_WORKERS
from ._common import (
    build_target,
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


def register_convert_commands(main: click.Group) -> None:
    """Register the convert command."""

    @main.command("convert")
    @target_options
    @click.option("--template", is_flag=True, help="Also write an op:// template file.")
    @click.option("--template-output", default=".env.op", show_default=True, help="Template path.")
    @click.option("--workers", default=DEFAULT_WORKERS, show_default=True, type=click.IntRange(1, 64),
                  help="Parallel reference lookups.")
    @click.option("--dry-run", is_flag=True, help="Preview without resolving or pushing.")
    @click.pass_context
    @fatal_errors
    def convert(ctx, env_file, vault, item, section, template, template_output, workers, dry_run):
        """Convert a .env file of op:// references into an op-env-manager item.

        References may stand alone (API_KEY=op://vault/item/field) or be
        embedded in a value (DB_URL=postgres://u:op://vault/db/pw@host/db).

        Examples:

            op-env-manager convert -f .env.template --vault Personal --item myapp

            op-env-manager convert -f .env.template --vault Personal --dry-run
        """
        settings = resolve_settings(ctx, env_file, vault, item, section)
        target = build_target(settings)
        source = env_path(settings)

        converter = Converter(
            make_backend(check=not dry_run), target, client=make_client(), max_workers=workers
        )
        result = converter.run(
            source,
            dry_run=dry_run,
            template=None if dry_run or not template else Path(template_output),
        )

        for failure in result.failures:
            console.print(
                f"  [yellow]Skipped {escape(failure.key)}:[/] could not resolve {escape(failure.reference)} "
                f"([dim]{escape(str(failure.error))}[/])"
            )

        if dry_run:
            info(f"\n  [yellow]DRY RUN:[/] would convert {len(result.variables)} variable(s) "
                 f"({result.reference_count} with op:// references) into [cyan]{target.label}[/]\n")
            for key, value in result.variables.items():
                info(f"    {escape(key)}={mask(value, keep=40, threshold=60)}")
            if template:
                info(f"\n  Would also write template: {template_output}")
            return

        if not result.variables:
            console.print("  [red]Nothing to push: no variables could be converted.[/]")
            raise SystemExit(1)

        action = "Created" if result.created else "Updated"
        info(f"  [green]{action} {target.label}[/] with {result.pushed} variable(s)")
        if template:
            info(f"  Template written to [cyan]{template_output}[/]")
