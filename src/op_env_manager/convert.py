"""
Convert -- turn a file of op:// references into an op-env-manager item.

    source .env                       vault item "myapp" (section "prod")
    API_KEY=op://Shared/api/key   ->  prod.API_KEY = <resolved value>
    DB_URL=pg://u:op://S/db/pw@h  ->  prod.DB_URL  = pg://u:<resolved>@h
    DEBUG=false                   ->  prod.DEBUG   = false

References are resolved in parallel. A key whose reference fails to
resolve is left out of the pushed item and reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .cache import ItemCache
from .envfile import read_env_file, write_text_private
from .references import (
    DEFAULT_WORKERS,
    BulkResolver,
    Resolution,
    contains_reference,
    resolve_variables,
)
from .retry import ResilientClient
from .sync.backends import VaultBackend
from .sync.models import VaultTarget

logger = logging.getLogger("op_env_manager.convert")


@dataclass
class ConvertResult:
    """What a conversion produced."""

    variables: dict[str, str]
    failures: list[Resolution] = field(default_factory=list)
    reference_count: int = 0
    pushed: int = 0
    created: bool = False


def render_template(target: VaultTarget, keys: Iterable[str]) -> str:
    """Render an ``op run`` template pointing at the converted fields."""
    lines = [
        "# op-env-manager template",
        f"# Source: {target.label}",
        "# Usage: op run --env-file=<this file> -- <command>",
        "",
    ]
    middle = f"{target.subsection}/" if target.subsection else ""
    for key in keys:
        lines.append(f"{key}=op://{target.vault}/{target.record}/{middle}{key}")
    return "\n".join(lines) + "\n"


class Converter:
    """Resolves a reference file and pushes the result to one target."""

    def __init__(
        self,
        backend: VaultBackend,
        target: VaultTarget,
        client: Optional[ResilientClient] = None,
        max_workers: int = DEFAULT_WORKERS,
    ):
        self.backend = backend
        self.target = target
        self.client = client or ResilientClient()
        self.resolver = BulkResolver(backend, self.client, max_workers=max_workers)
        self.cache = ItemCache()

    def run(
        self,
        source: Path,
        dry_run: bool = False,
        template: Optional[Path] = None,
    ) -> ConvertResult:
        """Convert ``source`` and push it to the target record.

        Args:
            source: File whose values may contain op:// references.
            dry_run: Substitute placeholders; make no remote calls.
            template: Also write an op:// template for the pushed keys.

        Raises:
            LocalIOError: If the source cannot be read.
            RemoteError: If the push fails after retries.
        """
        variables = read_env_file(source)
        reference_count = sum(1 for v in variables.values() if contains_reference(v))

        try:
            resolved, failures = resolve_variables(
                variables, None if dry_run else self.resolver, dry_run=dry_run
            )
            for failure in failures:
                logger.warning(
                    "Skipping %s: could not resolve %s (%s)",
                    failure.key, failure.reference, failure.error,
                )

            result = ConvertResult(
                variables=resolved,
                failures=failures,
                reference_count=reference_count,
            )
            if dry_run or not resolved:
                return result

            key = (self.target.vault, self.target.record)
            exists = self.cache.get_or_check(
                key,
                lambda: self.client.call(
                    "check if item exists", self.backend.record_exists, self.target
                ),
            )
            self.client.call(
                "update item with fields" if exists else "create item",
                self.backend.write_variables,
                self.target,
                resolved,
                not exists,
            )
            self.cache.set(key, True)
            result.pushed = len(resolved)
            result.created = not exists
        finally:
            self.cache.clear()

        if template is not None:
            write_text_private(template, render_template(self.target, resolved))
            logger.info("Wrote template %s", template)
        return result
