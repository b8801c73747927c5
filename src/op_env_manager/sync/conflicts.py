"""
Conflict resolution for keys that differ on both sides.

Non-interactive strategies are pure. The interactive strategy hands the
choice to a prompt callable supplied by the caller; without one (for
example when stdin is not a terminal) the key is skipped and reported
as unresolved.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Mapping, Optional

from ..errors import ConfigError
from .models import ConflictStrategy, Decision, ResolutionAction

logger = logging.getLogger("op_env_manager.sync.conflicts")

Prompt = Callable[[str, str, str], Decision]


def parse_strategy(value: str) -> ConflictStrategy:
    """Parse a strategy name, raising ConfigError for unknown names."""
    try:
        return ConflictStrategy(value.strip().lower())
    except ValueError:
        choices = ", ".join(s.value for s in ConflictStrategy)
        raise ConfigError(
            f"Invalid conflict strategy {value!r} (expected one of: {choices})"
        ) from None


def resolve(
    key: str,
    local_value: str,
    remote_value: str,
    strategy: ConflictStrategy,
    prompt: Optional[Prompt] = None,
) -> Decision:
    """Decide the outcome for one modified key.

    Args:
        key: Variable name.
        local_value: Value in the local file.
        remote_value: Value in the vault record.
        strategy: Conflict strategy for this run.
        prompt: Called as ``prompt(key, local_value, remote_value)`` for the
            interactive strategy.

    Returns:
        Decision. ``newest`` prefers the vault, which is the versioned
        source of truth.
    """
    if strategy == ConflictStrategy.OURS:
        return Decision.local()
    if strategy in (ConflictStrategy.THEIRS, ConflictStrategy.NEWEST):
        return Decision.remote()

    if prompt is None:
        logger.warning("No interactive prompt available, skipping %s", key)
        return Decision.skip()

    decision = prompt(key, local_value, remote_value)
    if decision.action == ResolutionAction.EDIT and decision.value is None:
        return Decision.edit("")
    return decision


class ConflictResolver:
    """Resolves a batch of modified keys with one strategy."""

    def __init__(
        self,
        strategy: ConflictStrategy = ConflictStrategy.INTERACTIVE,
        prompt: Optional[Prompt] = None,
    ):
        self.strategy = strategy
        self.prompt = prompt

    def resolve_all(
        self,
        keys: Iterable[str],
        local: Mapping[str, str],
        remote: Mapping[str, str],
    ) -> dict[str, Decision]:
        """Resolve every key, in sorted order so prompts are stable."""
        decisions = {}
        for key in sorted(keys):
            decisions[key] = resolve(
                key, local[key], remote[key], self.strategy, self.prompt
            )
            logger.debug("Resolved %s -> %s", key, decisions[key].action.value)
        return decisions
