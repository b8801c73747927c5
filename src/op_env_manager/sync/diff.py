"""
State comparator -- key-level diff of two variable sets.

Values are compared after normalizing line endings and the two-character
``\\n`` escape that vault fields use for embedded newlines.
"""

from __future__ import annotations

from typing import Mapping

from .models import Decision, DiffResult, ResolutionAction


def normalize_value(value: str) -> str:
    """Bring a value to one newline convention."""
    return value.replace("\r\n", "\n").replace("\\n", "\n")


def diff(local: Mapping[str, str], remote: Mapping[str, str]) -> DiffResult:
    """Compare local and remote variable sets.

    Args:
        local: Variables from the local file.
        remote: Variables from the vault record.

    Returns:
        DiffResult with additions (remote only), deletions (local only),
        modifications (both, differing) and unchanged keys.
    """
    additions: set[str] = set()
    modifications: set[str] = set()
    unchanged: set[str] = set()

    for key, remote_value in remote.items():
        if key not in local:
            additions.add(key)
        elif normalize_value(local[key]) == normalize_value(remote_value):
            unchanged.add(key)
        else:
            modifications.add(key)

    deletions = {key for key in local if key not in remote}

    return DiffResult(
        additions=frozenset(additions),
        deletions=frozenset(deletions),
        modifications=frozenset(modifications),
        unchanged=frozenset(unchanged),
    )


def merge(
    local: Mapping[str, str],
    remote: Mapping[str, str],
    result: DiffResult,
    decisions: Mapping[str, Decision],
) -> dict[str, str]:
    """Apply resolution decisions to produce the merged variable set.

    Starts from the local set in its original order. Additions adopt the
    remote value and are appended. Deletions are dropped unless their
    decision is LOCAL. Modifications follow their decision; SKIP keeps
    the local value.
    """
    merged: dict[str, str] = {}
    for key, value in local.items():
        decision = decisions.get(key)
        if key in result.deletions:
            if decision is not None and decision.action == ResolutionAction.LOCAL:
                merged[key] = value
            continue
        if key in result.modifications and decision is not None:
            if decision.action == ResolutionAction.REMOTE:
                value = remote[key]
            elif decision.action == ResolutionAction.EDIT:
                value = decision.value or ""
        merged[key] = value

    for key, value in remote.items():
        if key in result.additions:
            merged[key] = value
    return merged
