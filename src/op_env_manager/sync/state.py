"""
Persisted sync state.

After each successful sync a small JSON record is written next to the
local file:

    .op-env-manager.state
    {
      "version": "1.0",
      "vault": "Personal",
      "record": "myapp",
      "subsection": "prod",
      "last_sync": "2026-01-01T12:00:00Z",
      "checksums": {"API_KEY": "<sha256 hex>", ...}
    }

It is overwritten atomically (never partially written) and ignored when
it belongs to a different vault target.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional

from pydantic import ValidationError

from .. import STATE_FILE_NAME
from ..envfile import write_text_private
from .diff import normalize_value
from .models import SyncStateRecord, VaultTarget

logger = logging.getLogger("op_env_manager.sync.state")


def checksum(value: str) -> str:
    """SHA-256 hex digest of a normalized value."""
    return hashlib.sha256(normalize_value(value).encode("utf-8")).hexdigest()


def checksum_all(variables: Mapping[str, str]) -> dict[str, str]:
    return {key: checksum(value) for key, value in variables.items()}


class StateStore:
    """Reads and writes the sync state record for one local file."""

    def __init__(self, env_file: Path):
        self.env_file = Path(env_file)
        self.path = self.env_file.parent / STATE_FILE_NAME

    def load(self, target: VaultTarget) -> Optional[SyncStateRecord]:
        """Load the state record for ``target``.

        Returns:
            The record, or None when absent, unreadable, or written for
            another target.
        """
        if not self.path.exists():
            return None
        try:
            record = SyncStateRecord.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Failed to load sync state %s: %s", self.path, exc)
            return None

        if not record.matches(target):
            logger.info(
                "Ignoring sync state for %s/%s (current target is %s)",
                record.vault, record.record, target.label,
            )
            return None
        return record

    def save(
        self,
        target: VaultTarget,
        variables: Mapping[str, str],
        unresolved: Iterable[str] = (),
        base: Optional[SyncStateRecord] = None,
    ) -> SyncStateRecord:
        """Checksum ``variables`` and atomically overwrite the state record.

        Keys in ``unresolved`` are still in conflict: they keep their
        checksum from ``base`` when it has one and are left out otherwise,
        so the next three-way run sees both sides as changed.

        Raises:
            LocalIOError: If the file cannot be written.
        """
        unresolved = set(unresolved)
        checksums = checksum_all(
            {key: value for key, value in variables.items() if key not in unresolved}
        )
        if base is not None:
            for key in unresolved:
                if key in base.checksums:
                    checksums[key] = base.checksums[key]

        record = SyncStateRecord(
            vault=target.vault,
            record=target.record,
            subsection=target.subsection,
            checksums=checksums,
        )
        write_text_private(self.path, record.model_dump_json(indent=2) + "\n")
        logger.debug("Saved sync state (%d checksums) to %s", len(record.checksums), self.path)
        return record
