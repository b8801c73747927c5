"""
Sync data models -- targets, decisions, diff results, and persisted state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .. import DEFAULT_ITEM

VariableSet = Mapping[str, str]

STATE_FORMAT_VERSION = "1.0"


def freeze(variables: Mapping[str, str]) -> VariableSet:
    """Return a read-only copy of a variable mapping."""
    return MappingProxyType(dict(variables))


class VaultTarget(BaseModel):
    """Where a variable set lives remotely: vault / record / subsection."""

    model_config = ConfigDict(frozen=True)

    vault: str
    record: str = DEFAULT_ITEM
    subsection: Optional[str] = None

    @property
    def label(self) -> str:
        parts = [self.vault, self.record]
        if self.subsection:
            parts.append(self.subsection)
        return "/".join(parts)


class ConflictStrategy(str, Enum):
    """How modified keys are reconciled."""

    INTERACTIVE = "interactive"
    OURS = "ours"
    THEIRS = "theirs"
    NEWEST = "newest"


class ResolutionAction(str, Enum):
    """Outcome of resolving a single conflicting key."""

    LOCAL = "local"
    REMOTE = "remote"
    EDIT = "edit"
    SKIP = "skip"


class Decision(BaseModel):
    """A resolution decision for one key.

    ``value`` is only meaningful for EDIT.
    """

    model_config = ConfigDict(frozen=True)

    action: ResolutionAction
    value: Optional[str] = None

    @classmethod
    def local(cls) -> "Decision":
        return cls(action=ResolutionAction.LOCAL)

    @classmethod
    def remote(cls) -> "Decision":
        return cls(action=ResolutionAction.REMOTE)

    @classmethod
    def edit(cls, value: str) -> "Decision":
        return cls(action=ResolutionAction.EDIT, value=value)

    @classmethod
    def skip(cls) -> "Decision":
        return cls(action=ResolutionAction.SKIP)


class DiffResult(BaseModel):
    """Key-level difference between a local and a remote variable set.

    The four sets are disjoint and together cover every key of both inputs.
    """

    model_config = ConfigDict(frozen=True)

    additions: frozenset[str] = frozenset()
    deletions: frozenset[str] = frozenset()
    modifications: frozenset[str] = frozenset()
    unchanged: frozenset[str] = frozenset()

    @property
    def total_changes(self) -> int:
        return len(self.additions) + len(self.deletions) + len(self.modifications)

    @property
    def is_empty(self) -> bool:
        return self.total_changes == 0


class SyncPhase(str, Enum):
    """Orchestrator state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    RESOLVING = "resolving"
    MERGING = "merging"
    WRITING_BACK = "writing_back"
    PERSISTING_STATE = "persisting_state"
    DONE = "done"
    FAILED = "failed"


class ExitCode(IntEnum):
    """Process exit codes for sync-style commands."""

    OK = 0
    UNRESOLVED = 1
    FATAL = 2


class SyncStatus(str, Enum):
    """Terminal status of a successful run."""

    SYNCED = "synced"
    UP_TO_DATE = "up_to_date"
    UNRESOLVED = "unresolved"
    DRY_RUN = "dry_run"


class SyncOptions(BaseModel):
    """Per-run options for the orchestrator."""

    strategy: ConflictStrategy = ConflictStrategy.INTERACTIVE
    dry_run: bool = False
    backup: bool = True
    three_way: bool = False


class SyncStateRecord(BaseModel):
    """Sync state persisted next to the local file after each successful sync."""

    version: str = STATE_FORMAT_VERSION
    vault: str
    record: str
    subsection: Optional[str] = None
    last_sync: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checksums: dict[str, str] = Field(default_factory=dict)

    def matches(self, target: VaultTarget) -> bool:
        """True if this record was written for the given target."""
        return (
            self.vault == target.vault
            and self.record == target.record
            and (self.subsection or None) == (target.subsection or None)
        )


class BackupHandle(BaseModel):
    """Reference to a backup snapshot of a local file."""

    source: Path
    backup_path: Path
    mode: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncReport(BaseModel):
    """What a sync run did."""

    status: SyncStatus
    target: VaultTarget
    env_file: Path
    diff: DiffResult = Field(default_factory=DiffResult)
    local_count: int = 0
    remote_count: int = 0
    merged_count: int = 0
    applied: int = 0
    skipped: list[str] = Field(default_factory=list)
    remote_created: bool = False
    remote_fields_pushed: int = 0
    local_written: bool = False
    backup_path: Optional[Path] = None
    phases: list[SyncPhase] = Field(default_factory=list)

    @property
    def exit_code(self) -> ExitCode:
        if self.status == SyncStatus.UNRESOLVED:
            return ExitCode.UNRESOLVED
        return ExitCode.OK
