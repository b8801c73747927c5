"""
Sync Engine -- reconciles a local variable file with a vault record.

    op-env-manager sync  ->  fetch -> diff -> resolve -> merge -> write back -> persist state

Both sides are fetched concurrently. Conflicting keys are resolved with
the run's strategy; the merged set is written to the local file (after a
backup) and the changed fields are pushed to the vault in one batched
call. Any failure during write-back restores the local file before the
error surfaces.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Optional

from ..cache import ItemCache
from ..envfile import read_env_file, write_env_file
from ..errors import LocalIOError, OpEnvError, SyncError
from ..retry import ResilientClient
from .backends import VaultBackend
from .backup import BackupManager
from .conflicts import ConflictResolver, Prompt
from .diff import diff, merge, normalize_value
from .models import (
    BackupHandle,
    Decision,
    DiffResult,
    ResolutionAction,
    SyncOptions,
    SyncPhase,
    SyncReport,
    SyncStateRecord,
    SyncStatus,
    VariableSet,
    VaultTarget,
    freeze,
)
from .state import StateStore, checksum

logger = logging.getLogger("op_env_manager.sync.engine")


@dataclass(frozen=True)
class Snapshot:
    """Both sides of a sync, read at (roughly) the same moment."""

    local: VariableSet
    remote: VariableSet
    remote_exists: bool


class SyncEngine:
    """Orchestrates one local file against one vault target.

    All remote calls go through the ResilientClient. The engine owns an
    ItemCache for the duration of each public call.
    """

    def __init__(
        self,
        backend: VaultBackend,
        env_file: Path,
        target: VaultTarget,
        client: Optional[ResilientClient] = None,
        backups: Optional[BackupManager] = None,
        state_store: Optional[StateStore] = None,
        prompt: Optional[Prompt] = None,
    ):
        """Initialize the sync engine.

        Args:
            backend: Remote store.
            env_file: Local variable file.
            target: Vault / record / subsection to sync with.
            client: Retry wrapper for remote calls. Defaults to env config.
            backups: Backup manager. Defaults to one next to env_file.
            state_store: Sync state store. Defaults to one next to env_file.
            prompt: Interactive conflict prompt, if a terminal is available.
        """
        self.backend = backend
        self.env_file = Path(env_file)
        self.target = target
        self.client = client or ResilientClient()
        self.backups = backups or BackupManager()
        self.state_store = state_store or StateStore(self.env_file)
        self.prompt = prompt
        self.cache = ItemCache()

    @property
    def _cache_key(self) -> tuple[str, str]:
        return (self.target.vault, self.target.record)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _read_local(self) -> VariableSet:
        return freeze(read_env_file(self.env_file, missing_ok=True))

    def _record_exists(self) -> bool:
        return self.cache.get_or_check(
            self._cache_key,
            lambda: self.client.call(
                "check if item exists", self.backend.record_exists, self.target
            ),
        )

    def _read_remote(self) -> tuple[VariableSet, bool]:
        if not self._record_exists():
            logger.info("Record %s does not exist yet", self.target.label)
            return freeze({}), False
        variables = self.client.call(
            "get item from vault", self.backend.fetch_variables, self.target
        )
        return freeze(variables), True

    def fetch(self) -> Snapshot:
        """Read the local file and the remote record concurrently.

        Both reads are joined before any error is raised.

        Raises:
            LocalIOError: If the local file exists but cannot be read.
            RemoteError: If the remote read fails after retries.
        """
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="op-env-fetch") as pool:
            local_future = pool.submit(self._read_local)
            remote_future = pool.submit(self._read_remote)
            wait([local_future, remote_future])

        local = local_future.result()
        remote, exists = remote_future.result()
        logger.debug(
            "Fetched %d local and %d remote variables", len(local), len(remote)
        )
        return Snapshot(local=local, remote=remote, remote_exists=exists)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _decide(
        self,
        snapshot: Snapshot,
        result: DiffResult,
        options: SyncOptions,
        previous: Optional[SyncStateRecord],
    ) -> dict[str, Decision]:
        decisions: dict[str, Decision] = {}

        if not snapshot.remote_exists:
            # First push: everything local seeds the new record.
            for key in result.deletions:
                decisions[key] = Decision.local()
        elif options.three_way:
            known = previous.checksums if previous else {}
            for key in result.deletions:
                if key not in known:
                    decisions[key] = Decision.local()

        conflicts = set(result.modifications)
        if options.three_way and previous is not None:
            for key in result.modifications:
                base = previous.checksums.get(key)
                if base is None:
                    continue
                local_moved = checksum(snapshot.local[key]) != base
                remote_moved = checksum(snapshot.remote[key]) != base
                if remote_moved and not local_moved:
                    decisions[key] = Decision.remote()
                    conflicts.discard(key)
                elif local_moved and not remote_moved:
                    decisions[key] = Decision.local()
                    conflicts.discard(key)

        resolver = ConflictResolver(options.strategy, self.prompt)
        decisions.update(
            resolver.resolve_all(conflicts, snapshot.local, snapshot.remote)
        )
        return decisions

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(self, options: Optional[SyncOptions] = None) -> SyncReport:
        """Run a full sync.

        Args:
            options: Strategy, dry-run, backup and three-way settings.

        Returns:
            SyncReport. Its exit_code is 1 when conflicts were skipped.

        Raises:
            SyncError: If write-back or state persistence failed. The
                local file has been restored when this is raised.
            OpEnvError: For any other fatal failure.
        """
        options = options or SyncOptions()
        phases: list[SyncPhase] = [SyncPhase.IDLE]

        def enter(phase: SyncPhase) -> None:
            logger.debug("Sync phase: %s -> %s", phases[-1].value, phase.value)
            phases.append(phase)

        try:
            enter(SyncPhase.FETCHING)
            if options.dry_run:
                local = self._read_local()
                enter(SyncPhase.DONE)
                return SyncReport(
                    status=SyncStatus.DRY_RUN,
                    target=self.target,
                    env_file=self.env_file,
                    local_count=len(local),
                    phases=phases,
                )

            snapshot = self.fetch()

            enter(SyncPhase.DIFFING)
            result = diff(snapshot.local, snapshot.remote)
            report = SyncReport(
                status=SyncStatus.UP_TO_DATE,
                target=self.target,
                env_file=self.env_file,
                diff=result,
                local_count=len(snapshot.local),
                remote_count=len(snapshot.remote),
                merged_count=len(snapshot.local),
            )
            report.phases = phases
            if result.is_empty:
                logger.info("Already in sync: %s <-> %s", self.env_file, self.target.label)
                enter(SyncPhase.DONE)
                return report

            enter(SyncPhase.RESOLVING)
            previous = self.state_store.load(self.target)
            decisions = self._decide(snapshot, result, options, previous)
            skipped = sorted(
                key for key, d in decisions.items() if d.action == ResolutionAction.SKIP
            )

            enter(SyncPhase.MERGING)
            merged = merge(snapshot.local, snapshot.remote, result, decisions)

            enter(SyncPhase.WRITING_BACK)
            self._write_back(snapshot, merged, skipped, previous, options, report, enter)

            report.merged_count = len(merged)
            report.skipped = skipped
            report.applied = result.total_changes - len(skipped)
            report.status = SyncStatus.UNRESOLVED if skipped else SyncStatus.SYNCED
            enter(SyncPhase.DONE)

            if skipped:
                logger.warning(
                    "%d conflict(s) left unresolved: %s", len(skipped), ", ".join(skipped)
                )
            return report
        except SyncError:
            raise
        except OpEnvError:
            enter(SyncPhase.FAILED)
            raise
        finally:
            self.cache.clear()

    def _write_back(
        self,
        snapshot: Snapshot,
        merged: Mapping[str, str],
        skipped: list[str],
        previous: Optional[SyncStateRecord],
        options: SyncOptions,
        report: SyncReport,
        enter: Callable[[SyncPhase], None],
    ) -> None:
        """Write local, push remote, persist state; restore local on failure."""
        local_changes = dict(merged) != dict(snapshot.local)
        existed = self.env_file.exists()
        handle: Optional[BackupHandle] = None
        local_written = False
        phase = SyncPhase.WRITING_BACK

        try:
            if local_changes:
                if options.backup:
                    handle = self.backups.backup(self.env_file)
                    report.backup_path = handle.backup_path if handle else None
                write_env_file(self.env_file, merged)
                local_written = True
                report.local_written = True
                logger.info("Wrote %d variables to %s", len(merged), self.env_file)

            pushed = self._push_changes(snapshot, merged, skipped)
            report.remote_fields_pushed = pushed
            report.remote_created = not snapshot.remote_exists

            phase = SyncPhase.PERSISTING_STATE
            enter(phase)
            self.state_store.save(self.target, merged, unresolved=skipped, base=previous)
        except Exception as exc:
            if local_written:
                try:
                    self._undo_local_write(handle, existed)
                except OpEnvError as restore_exc:
                    logger.error("Restoring %s failed: %s", self.env_file, restore_exc)
            enter(SyncPhase.FAILED)
            raise SyncError(phase.value, f"Sync failed: {exc}") from exc

    def _push_changes(
        self,
        snapshot: Snapshot,
        merged: Mapping[str, str],
        skipped: list[str],
    ) -> int:
        if not snapshot.remote_exists:
            self.client.call(
                "create item", self.backend.write_variables, self.target, merged, True
            )
            self.cache.set(self._cache_key, True)
            return len(merged)

        changed = {
            key: value
            for key, value in merged.items()
            if key not in skipped
            and (
                key not in snapshot.remote
                or normalize_value(value) != normalize_value(snapshot.remote[key])
            )
        }
        if changed:
            self.client.call(
                "update item", self.backend.write_variables, self.target, changed, False
            )
        return len(changed)

    def _undo_local_write(self, handle: Optional[BackupHandle], existed: bool) -> None:
        if handle is not None:
            self.backups.restore(handle)
        elif not existed:
            self.env_file.unlink(missing_ok=True)
            logger.info("Removed %s created by the failed sync", self.env_file)
        else:
            logger.error(
                "Cannot restore %s: backups are disabled", self.env_file
            )

    # ------------------------------------------------------------------
    # One-directional operations
    # ------------------------------------------------------------------

    def diff(self) -> tuple[Snapshot, DiffResult]:
        """Fetch both sides and compare them without changing anything."""
        try:
            snapshot = self.fetch()
        finally:
            self.cache.clear()
        return snapshot, diff(snapshot.local, snapshot.remote)

    def push(self, dry_run: bool = False) -> int:
        """Write every local variable to the vault record in one call.

        Returns:
            Number of fields pushed (or that would be pushed).
        """
        local = read_env_file(self.env_file)
        if not local:
            logger.warning("No variables found in %s", self.env_file)
            return 0
        if dry_run:
            return len(local)
        try:
            create = not self._record_exists()
            self.client.call(
                "create item" if create else "update item",
                self.backend.write_variables,
                self.target,
                local,
                create,
            )
        finally:
            self.cache.clear()
        return len(local)

    def inject(self, output: Path, overwrite: bool = False) -> int:
        """Write the vault record's variables to ``output`` (mode 0600).

        Raises:
            LocalIOError: If ``output`` exists and overwrite is False.
            RemoteError: If the record cannot be read.
        """
        output = Path(output)
        if output.exists() and not overwrite:
            raise LocalIOError(output, "Refusing to overwrite existing file (use --overwrite)")
        try:
            variables = self.client.call(
                "get item from vault", self.backend.fetch_variables, self.target
            )
        finally:
            self.cache.clear()

        now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        header = [
            "Generated by op-env-manager",
            f"Source: {self.target.label}",
            f"Generated at: {now}",
            "WARNING: this file contains secrets. Do not commit it.",
        ]
        write_env_file(output, variables, header=header)
        logger.info("Injected %d variables into %s", len(variables), output)
        return len(variables)
