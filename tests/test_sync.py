"""
Tests for the sync engine -- orchestration, write-back, and recovery.
"""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from op_env_manager.envfile import read_env_file, write_env_file
from op_env_manager.errors import LocalIOError, RemoteError, SyncError
from op_env_manager.sync.engine import SyncEngine
from op_env_manager.sync.models import (
    ConflictStrategy,
    Decision,
    ExitCode,
    SyncOptions,
    SyncPhase,
    SyncStatus,
)
from op_env_manager.sync.state import StateStore, checksum


def opts(strategy: ConflictStrategy = ConflictStrategy.OURS, **kwargs) -> SyncOptions:
    return SyncOptions(strategy=strategy, **kwargs)


class TestScenarios:
    """Worked examples of two-way sync."""

    @pytest.mark.parametrize("strategy", list(ConflictStrategy))
    def test_addition_and_deletion(self, engine, fake_vault, env_file, target, strategy):
        """local {A,B} + remote {A,C} -> {A,C} whatever the strategy."""
        write_env_file(env_file, {"A": "1", "B": "2"})
        fake_vault.put(target, {"A": "1", "C": "3"})

        report = engine.run(opts(strategy))

        assert read_env_file(env_file) == {"A": "1", "C": "3"}
        assert report.diff.additions == {"C"}
        assert report.diff.deletions == {"B"}
        assert report.status == SyncStatus.SYNCED
        assert report.exit_code == ExitCode.OK

    def test_ours_keeps_local_and_pushes(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"X": "old"})
        fake_vault.put(target, {"X": "new"})

        engine.run(opts(ConflictStrategy.OURS))

        assert read_env_file(env_file) == {"X": "old"}
        assert fake_vault.get(target) == {"X": "old"}

    def test_theirs_takes_remote(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"X": "old"})
        fake_vault.put(target, {"X": "new"})

        engine.run(opts(ConflictStrategy.THEIRS))

        assert read_env_file(env_file) == {"X": "new"}
        assert fake_vault.get(target) == {"X": "new"}

    def test_first_sync_creates_record(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1", "B": "2"})

        report = engine.run(opts())

        assert report.remote_created
        assert fake_vault.get(target) == {"A": "1", "B": "2"}
        assert read_env_file(env_file) == {"A": "1", "B": "2"}
        writes = [c for c in fake_vault.calls if c[0] == "write_variables"]
        assert len(writes) == 1 and writes[0][3] is True

    def test_missing_local_file_pulls_everything(self, engine, fake_vault, env_file, target):
        fake_vault.put(target, {"A": "1"})

        report = engine.run(opts())

        assert read_env_file(env_file) == {"A": "1"}
        assert stat.S_IMODE(env_file.stat().st_mode) == 0o600
        assert report.backup_path is None

    def test_multiline_values_round_trip(self, engine, fake_vault, env_file, target):
        fake_vault.put(target, {"CERT": "line1\nline2"})

        engine.run(opts())
        second = engine.run(opts())

        assert read_env_file(env_file) == {"CERT": "line1\nline2"}
        assert second.status == SyncStatus.UP_TO_DATE


class TestIdempotence:
    """A second sync with no intervening edits changes nothing."""

    def test_second_run_is_noop(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1", "B": "2"})
        fake_vault.put(target, {"A": "1", "C": "3"})
        engine.run(opts())
        content = env_file.read_bytes()
        fake_vault.calls.clear()

        report = engine.run(opts())

        assert report.status == SyncStatus.UP_TO_DATE
        assert report.diff.is_empty
        assert env_file.read_bytes() == content
        assert "write_variables" not in fake_vault.call_names()
        assert report.phases[-1] == SyncPhase.DONE
        assert SyncPhase.WRITING_BACK not in report.phases


class TestWriteBack:
    """Batched remote push, backups, and state."""

    def test_only_changed_fields_pushed(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1", "B": "local"})
        fake_vault.put(target, {"A": "1", "B": "remote"})

        report = engine.run(opts(ConflictStrategy.OURS))

        writes = [c for c in fake_vault.calls if c[0] == "write_variables"]
        assert len(writes) == 1
        assert writes[0][2] == {"B": "local"}
        assert report.remote_fields_pushed == 1
        assert not report.local_written

    def test_backup_taken_before_local_change(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})
        fake_vault.put(target, {"A": "2"})

        report = engine.run(opts(ConflictStrategy.THEIRS))

        assert report.backup_path is not None
        assert read_env_file(report.backup_path) == {"A": "1"}

    def test_no_backup_option(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})
        fake_vault.put(target, {"A": "2"})

        report = engine.run(opts(ConflictStrategy.THEIRS, backup=False))

        assert report.backup_path is None
        assert not (env_file.parent / ".op-env-manager").exists()

    def test_state_written_after_sync(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})
        fake_vault.put(target, {"B": "2"})

        engine.run(opts())

        record = StateStore(env_file).load(target)
        assert record is not None
        assert set(record.checksums) == {"B"}

    def test_phase_history(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})
        fake_vault.put(target, {"A": "2"})

        report = engine.run(opts(ConflictStrategy.THEIRS))

        assert report.phases == [
            SyncPhase.IDLE,
            SyncPhase.FETCHING,
            SyncPhase.DIFFING,
            SyncPhase.RESOLVING,
            SyncPhase.MERGING,
            SyncPhase.WRITING_BACK,
            SyncPhase.PERSISTING_STATE,
            SyncPhase.DONE,
        ]


class TestConflicts:
    """Interactive resolution and skipped keys."""

    def test_interactive_without_prompt_skips(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"X": "local", "Y": "same"})
        fake_vault.put(target, {"X": "remote", "Y": "same", "Z": "new"})

        report = engine.run(opts(ConflictStrategy.INTERACTIVE))

        assert report.status == SyncStatus.UNRESOLVED
        assert report.exit_code == ExitCode.UNRESOLVED
        assert report.skipped == ["X"]
        assert read_env_file(env_file) == {"X": "local", "Y": "same", "Z": "new"}
        assert fake_vault.get(target)["X"] == "remote"

    def test_prompt_decisions_applied(self, fake_vault, env_file, target, fast_client):
        write_env_file(env_file, {"X": "local", "Y": "l"})
        fake_vault.put(target, {"X": "remote", "Y": "r"})
        answers = {"X": Decision.edit("merged"), "Y": Decision.remote()}
        engine = SyncEngine(
            fake_vault, env_file, target, client=fast_client,
            prompt=lambda key, _l, _r: answers[key],
        )

        report = engine.run(opts(ConflictStrategy.INTERACTIVE))

        assert report.status == SyncStatus.SYNCED
        assert read_env_file(env_file) == {"X": "merged", "Y": "r"}
        assert fake_vault.get(target) == {"X": "merged", "Y": "r"}


class TestThreeWay:
    """Merge against the last synced checksums."""

    def _seed(self, engine, fake_vault, env_file, target, values):
        write_env_file(env_file, values)
        fake_vault.put(target, values)
        StateStore(env_file).save(target, values)

    def test_remote_only_change_applies_cleanly(self, engine, fake_vault, env_file, target):
        self._seed(engine, fake_vault, env_file, target, {"A": "1"})
        fake_vault.put(target, {"A": "2"})

        report = engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))

        assert report.status == SyncStatus.SYNCED
        assert read_env_file(env_file) == {"A": "2"}

    def test_local_only_change_is_pushed(self, engine, fake_vault, env_file, target):
        self._seed(engine, fake_vault, env_file, target, {"A": "1"})
        write_env_file(env_file, {"A": "local"})

        report = engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))

        assert report.status == SyncStatus.SYNCED
        assert fake_vault.get(target) == {"A": "local"}

    def test_both_changed_is_conflict(self, engine, fake_vault, env_file, target):
        self._seed(engine, fake_vault, env_file, target, {"A": "1"})
        write_env_file(env_file, {"A": "local"})
        fake_vault.put(target, {"A": "remote"})

        report = engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))

        assert report.skipped == ["A"]

    def test_skipped_conflict_stays_a_conflict(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"X": "local"})
        fake_vault.put(target, {"X": "remote"})

        first = engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))
        second = engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))

        assert first.skipped == ["X"]
        assert second.status == SyncStatus.UNRESOLVED
        assert second.skipped == ["X"]
        assert read_env_file(env_file) == {"X": "local"}
        assert fake_vault.get(target) == {"X": "remote"}

    def test_skipped_conflict_keeps_previous_base(self, engine, fake_vault, env_file, target):
        self._seed(engine, fake_vault, env_file, target, {"X": "1", "Y": "1"})
        write_env_file(env_file, {"X": "local", "Y": "1"})
        fake_vault.put(target, {"X": "remote", "Y": "2"})

        engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))

        record = StateStore(env_file).load(target)
        assert record.checksums["X"] == checksum("1")
        assert record.checksums["Y"] == checksum("2")

        second = engine.run(opts(ConflictStrategy.INTERACTIVE, three_way=True))
        assert second.skipped == ["X"]
        assert read_env_file(env_file)["X"] == "local"

    def test_new_local_key_is_kept(self, engine, fake_vault, env_file, target):
        self._seed(engine, fake_vault, env_file, target, {"A": "1"})
        write_env_file(env_file, {"A": "1", "NEW": "x"})

        engine.run(opts(three_way=True))

        assert read_env_file(env_file) == {"A": "1", "NEW": "x"}
        assert fake_vault.get(target) == {"A": "1", "NEW": "x"}

    def test_key_deleted_remotely_is_removed(self, engine, fake_vault, env_file, target):
        self._seed(engine, fake_vault, env_file, target, {"A": "1", "OLD": "x"})
        fake_vault.records[(target.vault, target.record, None)] = {"A": "1"}

        engine.run(opts(three_way=True))

        assert read_env_file(env_file) == {"A": "1"}


class TestDryRun:
    """Dry run reads only the local file."""

    def test_no_remote_calls(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1", "B": "2"})
        fake_vault.put(target, {"C": "3"})

        report = engine.run(opts(dry_run=True))

        assert report.status == SyncStatus.DRY_RUN
        assert report.local_count == 2
        assert fake_vault.calls == []
        assert read_env_file(env_file) == {"A": "1", "B": "2"}
        assert not StateStore(env_file).path.exists()


class TestFailures:
    """Fatal errors and local restore."""

    def test_remote_fetch_failure_is_fatal(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})
        fake_vault.put(target, {"A": "2"})
        fake_vault.failures["fetch_variables"] = [RemoteError("get item from vault", "permission denied", 1)]

        with pytest.raises(RemoteError):
            engine.run(opts())

        assert read_env_file(env_file) == {"A": "1"}

    def test_transient_fetch_failure_retried(self, engine, fake_vault, env_file, target):
        fake_vault.put(target, {"A": "1"})
        fake_vault.failures["fetch_variables"] = [RemoteError("get item from vault", "timeout", 1)]

        report = engine.run(opts())

        assert report.status == SyncStatus.SYNCED
        assert fake_vault.call_names().count("fetch_variables") == 2

    def test_unreadable_local_file_is_fatal(self, engine, fake_vault, env_file, target):
        env_file.mkdir()
        fake_vault.put(target, {"A": "1"})

        with pytest.raises(LocalIOError):
            engine.run(opts())

    def test_push_failure_restores_local(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1", "B": "local"})
        original = env_file.read_bytes()
        fake_vault.put(target, {"A": "2", "B": "remote", "C": "3"})
        fake_vault.failures["write_variables"] = [
            RemoteError("update item", "permission denied", 1)
        ]

        with pytest.raises(SyncError) as exc_info:
            engine.run(opts(ConflictStrategy.OURS))

        assert env_file.read_bytes() == original
        assert exc_info.value.phase == "writing_back"
        assert isinstance(exc_info.value.__cause__, RemoteError)
        assert not StateStore(env_file).path.exists()

    def test_failure_removes_newly_created_file(self, engine, fake_vault, env_file, target):
        fake_vault.put(target, {"A": "1"})
        fake_vault.failures["write_variables"] = []

        def boom(*_args, **_kwargs):
            raise LocalIOError(env_file, "disk full")

        engine.state_store.save = boom

        with pytest.raises(SyncError) as exc_info:
            engine.run(opts())

        assert exc_info.value.phase == "persisting_state"
        assert not env_file.exists()

    def test_cache_cleared_after_run(self, engine, fake_vault, env_file, target):
        fake_vault.put(target, {"A": "1"})
        engine.run(opts())
        assert len(engine.cache) == 0


class TestOneWay:
    """push, diff and inject."""

    def test_push_creates_then_updates(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})

        assert engine.push() == 1
        write_env_file(env_file, {"A": "2"})
        assert engine.push() == 1

        writes = [c for c in fake_vault.calls if c[0] == "write_variables"]
        assert [w[3] for w in writes] == [True, False]
        assert fake_vault.get(target) == {"A": "2"}

    def test_push_dry_run(self, engine, fake_vault, env_file):
        write_env_file(env_file, {"A": "1", "B": "2"})
        assert engine.push(dry_run=True) == 2
        assert fake_vault.calls == []

    def test_diff_makes_no_changes(self, engine, fake_vault, env_file, target):
        write_env_file(env_file, {"A": "1"})
        fake_vault.put(target, {"A": "2"})

        snapshot, result = engine.diff()

        assert result.modifications == {"A"}
        assert snapshot.remote_exists
        assert "write_variables" not in fake_vault.call_names()

    def test_inject_writes_header_and_values(self, engine, fake_vault, tmp_path: Path, target):
        fake_vault.put(target, {"A": "1", "B": "two words"})
        out = tmp_path / ".env.injected"

        assert engine.inject(out) == 2

        text = out.read_text()
        assert text.startswith("# Generated by op-env-manager")
        assert read_env_file(out) == {"A": "1", "B": "two words"}
        assert stat.S_IMODE(out.stat().st_mode) == 0o600

    def test_inject_refuses_overwrite(self, engine, fake_vault, tmp_path: Path, target):
        fake_vault.put(target, {"A": "1"})
        out = tmp_path / ".env"
        out.write_text("KEEP=1\n")

        with pytest.raises(LocalIOError):
            engine.inject(out)
        engine.inject(out, overwrite=True)
        assert read_env_file(out) == {"A": "1"}
