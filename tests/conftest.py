"""Shared test fixtures for op-env-manager."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional

import pytest

from op_env_manager.errors import RemoteError
from op_env_manager.retry import ResilientClient, RetryConfig
from op_env_manager.sync.backends import VaultBackend
from op_env_manager.sync.engine import SyncEngine
from op_env_manager.sync.models import VaultTarget

RETRY_ENV_VARS = (
    "OP_MAX_RETRIES",
    "OP_RETRY_DELAY",
    "OP_BACKOFF_FACTOR",
    "OP_MAX_DELAY",
    "OP_RETRY_JITTER",
    "OP_DISABLE_RETRY",
    "OP_RETRY_QUIET",
    "OP_QUIET_MODE",
)


class FakeVault(VaultBackend):
    """In-memory vault backend.

    Records are keyed by (vault, record, subsection). ``failures`` maps an
    operation name (record_exists, fetch_variables, write_variables,
    read_reference) to exceptions raised, in order, before calls succeed.
    """

    def __init__(self):
        self.records: dict[tuple[str, str, Optional[str]], dict[str, str]] = {}
        self.references: dict[str, str] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []

    @property
    def name(self) -> str:
        return "fake"

    def available(self) -> bool:
        return True

    def _maybe_fail(self, op: str) -> None:
        queue = self.failures.get(op)
        if queue:
            raise queue.pop(0)

    def put(self, target: VaultTarget, variables: Mapping[str, str]) -> None:
        self.records[(target.vault, target.record, target.subsection)] = dict(variables)

    def get(self, target: VaultTarget) -> dict[str, str]:
        return dict(self.records[(target.vault, target.record, target.subsection)])

    def record_exists(self, target: VaultTarget) -> bool:
        self.calls.append(("record_exists", target.label))
        self._maybe_fail("record_exists")
        return self._has(target)

    def _has(self, target: VaultTarget) -> bool:
        return any(k[:2] == (target.vault, target.record) for k in self.records)

    def fetch_variables(self, target: VaultTarget) -> dict[str, str]:
        self.calls.append(("fetch_variables", target.label))
        self._maybe_fail("fetch_variables")
        if not self._has(target):
            raise RemoteError("get item from vault", f'"{target.record}" isn\'t an item', 1)
        return dict(self.records.get((target.vault, target.record, target.subsection), {}))

    def write_variables(self, target, variables, create=False) -> None:
        self.calls.append(("write_variables", target.label, dict(variables), create))
        self._maybe_fail("write_variables")
        key = (target.vault, target.record, target.subsection)
        self.records.setdefault(key, {}).update(variables)

    def read_reference(self, reference: str) -> str:
        self.calls.append(("read_reference", reference))
        self._maybe_fail("read_reference")
        if reference not in self.references:
            raise RemoteError("resolve secret reference", f"could not read secret {reference}: isn't an item", 1)
        return self.references[reference]

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture(autouse=True)
def clean_retry_env(monkeypatch):
    """Keep the caller's OP_* settings out of every test."""
    for var in RETRY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()


@pytest.fixture
def target() -> VaultTarget:
    return VaultTarget(vault="Personal", record="myapp")


@pytest.fixture
def env_file(tmp_path: Path) -> Path:
    """Path to a (not yet created) .env in a temp project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project / ".env"


@pytest.fixture
def fast_client() -> ResilientClient:
    """Retrying client that never sleeps."""
    return ResilientClient(RetryConfig(jitter=False), sleep=lambda _s: None)


@pytest.fixture
def engine(fake_vault: FakeVault, env_file: Path, target: VaultTarget, fast_client) -> SyncEngine:
    return SyncEngine(fake_vault, env_file, target, client=fast_client)
