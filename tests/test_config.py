"""
Tests for project configuration and the record-existence cache.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from op_env_manager.cache import ItemCache
from op_env_manager.config import ProjectConfig, load_project_config
from op_env_manager.errors import ConfigError
from op_env_manager.sync.models import ConflictStrategy


class TestProjectConfig:
    """Loading .op-env-manager.yaml."""

    def test_defaults_without_file(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_project_config()
        assert config.vault is None
        assert config.item == "env-secrets"
        assert config.env_file == ".env"
        assert config.strategy == ConflictStrategy.INTERACTIVE

    def test_loads_from_cwd(self, tmp_path: Path, monkeypatch):
        (tmp_path / ".op-env-manager.yaml").write_text(
            "vault: Personal\nitem: myapp\nsection: prod\nstrategy: theirs\nbackup: false\n"
        )
        monkeypatch.chdir(tmp_path)

        config = load_project_config()

        assert config.vault == "Personal"
        assert config.section == "prod"
        assert config.strategy == ConflictStrategy.THEIRS
        assert config.backup is False

    def test_explicit_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_project_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("vault: [unclosed\n")
        with pytest.raises(ConfigError):
            load_project_config(path)

    def test_unknown_key(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("vault: V\ncolour: blue\n")
        with pytest.raises(ConfigError):
            load_project_config(path)

    def test_bad_strategy(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("strategy: mine\n")
        with pytest.raises(ConfigError):
            load_project_config(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_project_config(path)

    def test_overrides_skip_none(self):
        config = ProjectConfig(vault="A", item="x").merged(vault="B", item=None)
        assert config.vault == "B"
        assert config.item == "x"


class TestItemCache:
    """Thread-safe existence cache."""

    def test_check_called_once(self):
        cache = ItemCache()
        calls = []

        def check():
            calls.append(1)
            return True

        assert cache.get_or_check(("V", "r"), check) is True
        assert cache.get_or_check(("V", "r"), check) is True
        assert len(calls) == 1

    def test_false_is_cached(self):
        cache = ItemCache()
        cache.set(("V", "r"), False)
        assert cache.get_or_check(("V", "r"), lambda: True) is False

    def test_clear(self):
        cache = ItemCache()
        cache.set(("V", "r"), True)
        cache.clear()
        assert cache.get(("V", "r")) is None
        assert len(cache) == 0

    def test_concurrent_sets(self):
        cache = ItemCache()
        threads = [
            threading.Thread(target=cache.set, args=((f"V{i}", "r"), True)) for i in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(cache) == 20
