"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from marlin_sync.config import MarlinConfig


class TestConfig:
    """Environment defaults and validation."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MARLIN_SYNC_BATCH_SIZE", "8")
        monkeypatch.setenv("MARLIN_REPO_SUFFIX", ".notes")
        monkeypatch.setenv("MARLIN_AUTO_SYNC", "no")

        cfg = MarlinConfig()

        assert cfg.sync_batch_size == 8
        assert cfg.repo_suffix == ".notes"
        assert cfg.auto_sync is False

    def test_rejects_zero_batch(self):
        with pytest.raises(ValidationError):
            MarlinConfig(sync_batch_size=0)

    def test_rejects_negative_backoff(self):
        with pytest.raises(ValidationError):
            MarlinConfig(backoff_base=-1)

    def test_db_url_creates_parent(self, tmp_path):
        cfg = MarlinConfig(base_dir=tmp_path, database_path=Path("nested/db/marlin.db"))

        url = cfg.get_db_url()

        assert url == f"sqlite:///{tmp_path / 'nested/db/marlin.db'}"
        assert (tmp_path / "nested" / "db").is_dir()

    def test_absolute_path_untouched(self, tmp_path):
        cfg = MarlinConfig(base_dir=Path("/elsewhere"))
        assert cfg.get_absolute_path(tmp_path) == tmp_path
