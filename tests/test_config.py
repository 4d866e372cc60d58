"""
Tests for configuration, helpers and revision lookups.
"""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from i18n_batch.common_types import ConfigurationError, SortKey
from i18n_batch.config import BatchConfig, split_patterns
from i18n_batch.utils import atomic_write_json, format_duration, sanitize_path
from i18n_batch.vcs import git_revision, no_revision


class TestBatchConfig:
    """Tests for BatchConfig."""

    def test_split_patterns_keeps_brace_groups(self):
        assert split_patterns("**/*.{js,ts}, src/**/*.vue") == ["**/*.{js,ts}", "src/**/*.vue"]
        assert split_patterns(" , ") == []

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("I18N_MAX_CONCURRENCY", "7")
        monkeypatch.setenv("I18N_TASK_TIMEOUT", "12.5")
        monkeypatch.setenv("I18N_TRACK_REVISIONS", "false")
        monkeypatch.setenv("I18N_FILE_PATTERNS", "a/*.{ts,tsx},b/*.js")
        monkeypatch.setenv("I18N_PRIORITIZE_BY", "size")

        config = BatchConfig()

        assert config.max_concurrency == 7
        assert config.task_timeout_seconds == 12.5
        assert config.track_revisions is False
        assert config.file_patterns == ["a/*.{ts,tsx}", "b/*.js"]
        assert config.sort_key == SortKey.SIZE

    @pytest.mark.parametrize("name,value", [
        ("I18N_MAX_CONCURRENCY", "abc"),
        ("I18N_TASK_TIMEOUT", "ten"),
        ("I18N_RESPONSE_MAX_ENTRIES", "1e3"),
        ("I18N_RUN_DEADLINE", "soon"),
    ])
    def test_malformed_numbers_raise_configuration_error(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError, match=name):
            BatchConfig()

    def test_isolation_modes_accepted(self, batch_config):
        for mode in ("in_process", "thread", "process"):
            batch_config.isolation_mode = mode
            assert batch_config.validate() == []

    def test_run_deadline_defaults_to_twice_timeout(self, batch_config):
        assert batch_config.effective_run_deadline == 10
        batch_config.run_deadline_seconds = 3
        assert batch_config.effective_run_deadline == 3

    def test_valid_config(self, batch_config):
        assert batch_config.validate() == []
        batch_config.ensure_valid()

    @pytest.mark.parametrize("field_name,value", [
        ("max_concurrency", 0),
        ("task_timeout_seconds", 0),
        ("isolation_mode", "subprocess"),
        ("max_workers", 0),
        ("response_max_entries", 0),
        ("prioritize_by", "name"),
        ("file_patterns", []),
    ])
    def test_invalid_values(self, batch_config, field_name, value):
        setattr(batch_config, field_name, value)

        assert len(batch_config.validate()) == 1
        with pytest.raises(ConfigurationError):
            batch_config.ensure_valid()


class TestUtils:
    """Tests for formatting and persistence helpers."""

    @pytest.mark.parametrize("seconds,expected", [
        (45, "45s"),
        (200, "3m 20s"),
        (7500, "2h 5m"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_sanitize_path(self):
        assert sanitize_path("src/a b/c.ts") == "src_ab_c.ts"
        assert sanitize_path("C:\\app\\x.js") == "C_app_x.js"

    def test_atomic_write_leaves_no_temp(self, temp_dir):
        target = temp_dir / "data.json"

        atomic_write_json(target, {"文本": 1})

        assert json.loads(target.read_text(encoding="utf-8")) == {"文本": 1}
        assert list(temp_dir.iterdir()) == [target]


class TestRevisionLookup:
    """Tests for git revision lookups."""

    def test_no_revision(self):
        assert no_revision("anything") is None

    def test_git_missing(self):
        with patch("i18n_batch.vcs.shutil.which", return_value=None):
            assert git_revision(__file__) is None

    def test_git_reports_revision(self):
        completed = MagicMock(returncode=0, stdout="abc123\n")
        with patch("i18n_batch.vcs.shutil.which", return_value="/usr/bin/git"), \
             patch("i18n_batch.vcs.subprocess.run", return_value=completed):
            assert git_revision(__file__) == "abc123"

    def test_untracked_or_failing(self):
        failed = MagicMock(returncode=128, stdout="")
        with patch("i18n_batch.vcs.shutil.which", return_value="/usr/bin/git"), \
             patch("i18n_batch.vcs.subprocess.run", return_value=failed):
            assert git_revision(__file__) is None

    def test_timeout(self):
        with patch("i18n_batch.vcs.shutil.which", return_value="/usr/bin/git"), \
             patch("i18n_batch.vcs.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="git", timeout=10)):
            assert git_revision(__file__) is None
