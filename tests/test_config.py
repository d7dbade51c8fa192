"""Tests for configuration loading and CLI overrides."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from spo_reclaim.config import ReclaimConfig, load_config, parse_date
from spo_reclaim.errors import ConfigError
from spo_reclaim.main import build_parser

ENV_VARS = ("SHAREPOINT_TENANT_ID", "SHAREPOINT_CLIENT_ID", "SHAREPOINT_CLIENT_SECRET", "SHAREPOINT_SITE_URL")

YAML = """
sharepoint:
  site_url: https://contoso.sharepoint.com/sites/sales
  library: Decks
discovery:
  strategy: enumeration
  extension: docx
  min_size_bytes: 1048576
  modified_before: 2024-06-01
processing:
  mode: shrink
  dry_run: true
  max_retries: 3
versions:
  cutoff_date: "2023-07-01"
  keep_min_versions: 2
output:
  ledger_path: state/ledger.db
logging:
  level: DEBUG
  file: logs/run.log
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def no_env_file(tmp_path):
    return tmp_path / "missing.env"


class TestParseDate:
    def test_plain_date_is_utc_midnight(self):
        assert parse_date("2024-01-01") == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_zulu_suffix(self):
        assert parse_date("2024-01-01T12:30:00Z") == datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)

    def test_invalid(self):
        with pytest.raises(ConfigError):
            parse_date("yesterday")


class TestLoadConfig:
    def test_defaults_without_file(self, no_env_file):
        config = load_config(env_file=no_env_file)

        assert config.mode == "versions"
        assert config.strategy == "search"
        assert config.keep_min_versions == 1
        assert config.cutoff_date == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert config.resume
        assert not config.dry_run

    def test_yaml_sections(self, tmp_path, no_env_file):
        path = tmp_path / "config.yaml"
        path.write_text(YAML, encoding="utf-8")

        config = load_config(path, env_file=no_env_file)

        assert config.site_url == "https://contoso.sharepoint.com/sites/sales"
        assert config.library == "Decks"
        assert config.strategy == "enumeration"
        assert config.extension == ".docx"
        assert config.min_size_bytes == 1048576
        assert config.modified_before == datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert config.mode == "shrink"
        assert config.dry_run
        assert config.max_retries == 3
        assert config.cutoff_date == datetime(2023, 7, 1, tzinfo=timezone.utc)
        assert config.keep_min_versions == 2
        assert config.ledger_path == Path("state/ledger.db")
        assert config.log_level == "DEBUG"
        assert config.log_file == Path("logs/run.log")

    def test_environment_overrides_file(self, tmp_path, no_env_file, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(YAML, encoding="utf-8")
        monkeypatch.setenv("SHAREPOINT_SITE_URL", "https://contoso.sharepoint.com/sites/hr")
        monkeypatch.setenv("SHAREPOINT_CLIENT_SECRET", "s3cret")

        config = load_config(path, env_file=no_env_file)

        assert config.site_url == "https://contoso.sharepoint.com/sites/hr"
        assert config.client_secret == "s3cret"

    def test_dotenv_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("SHAREPOINT_TENANT_ID=tenant-123\n", encoding="utf-8")

        config = load_config(env_file=env_file)

        assert config.tenant_id == "tenant-123"

    def test_missing_file(self, tmp_path, no_env_file):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml", env_file=no_env_file)

    def test_invalid_mode(self, tmp_path, no_env_file):
        path = tmp_path / "config.yaml"
        path.write_text("processing:\n  mode: compress\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path, env_file=no_env_file)


class TestOverrides:
    def test_none_values_are_ignored(self):
        config = ReclaimConfig(keep_min_versions=3).apply_overrides({"keep_min_versions": None, "mode": "shrink"})
        assert config.keep_min_versions == 3
        assert config.mode == "shrink"

    def test_dates_are_parsed(self):
        config = ReclaimConfig().apply_overrides({"cutoff_date": "2023-03-15"})
        assert config.cutoff_date == datetime(2023, 3, 15, tzinfo=timezone.utc)

    def test_negative_keep_is_rejected(self):
        with pytest.raises(ConfigError):
            ReclaimConfig().apply_overrides({"keep_min_versions": -1})

    def test_parsed_flags(self):
        args = build_parser().parse_args([
            "--mode", "shrink", "--discovery", "enumeration", "--dry-run", "--no-resume",
            "--min-size", "2048", "--ledger-key", "name",
        ])
        overrides = {k: v for k, v in vars(args).items() if k != "config"}

        config = ReclaimConfig().apply_overrides(overrides)

        assert config.mode == "shrink"
        assert config.strategy == "enumeration"
        assert config.dry_run
        assert config.resume is False
        assert config.min_size_bytes == 2048
        assert config.ledger_key == "name"
        assert config.test_mode is False

    def test_unset_flags_keep_config_values(self):
        args = build_parser().parse_args([])
        assert all(v is None for v in vars(args).values())
