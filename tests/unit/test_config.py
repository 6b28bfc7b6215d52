"""Unit tests for membership_ledger.config."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from membership_ledger.config import ConfigValidationError, load_config, validate_config

BASE_YAML = textwrap.dedent("""\
    ledgers_path: config/ledgers.json
    service_account_path: config/service_account.json
    publish_enabled: true
    request_timeout_seconds: 15
    audit:
      backend: postgres
      db_dsn_env: LEDGER_DSN
""")


@pytest.fixture
def config_file(tmp_path) -> Path:
    path = tmp_path / "membership_ledger.yml"
    path.write_text(BASE_YAML, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_values(self, config_file):
        cfg = load_config(config_file, environ={})
        assert cfg.ledgers_path == Path("config/ledgers.json")
        assert cfg.request_timeout_seconds == 15.0
        assert cfg.audit_backend == "postgres"
        assert cfg.audit_db_dsn_env == "LEDGER_DSN"
        assert cfg.mapping_key_env == "MEMBERSHIP_LEDGER_MAPPING_KEY"
        assert cfg.publish_enabled is True

    def test_update_logs_env_overrides(self, config_file):
        cfg = load_config(config_file, environ={"MEMBERSHIP_LEDGER_UPDATE_LOGS": "0"})
        assert cfg.publish_enabled is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yml", environ={})


class TestSecrets:
    def test_mapping_key_from_env(self, config_file):
        cfg = load_config(config_file, environ={})
        assert cfg.mapping_key({"MEMBERSHIP_LEDGER_MAPPING_KEY": "s3cret"}) == "s3cret"

    def test_mapping_key_required(self, config_file):
        cfg = load_config(config_file, environ={})
        with pytest.raises(ConfigValidationError, match="MEMBERSHIP_LEDGER_MAPPING_KEY"):
            cfg.mapping_key({})

    def test_dsn_required_for_postgres(self, config_file):
        cfg = load_config(config_file, environ={})
        with pytest.raises(ConfigValidationError, match="LEDGER_DSN"):
            cfg.audit_db_dsn({})


class TestValidateConfig:
    def test_root_must_be_mapping(self):
        with pytest.raises(ConfigValidationError, match="mapping"):
            validate_config(["a"])

    def test_missing_keys(self):
        with pytest.raises(ConfigValidationError, match="service_account_path"):
            validate_config({"ledgers_path": "x"})

    def test_bad_backend(self):
        with pytest.raises(ConfigValidationError, match="audit backend"):
            validate_config({
                "ledgers_path": "x", "service_account_path": "y", "audit": {"backend": "kafka"},
            })

    @pytest.mark.parametrize("timeout", ["soon", 0, -5])
    def test_bad_timeout(self, timeout):
        with pytest.raises(ConfigValidationError, match="request_timeout_seconds"):
            validate_config({
                "ledgers_path": "x", "service_account_path": "y", "request_timeout_seconds": timeout,
            })

    def test_bad_publish_flag(self, tmp_path):
        path = tmp_path / "c.yml"
        path.write_text(BASE_YAML.replace("publish_enabled: true", "publish_enabled: maybe"))
        with pytest.raises(ConfigValidationError, match="publish_enabled"):
            load_config(path, environ={})
