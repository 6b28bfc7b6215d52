"""membership_ledger.config

YAML application config for the membership-ledger CLI.

Example (config/membership_ledger.yml):

    ledgers_path: config/ledgers.json
    service_account_path: config/service_account.json
    mapping_key_env: MEMBERSHIP_LEDGER_MAPPING_KEY
    publish_enabled: true
    request_timeout_seconds: 30
    reports_dir: ./artifacts/reports
    audit:
      backend: sheet            # sheet | postgres | memory
      db_dsn_env: MEMBERSHIP_LEDGER_DB_DSN

Secrets never live in this file: the codec secret and the audit DSN are read
from the environment variables it names. MEMBERSHIP_LEDGER_UPDATE_LOGS=0|1
overrides publish_enabled.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

REQUIRED_YAML_KEYS = frozenset({"ledgers_path", "service_account_path"})

VALID_AUDIT_BACKENDS = ("sheet", "postgres", "memory")

UPDATE_LOGS_ENV = "MEMBERSHIP_LEDGER_UPDATE_LOGS"


class ConfigValidationError(ValueError):
    """Raised when the YAML config fails schema validation."""


@dataclass
class AppConfig:
    ledgers_path: Path
    service_account_path: Path
    mapping_key_env: str = "MEMBERSHIP_LEDGER_MAPPING_KEY"
    publish_enabled: bool = True
    request_timeout_seconds: float = 30.0
    reports_dir: Path = Path("./artifacts/reports")
    audit_backend: str = "sheet"
    audit_db_dsn_env: str = "MEMBERSHIP_LEDGER_DB_DSN"

    def mapping_key(self, environ: Mapping[str, str] | None = None) -> str:
        env = os.environ if environ is None else environ
        key = env.get(self.mapping_key_env, "")
        if not key:
            raise ConfigValidationError(f"env var {self.mapping_key_env} must be set")
        return key

    def audit_db_dsn(self, environ: Mapping[str, str] | None = None) -> str:
        env = os.environ if environ is None else environ
        dsn = env.get(self.audit_db_dsn_env, "")
        if not dsn:
            raise ConfigValidationError(
                f"audit backend 'postgres' needs env var {self.audit_db_dsn_env}"
            )
        return dsn


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigValidationError(f"'{key}' value '{value}' is not a boolean.")


def validate_config(data: Any) -> None:
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    missing = REQUIRED_YAML_KEYS - set(data.keys())
    if missing:
        raise ConfigValidationError(f"Missing required YAML keys: {sorted(missing)}")

    timeout = data.get("request_timeout_seconds", 30)
    try:
        ftimeout = float(timeout)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"'request_timeout_seconds' value '{timeout}' is not numeric.")
    if ftimeout <= 0:
        raise ConfigValidationError(f"'request_timeout_seconds' must be > 0, got {ftimeout}.")

    audit = data.get("audit") or {}
    if not isinstance(audit, dict):
        raise ConfigValidationError("'audit' must be a mapping.")
    backend = audit.get("backend", "sheet")
    if backend not in VALID_AUDIT_BACKENDS:
        raise ConfigValidationError(
            f"Invalid audit backend '{backend}'. Must be one of {list(VALID_AUDIT_BACKENDS)}."
        )


def load_config(yaml_path: Path, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load and validate the YAML config, then apply environment overrides.

    Raises:
        ConfigValidationError: If a required key is missing or a value is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    env = os.environ if environ is None else environ
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    validate_config(data)
    audit = data.get("audit") or {}

    publish_enabled = _parse_bool("publish_enabled", data.get("publish_enabled", True))
    if env.get(UPDATE_LOGS_ENV):
        publish_enabled = _parse_bool(UPDATE_LOGS_ENV, env[UPDATE_LOGS_ENV])

    return AppConfig(
        ledgers_path=Path(data["ledgers_path"]),
        service_account_path=Path(data["service_account_path"]),
        mapping_key_env=str(data.get("mapping_key_env", "MEMBERSHIP_LEDGER_MAPPING_KEY")),
        publish_enabled=publish_enabled,
        request_timeout_seconds=float(data.get("request_timeout_seconds", 30)),
        reports_dir=Path(data.get("reports_dir", "./artifacts/reports")),
        audit_backend=str(audit.get("backend", "sheet")),
        audit_db_dsn_env=str(audit.get("db_dsn_env", "MEMBERSHIP_LEDGER_DB_DSN")),
    )
