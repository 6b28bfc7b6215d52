"""membership_ledger.cli

Unified membership-ledger CLI.

Modes:
  refresh_all     full reload of every configured ledger (concurrently), publish
                  each snapshot when publishing is enabled
  refresh         the same for one ledger (--ledger-id)
  sheet_command   full reload, then run the command authored in the ledger
                  spreadsheet's command region for --operation
  load_prompt     full reload, then copy the current values of a category,
                  event or question map (--target-id) into its command region

Usage:
    membership-ledger --mode refresh_all --config-path config/membership_ledger.yml
    membership-ledger --mode sheet_command --ledger-id 0 --operation upsert_event
    membership-ledger --mode load_prompt --ledger-id 0 --operation update_question_map --target-id 3

Secrets come from the environment variables named in the config, never from
CLI args.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click

from membership_ledger.config import ConfigValidationError, load_config
from membership_ledger.errors import LedgerError
from membership_ledger.google_client import GoogleFormsClient, GoogleSheetsClient, build_session
from membership_ledger.operations import (
    OPERATIONS,
    load_category_prompt,
    load_event_prompt,
    load_question_map_prompt,
    run_sheet_command,
)
from membership_ledger.registry import LedgerRegistry, make_sink_factory
from membership_ledger.shared import write_run_report

PROMPT_LOADERS = {
    "upsert_category": load_category_prompt,
    "upsert_event": load_event_prompt,
    "update_question_map": load_question_map_prompt,
}


def build_registry(cfg, run_id: str) -> LedgerRegistry:
    """Wire Google clients, the audit backend and the settings file together."""
    try:
        mapping_key = cfg.mapping_key()
        db_dsn = cfg.audit_db_dsn() if cfg.audit_backend == "postgres" else None
    except ConfigValidationError as e:
        click.echo(f"[{run_id}] FATAL: {e}", err=True)
        sys.exit(1)

    session = build_session(cfg.service_account_path)
    sheets = GoogleSheetsClient(session, timeout=cfg.request_timeout_seconds)
    forms = GoogleFormsClient(session, timeout=cfg.request_timeout_seconds)
    return LedgerRegistry(
        cfg.ledgers_path,
        sheets,
        forms,
        mapping_key,
        publish_enabled=cfg.publish_enabled,
        sink_factory=make_sink_factory(cfg.audit_backend, sheets=sheets, db_dsn=db_dsn),
    )


def _validate_ledger_flags(mode: str, ledger_id: int | None, operation: str | None,
                           target_id: int | None, run_id: str) -> None:
    if mode != "refresh_all" and ledger_id is None:
        click.echo(f"[{run_id}] ERROR: --ledger-id is required for mode {mode}", err=True)
        sys.exit(1)
    if mode == "sheet_command" and operation is None:
        click.echo(f"[{run_id}] ERROR: --operation is required for mode sheet_command", err=True)
        sys.exit(1)
    if mode == "load_prompt":
        if operation not in PROMPT_LOADERS:
            click.echo(
                f"[{run_id}] ERROR: --operation must be one of {sorted(PROMPT_LOADERS)} "
                "for mode load_prompt",
                err=True,
            )
            sys.exit(1)
        if target_id is None:
            click.echo(f"[{run_id}] ERROR: --target-id is required for mode load_prompt", err=True)
            sys.exit(1)


@click.command()
@click.option(
    "--mode",
    default="refresh_all",
    type=click.Choice(["refresh_all", "refresh", "sheet_command", "load_prompt"]),
    show_default=True,
    help="Run mode",
)
@click.option(
    "--config-path",
    default="config/membership_ledger.yml",
    show_default=True,
    type=click.Path(),
    help="YAML application config",
)
@click.option("--ledger-id", default=None, type=int, help="[refresh|sheet_command|load_prompt] Ledger id")
@click.option(
    "--operation",
    default=None,
    type=click.Choice(list(OPERATIONS)),
    help="[sheet_command|load_prompt] Command region to read or fill",
)
@click.option("--target-id", default=None, type=int, help="[load_prompt] Category or event id to load")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    config_path: str,
    ledger_id: int | None,
    operation: str | None,
    target_id: int | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Membership ledger sync CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    _validate_ledger_flags(mode, ledger_id, operation, target_id, run_id)

    try:
        cfg = load_config(Path(config_path))
    except (ConfigValidationError, FileNotFoundError) as e:
        click.echo(f"[{run_id}] FATAL: config {config_path}: {e}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Starting {mode} run (publish_enabled={cfg.publish_enabled})")
    registry = build_registry(cfg, run_id)
    try:
        registry.load()
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"[{run_id}] FATAL: ledger settings {cfg.ledgers_path}: {e}", err=True)
        sys.exit(1)

    try:
        results = _dispatch(registry, mode, ledger_id, operation, target_id, run_id)
    except LedgerError as e:
        click.echo(f"[{run_id}] FATAL: {e}", err=True)
        registry.close()
        sys.exit(1)

    counters = {i: registry.get(i).counters for i in registry.ids()}
    registry.close()

    report_path = write_run_report(
        run_id, started_at, mode, cfg.reports_dir,
        {str(k): v for k, v in results.items()},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    failed = sorted(k for k, ok in results.items() if not ok)
    if failed:
        click.echo(f"[{run_id}] {len(failed)} ledger(s) failed: {failed}; exiting non-zero", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done: {len(results)} ledger(s) ok")


def _dispatch(
    registry: LedgerRegistry,
    mode: str,
    ledger_id: int | None,
    operation: str | None,
    target_id: int | None,
    run_id: str,
) -> dict[int, bool]:
    if mode == "refresh_all":
        click.echo(f"[{run_id}] Refreshing {len(registry)} ledger(s)...")
        return registry.refresh_all()

    ledger = registry.get(ledger_id)  # type: ignore[arg-type]
    if mode == "refresh":
        click.echo(f"[{run_id}] Refreshing {ledger!r}...")
        return {ledger.settings.id: registry.refresh(ledger.settings.id)}

    if not ledger.full_reload():
        click.echo(f"[{run_id}] Reload of ledger {ledger.settings.id} reported errors", err=True)
    if not ledger.ready:
        ledger.audit.flush()
        return {ledger.settings.id: False}

    if mode == "sheet_command":
        click.echo(f"[{run_id}] Running {operation} from the spreadsheet command region...")
        ok = run_sheet_command(ledger, operation, publish=registry.publish_enabled)  # type: ignore[arg-type]
    else:
        click.echo(f"[{run_id}] Loading {operation} prompt for id {target_id}...")
        ok = PROMPT_LOADERS[operation](ledger, target_id)  # type: ignore[index]
    return {ledger.settings.id: ok}
