"""membership_ledger.registry

Explicit store of the ledgers this process serves.

Lifecycle:
  load()          read the persisted settings JSON, mint a mappingIv for any
                  ledger that lacks one (and persist it), construct each Ledger
  refresh(id)     full reload (+ publish when enabled) of one ledger
  refresh_all()   the same for every ledger, concurrently on a thread pool;
                  one ledger's failure never aborts its siblings
  replace(s)      swap in a ledger rebuilt from edited settings; the existing
                  mappingIv is kept so stored mapping tokens stay readable
  close()         flush pending audit messages and drop every ledger

The settings file is a JSON list of objects:
  [{"id": 0, "name": "...", "spreadsheetLocator": "...", "version": "1.0.0",
    "mappingIv": "...", "outputCapacity": 200, "outputRetentionPeriodDays": 7}]
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from membership_ledger.audit import (
    AuditLog,
    AuditSink,
    MemoryAuditSink,
    PostgresAuditSink,
    SheetAuditSink,
)
from membership_ledger.codec import generate_iv
from membership_ledger.errors import LedgerError, PublishError
from membership_ledger.ledger import Ledger
from membership_ledger.models import LedgerSettings

log = logging.getLogger(__name__)

SinkFactory = Callable[[LedgerSettings], AuditSink]


def make_sink_factory(backend: str, sheets=None, db_dsn: str | None = None) -> SinkFactory:
    """Audit sink constructor for the configured backend."""
    if backend == "sheet":
        if sheets is None:
            raise ValueError("sheet audit backend needs a sheets client")
        return lambda s: SheetAuditSink(
            sheets, s.spreadsheet_locator, s.output_capacity, s.output_retention_period_days
        )
    if backend == "postgres":
        if not db_dsn:
            raise ValueError("postgres audit backend needs a DSN")
        return lambda s: PostgresAuditSink(
            db_dsn, s.id, s.output_capacity, s.output_retention_period_days
        )
    if backend == "memory":
        return lambda s: MemoryAuditSink(s.output_capacity, s.output_retention_period_days)
    raise ValueError(f"unknown audit backend: {backend!r}")


class LedgerRegistry:
    def __init__(
        self,
        settings_path: Path,
        sheets,
        forms,
        mapping_key: str,
        publish_enabled: bool = True,
        sink_factory: SinkFactory | None = None,
        max_workers: int = 4,
    ) -> None:
        self.settings_path = settings_path
        self.sheets = sheets
        self.forms = forms
        self.publish_enabled = publish_enabled
        self._mapping_key = mapping_key
        self._sink_factory = sink_factory or make_sink_factory("memory")
        self._max_workers = max_workers
        self._ledgers: dict[int, Ledger] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._ledgers)

    def __contains__(self, ledger_id: int) -> bool:
        return ledger_id in self._ledgers

    def ids(self) -> list[int]:
        return sorted(self._ledgers)

    def get(self, ledger_id: int) -> Ledger:
        try:
            return self._ledgers[ledger_id]
        except KeyError:
            raise LedgerError(f"unknown ledger id {ledger_id}") from None

    # -- settings persistence -----------------------------------------------

    def load(self) -> list[int]:
        """Construct every ledger in the settings file; returns their ids."""
        raw = json.loads(self.settings_path.read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError(f"{self.settings_path}: expected a JSON list of ledger settings")
        settings = [LedgerSettings.from_dict(d) for d in raw]

        minted = 0
        for s in settings:
            if not s.mapping_iv:
                s.mapping_iv = generate_iv()
                minted += 1

        with self._lock:
            self._ledgers = {s.id: self._build(s) for s in settings}
        if minted:
            log.info("minted mapping iv for %d ledger(s)", minted)
            self.save()
        log.info("loaded %d ledger(s) from %s", len(settings), self.settings_path)
        return self.ids()

    def save(self) -> None:
        with self._lock:
            data = [self._ledgers[i].settings.to_dict() for i in sorted(self._ledgers)]
        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        self.settings_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def _build(self, settings: LedgerSettings) -> Ledger:
        audit = AuditLog(settings.id, self._sink_factory(settings))
        return Ledger(settings, self.sheets, self.forms, self._mapping_key, audit=audit)

    def replace(self, settings: LedgerSettings) -> Ledger:
        """Swap in a ledger built from edited settings (or add a new one)."""
        with self._lock:
            previous = self._ledgers.get(settings.id)
            if previous is not None and not settings.mapping_iv:
                settings.mapping_iv = previous.settings.mapping_iv
            if not settings.mapping_iv:
                settings.mapping_iv = generate_iv()
            ledger = self._build(settings)
            self._ledgers[settings.id] = ledger
        if previous is not None:
            previous.audit.flush()
        self.save()
        log.info("ledger %s replaced from edited settings", settings.id)
        return ledger

    # -- refresh ------------------------------------------------------------

    def refresh(self, ledger_id: int) -> bool:
        ledger = self.get(ledger_id)
        with ledger.lock:
            ok = ledger.full_reload()
            # a failed reload leaves the spreadsheet as the last good snapshot
            if self.publish_enabled and ok:
                try:
                    ledger.publish(include_categories=True)
                except PublishError:
                    ok = False
            ledger.audit.flush()
        return ok

    def refresh_all(self) -> dict[int, bool]:
        """Reload every ledger concurrently; results are collected per ledger id."""
        results: dict[int, bool] = {}
        ids = self.ids()
        if not ids:
            return results
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(ids))) as pool:
            futures = {ledger_id: pool.submit(self.refresh, ledger_id) for ledger_id in ids}
            for ledger_id, future in futures.items():
                try:
                    results[ledger_id] = future.result()
                except Exception:
                    log.exception("refresh of ledger %s failed", ledger_id)
                    results[ledger_id] = False
        return results

    def close(self) -> None:
        with self._lock:
            ledgers, self._ledgers = list(self._ledgers.values()), {}
        for ledger in ledgers:
            ledger.audit.flush()
