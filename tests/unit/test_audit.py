"""Unit tests for membership_ledger.audit."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import requests
from google.auth.exceptions import RefreshError

from membership_ledger.audit import (
    RANGE_OUTPUT,
    AuditLog,
    MemoryAuditSink,
    SheetAuditSink,
    count_to_evict,
)

NOW = datetime(2024, 9, 12, 12, 0, tzinfo=timezone.utc)


def _ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


# ---------------------------------------------------------------------------
# count_to_evict
# ---------------------------------------------------------------------------

class TestCountToEvict:
    def test_nothing_to_evict(self):
        assert count_to_evict([_ago(1), _ago(0)], capacity=10, retention_days=7, now=NOW) == 0

    def test_expired_prefix(self):
        stamps = [_ago(10), _ago(8), _ago(2), _ago(1)]
        assert count_to_evict(stamps, capacity=10, retention_days=7, now=NOW) == 2

    def test_over_capacity(self):
        stamps = [_ago(0.1)] * 5
        assert count_to_evict(stamps, capacity=3, retention_days=7, now=NOW) == 2

    def test_larger_of_both_rules(self):
        stamps = [_ago(9), _ago(1), _ago(1), _ago(1)]
        assert count_to_evict(stamps, capacity=2, retention_days=7, now=NOW) == 2
        assert count_to_evict(stamps, capacity=4, retention_days=7, now=NOW) == 1

    def test_unreadable_leading_timestamps_expire(self):
        assert count_to_evict([None, _ago(1)], capacity=10, retention_days=7, now=NOW) == 1


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class TestMemoryAuditSink:
    def test_retention_after_batch(self):
        sink = MemoryAuditSink(capacity=2, retention_days=7)
        now = datetime.now(timezone.utc)
        sink.append_all([(now, "a"), (now, "b"), (now, "c")])
        assert [m for _, m in sink.list_all()] == ["b", "c"]

    def test_old_messages_dropped(self):
        sink = MemoryAuditSink(capacity=10, retention_days=7)
        sink.messages.append((datetime.now(timezone.utc) - timedelta(days=30), "stale"))
        sink.append_all([(datetime.now(timezone.utc), "fresh")])
        assert [m for _, m in sink.list_all()] == ["fresh"]


class TestSheetAuditSink:
    def test_batch_appends_in_one_request(self, sheets):
        sink = SheetAuditSink(sheets, "ledger-sheet", capacity=10, retention_days=7)
        now = datetime.now(timezone.utc)
        sink.append_all([(now, "one"), (now, "two")])
        assert len(sheets.appended) == 1
        assert [row[1] for row in sheets.regions[("ledger-sheet", RANGE_OUTPUT)]] == ["one", "two"]

    def test_eviction_rewrites_remaining_rows(self, sheets):
        sink = SheetAuditSink(sheets, "ledger-sheet", capacity=2, retention_days=7)
        now = datetime.now(timezone.utc)
        sink.append_all([(now, "one"), (now, "two"), (now, "three")])
        assert [m for _, m in sink.list_all()] == ["two", "three"]


# ---------------------------------------------------------------------------
# AuditLog
# ---------------------------------------------------------------------------

class TestAuditLog:
    def test_buffers_until_flush(self):
        sink = MemoryAuditSink()
        audit = AuditLog(0, sink)
        audit.log("UPDATE EVENT: done")
        audit.error("INGEST 'GM 1': source unavailable")
        assert sink.messages == []
        assert audit.pending == ["UPDATE EVENT: done", "ERROR: INGEST 'GM 1': source unavailable"]

        assert audit.flush() is True
        assert [m for _, m in sink.messages] == [
            "UPDATE EVENT: done",
            "ERROR: INGEST 'GM 1': source unavailable",
        ]
        assert audit.pending == []

    def test_mirrors_to_process_log(self, caplog):
        audit = AuditLog(7, MemoryAuditSink())
        with caplog.at_level("INFO", logger="membership_ledger.audit"):
            audit.log("FULL RELOAD: reading ledger spreadsheet...")
        assert "LEDGER 7 | FULL RELOAD" in caplog.text

    def test_sink_failure_never_propagates(self):
        sink = MagicMock()
        sink.append_all.side_effect = requests.ConnectionError("down")
        audit = AuditLog(0, sink)
        audit.log("hello")
        assert audit.flush() is False
        assert audit.pending == []

    def test_credential_failure_never_propagates(self):
        sink = MagicMock()
        sink.append_all.side_effect = RefreshError("invalid_grant")
        audit = AuditLog(0, sink)
        audit.log("hello")
        assert audit.flush() is False

    def test_empty_flush_is_noop(self):
        sink = MagicMock()
        assert AuditLog(0, sink).flush() is True
        sink.append_all.assert_not_called()
