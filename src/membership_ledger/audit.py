"""membership_ledger.audit

Per-ledger operation narration ("output log").

The core appends human-readable messages to an AuditLog, which mirrors them
to the process log and buffers them until flush(). Sinks persist the flushed
messages and enforce the ledger's retention policy (max message count, max
message age); the core never evicts anything itself.

Sinks:
  - SheetAuditSink     : the ledger spreadsheet's Output range
  - PostgresAuditSink  : ledger_audit_message table (migrations/0001_ledger_audit.sql)
  - MemoryAuditSink    : in-process list (tests, --audit-backend memory)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

import psycopg

from membership_ledger.google_client import TRANSPORT_ERRORS

log = logging.getLogger(__name__)

_SINK_ERRORS = (*TRANSPORT_ERRORS, psycopg.Error)

RANGE_OUTPUT = "Output!A2:B"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        ts = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def count_to_evict(
    timestamps: list[datetime | None],
    capacity: int,
    retention_days: int,
    now: datetime,
) -> int:
    """Number of leading (oldest) messages to drop.

    Messages are ordered oldest first. A leading message is expired when its
    timestamp is unreadable or older than *retention_days*; on top of that,
    anything beyond *capacity* is dropped from the front.
    """
    cutoff = now - timedelta(days=retention_days)
    expired = 0
    for ts in timestamps:
        if ts is not None and ts >= cutoff:
            break
        expired += 1
    over_capacity = max(0, len(timestamps) - capacity)
    return max(expired, over_capacity)


# ---------------------------------------------------------------------------
# Sink protocol + retention
# ---------------------------------------------------------------------------

class AuditSink(Protocol):
    def append(self, timestamp: datetime, message: str) -> None: ...

    def list_all(self) -> list[tuple[datetime | None, str]]: ...

    def delete_first(self, n: int) -> None: ...

    def append_all(self, entries: list[tuple[datetime, str]]) -> None: ...


class RetainingSink:
    """Mixin: batch append followed by capacity/age eviction."""

    capacity: int
    retention_days: int

    def append_all(self, entries: list[tuple[datetime, str]]) -> None:
        for timestamp, message in entries:
            self.append(timestamp, message)  # type: ignore[attr-defined]
        self.enforce_retention()

    def enforce_retention(self, now: datetime | None = None) -> int:
        messages = self.list_all()  # type: ignore[attr-defined]
        n = count_to_evict(
            [ts for ts, _ in messages],
            self.capacity,
            self.retention_days,
            now or utc_now(),
        )
        if n:
            self.delete_first(n)  # type: ignore[attr-defined]
        return n


@dataclass
class MemoryAuditSink(RetainingSink):
    capacity: int = 200
    retention_days: int = 7
    messages: list[tuple[datetime | None, str]] = field(default_factory=list)

    def append(self, timestamp: datetime, message: str) -> None:
        self.messages.append((timestamp, message))

    def list_all(self) -> list[tuple[datetime | None, str]]:
        return list(self.messages)

    def delete_first(self, n: int) -> None:
        del self.messages[:n]


class SheetAuditSink(RetainingSink):
    """Persist messages as [timestamp, message] rows in the Output range."""

    def __init__(self, sheets, locator: str, capacity: int, retention_days: int) -> None:
        self._sheets = sheets
        self._locator = locator
        self.capacity = capacity
        self.retention_days = retention_days

    def append(self, timestamp: datetime, message: str) -> None:
        self.append_all_rows([[timestamp.isoformat(timespec="seconds"), message]])

    def append_all(self, entries: list[tuple[datetime, str]]) -> None:
        # one append request for the whole batch
        self.append_all_rows(
            [[ts.isoformat(timespec="seconds"), msg] for ts, msg in entries]
        )
        self.enforce_retention()

    def append_all_rows(self, rows: list[list[str]]) -> None:
        if rows:
            self._sheets.append_rows(self._locator, RANGE_OUTPUT, rows)

    def list_all(self) -> list[tuple[datetime | None, str]]:
        rows = self._sheets.batch_read(self._locator, [RANGE_OUTPUT])[0]
        out: list[tuple[datetime | None, str]] = []
        for row in rows:
            ts = _parse_timestamp(row[0]) if row else None
            out.append((ts, str(row[1]) if len(row) > 1 else ""))
        return out

    def delete_first(self, n: int) -> None:
        rows = self._sheets.batch_read(self._locator, [RANGE_OUTPUT])[0]
        self._sheets.batch_clear(self._locator, [RANGE_OUTPUT])
        remaining = rows[n:]
        if remaining:
            self._sheets.batch_write(self._locator, {RANGE_OUTPUT: remaining})


class PostgresAuditSink(RetainingSink):
    """Persist messages to ledger_audit_message, one connection per batch."""

    def __init__(self, db_dsn: str, ledger_id: int, capacity: int, retention_days: int) -> None:
        self._dsn = db_dsn
        self._ledger_id = ledger_id
        self.capacity = capacity
        self.retention_days = retention_days

    def append(self, timestamp: datetime, message: str) -> None:
        self.append_all([(timestamp, message)])

    def append_all(self, entries: list[tuple[datetime, str]]) -> None:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO ledger_audit_message (ledger_id, logged_at, message)
                    VALUES (%s, %s, %s)
                    """,
                    [(self._ledger_id, ts, msg) for ts, msg in entries],
                )
        self.enforce_retention()

    def list_all(self) -> list[tuple[datetime | None, str]]:
        with psycopg.connect(self._dsn) as conn:
            rows = conn.execute(
                """
                SELECT logged_at, message FROM ledger_audit_message
                WHERE ledger_id = %s
                ORDER BY logged_at ASC, id ASC
                """,
                (self._ledger_id,),
            ).fetchall()
        return [(row[0], row[1]) for row in rows]

    def delete_first(self, n: int) -> None:
        with psycopg.connect(self._dsn) as conn:
            conn.execute(
                """
                DELETE FROM ledger_audit_message
                WHERE id IN (
                    SELECT id FROM ledger_audit_message
                    WHERE ledger_id = %s
                    ORDER BY logged_at ASC, id ASC
                    LIMIT %s
                )
                """,
                (self._ledger_id, n),
            )


# ---------------------------------------------------------------------------
# AuditLog
# ---------------------------------------------------------------------------

class AuditLog:
    """Buffered narration for one ledger."""

    def __init__(self, ledger_id: int, sink: AuditSink) -> None:
        self.ledger_id = ledger_id
        self.sink = sink
        self._pending: list[tuple[datetime, str]] = []

    @property
    def pending(self) -> list[str]:
        return [msg for _, msg in self._pending]

    def log(self, message: str) -> None:
        log.info("LEDGER %s | %s", self.ledger_id, message)
        self._pending.append((utc_now(), message))

    def error(self, message: str) -> None:
        log.error("LEDGER %s | %s", self.ledger_id, message)
        self._pending.append((utc_now(), f"ERROR: {message}"))

    def flush(self) -> bool:
        """Send buffered messages to the sink. Sink failures never propagate."""
        if not self._pending:
            return True
        entries, self._pending = self._pending, []
        try:
            self.sink.append_all(entries)
        except _SINK_ERRORS as exc:
            log.warning(
                "LEDGER %s | audit sink unavailable, dropped %d message(s): %s",
                self.ledger_id, len(entries), exc,
            )
            return False
        return True
