"""membership_ledger.publisher

Sync Publisher: moves the ledger snapshot between memory and the reserved
regions of the ledger spreadsheet.

Writes are "clear region, then write"; there is no partial update. Values
are derived only from ledger data (categories, events, members), so
publishing an unchanged ledger always writes identical region contents.

Reserved regions:
  Event Log!A3:C    categories      [id, name, points]
  Event Log!E3:K    events          [id, name, date, source, source kind, category id, mapping token]
  Members!A4:L      members         [member id, first, last, external id, email, phone,
                                     birthday, major, graduation year, fall, spring, total]
  Members!M2:ZZ     attendance      row 0 event names, row 1 event ids, then one row per member
  Event Log!N..P    command regions (one per operation, value in the last column)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from membership_ledger.errors import PublishError, SnapshotReadError
from membership_ledger.google_client import TRANSPORT_ERRORS
from membership_ledger.models import Category, Member, SourceKind
from membership_ledger.normalize import format_date, parse_date, parse_int, trim

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Reserved ranges
# ---------------------------------------------------------------------------

RANGE_CATEGORIES = "Event Log!A3:C"
RANGE_EVENTS = "Event Log!E3:K"
RANGE_MEMBERS = "Members!A4:L"
RANGE_ATTENDANCE = "Members!M2:ZZ"

RANGE_UPSERT_CATEGORY_OP = "Event Log!N3:P5"
RANGE_DELETE_CATEGORY_OP = "Event Log!N9:P10"
RANGE_UPSERT_EVENT_OP = "Event Log!N15:P20"
RANGE_DELETE_EVENT_OP = "Event Log!N28:P28"
RANGE_QUESTION_MAP_EVENT_OP = "Event Log!N33:P33"
RANGE_QUESTION_MAP_MATCHES_OP = "Event Log!M40:P"

# Source ranges read from sign-in sheets
RANGE_TABULAR_SIGN_IN = "A1:ZZ"
RANGE_TABULAR_SIGN_IN_TITLES = "A1:ZZ1"

ATTENDED_MARK = "X"

# operation -> (command region, field name per row)
COMMAND_REGIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "upsert_category": (RANGE_UPSERT_CATEGORY_OP, ("category_id", "name", "points")),
    "delete_category": (RANGE_DELETE_CATEGORY_OP, ("remove_id", "replace_id")),
    "upsert_event": (
        RANGE_UPSERT_EVENT_OP,
        ("event_id", "title", "raw_date", "source", "source_kind", "category_id"),
    ),
    "delete_event": (RANGE_DELETE_EVENT_OP, ("event_id",)),
}


# ---------------------------------------------------------------------------
# Snapshot read-back types
# ---------------------------------------------------------------------------

@dataclass
class EventRecord:
    """One row of the event table; the mapping token is decoded by the ledger."""

    name: str
    event_date: date
    source: str
    source_kind: SourceKind
    category_index: int
    mapping_token: str


@dataclass
class LedgerSnapshot:
    categories: list[Category] = field(default_factory=list)
    events: list[EventRecord] = field(default_factory=list)
    members: list[Member] = field(default_factory=list)


def _cell(row: list[Any], idx: int) -> Any:
    """Sheets drops trailing empty cells; treat them as blank."""
    return row[idx] if idx < len(row) else ""


def _is_blank(row: list[Any]) -> bool:
    return all(trim(c) is None for c in row)


def value_column(region: str, rows: int) -> str:
    """The last column of a command region, *rows* rows tall.

    'Event Log!N15:P20', 6 -> 'Event Log!P15:P20'. Labels live in the
    other columns and are never touched.
    """
    sheet, cells = region.split("!")
    start, end = cells.split(":")
    col = end.rstrip("0123456789")
    first_row = int(start.lstrip("ABCDEFGHIJKLMNOPQRSTUVWXYZ"))
    return f"{sheet}!{col}{first_row}:{col}{first_row + rows - 1}"


# ---------------------------------------------------------------------------
# Snapshot values
# ---------------------------------------------------------------------------

def category_rows(categories: list[Category]) -> list[list[Any]]:
    return [[idx, c.name, c.points] for idx, c in enumerate(categories)]


def event_rows(ledger) -> list[list[Any]]:
    return [
        [
            idx,
            e.name,
            format_date(e.event_date),
            e.source,
            e.source_kind.value,
            e.category.id,
            e.mapping_token,
        ]
        for idx, e in enumerate(ledger.events)
    ]


def member_rows(members: list[Member]) -> list[list[Any]]:
    return [
        [
            m.member_id,
            m.first_name or "",
            m.last_name or "",
            m.key,
            m.email or "",
            m.phone_number or "",
            format_date(m.birthday),
            m.major or "",
            m.graduation_year if m.graduation_year is not None else "",
            m.fall_points,
            m.spring_points,
            m.total_points,
        ]
        for m in members
    ]


def attendance_rows(ledger, members: list[Member]) -> list[list[Any]]:
    rows: list[list[Any]] = [
        [e.name for e in ledger.events],
        list(range(len(ledger.events))),
    ]
    for m in members:
        rows.append([ATTENDED_MARK if m.key in e.attendees else "" for e in ledger.events])
    return rows


def snapshot_values(ledger, include_categories: bool) -> dict[str, list[list[Any]]]:
    """Region -> rows for a publish; events, members and attendance are always included."""
    members = sorted(ledger.members.values(), key=lambda m: m.member_id)
    values: dict[str, list[list[Any]]] = {}
    if include_categories:
        values[RANGE_CATEGORIES] = category_rows(ledger.categories)
    values[RANGE_EVENTS] = event_rows(ledger)
    values[RANGE_MEMBERS] = member_rows(members)
    values[RANGE_ATTENDANCE] = attendance_rows(ledger, members)
    return values


# ---------------------------------------------------------------------------
# Snapshot parsing
# ---------------------------------------------------------------------------

def parse_category_rows(rows: list[list[Any]]) -> list[Category]:
    categories: list[Category] = []
    for row in rows:
        if _is_blank(row):
            continue
        name = trim(_cell(row, 1))
        points = parse_int(_cell(row, 2))
        if name is None or points is None or points < 0:
            raise SnapshotReadError(f"malformed category row: {row!r}")
        # ids are dense and positional
        categories.append(Category(id=len(categories), name=name, points=points))
    return categories


def parse_event_rows(rows: list[list[Any]]) -> list[EventRecord]:
    records: list[EventRecord] = []
    for row in rows:
        if _is_blank(row):
            continue
        name = trim(_cell(row, 1))
        event_date = parse_date(_cell(row, 2))
        source = trim(_cell(row, 3))
        category_index = parse_int(_cell(row, 5))
        if name is None or event_date is None or source is None or category_index is None:
            raise SnapshotReadError(f"malformed event row: {row!r}")
        try:
            kind = SourceKind.parse(_cell(row, 4))
        except ValueError as exc:
            raise SnapshotReadError(f"event {name!r}: {exc}") from exc
        records.append(EventRecord(
            name=name,
            event_date=event_date,
            source=source,
            source_kind=kind,
            category_index=category_index,
            mapping_token=trim(_cell(row, 6)) or "",
        ))
    return records


def parse_member_rows(rows: list[list[Any]]) -> list[Member]:
    """Members as stored; totals are derived from the semester columns."""
    members: list[Member] = []
    seen: set[str] = set()
    for row in rows:
        key = trim(_cell(row, 3))
        if key is None or key in seen:
            continue
        seen.add(key)
        member_id = parse_int(_cell(row, 0))
        member = Member(
            key=key,
            member_id=member_id if member_id is not None else len(members),
            first_name=trim(_cell(row, 1)),
            last_name=trim(_cell(row, 2)),
            email=trim(_cell(row, 4)),
            phone_number=trim(_cell(row, 5)),
            birthday=parse_date(_cell(row, 6)),
            major=trim(_cell(row, 7)),
            graduation_year=parse_int(_cell(row, 8)),
            fall_points=parse_int(_cell(row, 9)) or 0,
            spring_points=parse_int(_cell(row, 10)) or 0,
        )
        stored_total = parse_int(_cell(row, 11))
        if stored_total is not None and stored_total != member.total_points:
            log.warning(
                "member %s: stored total %s != fall + spring (%s); using the sum",
                key, stored_total, member.total_points,
            )
        members.append(member)
    return members


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------

class SheetPublisher:
    """Reads and writes the ledger spreadsheet's reserved regions."""

    def __init__(self, sheets) -> None:
        self._sheets = sheets

    def publish(self, ledger, include_categories: bool) -> dict[str, list[list[Any]]]:
        """Clear and rewrite the snapshot regions. Raises PublishError."""
        locator = ledger.settings.spreadsheet_locator
        values = snapshot_values(ledger, include_categories)
        try:
            self._sheets.batch_clear(locator, list(values))
            self._sheets.batch_write(locator, values)
        except TRANSPORT_ERRORS as exc:
            raise PublishError(f"publish to {locator} failed: {exc}") from exc
        log.info(
            "published ledger %s (%d events, %d members, categories=%s)",
            ledger.settings.id, len(ledger.events), len(ledger.members), include_categories,
        )
        return values

    def read_snapshot(self, locator: str) -> LedgerSnapshot:
        """Read categories, events and members back. Raises SnapshotReadError."""
        try:
            cat_rows, ev_rows, mem_rows = self._sheets.batch_read(
                locator, [RANGE_CATEGORIES, RANGE_EVENTS, RANGE_MEMBERS]
            )
        except TRANSPORT_ERRORS as exc:
            raise SnapshotReadError(f"reading {locator} failed: {exc}") from exc
        return LedgerSnapshot(
            categories=parse_category_rows(cat_rows),
            events=parse_event_rows(ev_rows),
            members=parse_member_rows(mem_rows),
        )

    # -- command regions ----------------------------------------------------

    def read_command_fields(self, locator: str, operation: str) -> dict[str, Any]:
        """Read a command authored in the spreadsheet into a field dict.

        Blank cells are left out so the command parser can report them as
        missing (or default the id to -1).
        """
        if operation != "update_question_map" and operation not in COMMAND_REGIONS:
            raise ValueError(f"unknown operation: {operation!r}")
        try:
            if operation == "update_question_map":
                head, matches = self._sheets.batch_read(
                    locator,
                    [value_column(RANGE_QUESTION_MAP_EVENT_OP, 1), RANGE_QUESTION_MAP_MATCHES_OP],
                )
                fields: dict[str, Any] = {}
                event_id = trim(_cell(head[0], 0)) if head else None
                if event_id is not None:
                    fields["event_id"] = event_id
                # M: question text, N: blank (merged), O: question id, P: attribute
                fields["matches"] = [
                    {"question_id": trim(_cell(r, 2)), "attribute": trim(_cell(r, 3)) or ""}
                    for r in matches
                    if trim(_cell(r, 2)) is not None
                ]
                return fields

            region, names = COMMAND_REGIONS[operation]
            rows = self._sheets.batch_read(locator, [value_column(region, len(names))])[0]
        except TRANSPORT_ERRORS as exc:
            raise SnapshotReadError(f"reading {operation} command failed: {exc}") from exc

        fields = {}
        for name, row in zip(names, rows):
            value = trim(_cell(row, 0))
            if value is not None:
                fields[name] = value
        return fields

    def write_command_prompt(self, locator: str, operation: str, values: list[Any]) -> None:
        """Fill a command region with one value per row (labels are left alone)."""
        region, names = COMMAND_REGIONS[operation]
        target = value_column(region, len(names))
        try:
            self._sheets.batch_clear(locator, [target])
            self._sheets.batch_write(locator, {target: [[v] for v in values]})
        except TRANSPORT_ERRORS as exc:
            raise PublishError(f"writing {operation} prompt failed: {exc}") from exc

    def write_question_prompt(
        self,
        locator: str,
        event_id: int,
        questions: list[tuple[str, str, str]],
    ) -> None:
        """Write (question text, question id, mapped attribute) rows for editing."""
        event_cell = value_column(RANGE_QUESTION_MAP_EVENT_OP, 1)
        try:
            self._sheets.batch_clear(locator, [event_cell, RANGE_QUESTION_MAP_MATCHES_OP])
            self._sheets.batch_write(locator, {
                event_cell: [[event_id]],
                RANGE_QUESTION_MAP_MATCHES_OP: [
                    [text, "", qid, attr] for text, qid, attr in questions
                ],
            })
        except TRANSPORT_ERRORS as exc:
            raise PublishError(f"writing question prompt failed: {exc}") from exc
