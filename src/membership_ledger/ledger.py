"""membership_ledger.ledger

The Ledger aggregate: categories, events and members for one organization.

State machine:
  Uninitialized --full_reload()--> Ready --soft_reload()--> Ready

full_reload()  clear everything, read categories/events/members back from the
               ledger spreadsheet (member attributes and point totals are
               trusted as stored), then ingest every event's sign-in source;
               only members not already loaded are created and credited.
soft_reload()  keep categories/events, clear members and every attendee set,
               then re-ingest every event.

Ingestion per event (tabular sheet or form responses):
  1. Resolve attribute -> question id from the event's QuestionMap; when two
     questions map to the same attribute the last-registered one wins.
  2. No question mapped to External ID -> nothing to key on, no-op.
  3. Per row/response: skip when the external id answer is blank; resolve or
     create the member; fill unset attributes (first writer wins); if not yet
     an attendee, add them and credit the category's points to the semester
     of the event date.

Source transport failures (requests or google-auth) are caught per event:
on a soft reload the event keeps the attendance it had before the attempt,
the failure is narrated to the audit log, and the reload reports False. A
failed snapshot read, or any other exception during a full reload, restores
the pre-reload state.

Callers serialize mutations through `ledger.lock` (re-entrant; reloads take
it themselves).
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import replace
from typing import Any

from membership_ledger import codec
from membership_ledger.audit import AuditLog, MemoryAuditSink
from membership_ledger.errors import (
    DecodeError,
    PublishError,
    SnapshotReadError,
    SourceIngestionError,
)
from membership_ledger.google_client import TRANSPORT_ERRORS
from membership_ledger.models import (
    Category,
    Event,
    LedgerSettings,
    Member,
    MemberAttribute,
    QuestionMap,
    SourceKind,
)
from membership_ledger.normalize import trim
from membership_ledger.publisher import (
    RANGE_TABULAR_SIGN_IN,
    RANGE_TABULAR_SIGN_IN_TITLES,
    SheetPublisher,
)
from membership_ledger.shared import IngestCounters

log = logging.getLogger(__name__)

_SOURCE_ERRORS = (*TRANSPORT_ERRORS, KeyError, TypeError)


def attribute_questions(question_map: QuestionMap) -> dict[MemberAttribute, str]:
    """Invert a QuestionMap; later registrations overwrite earlier ones."""
    by_attribute: dict[MemberAttribute, str] = {}
    for qid, attr in question_map.items():
        by_attribute[attr] = qid
    return by_attribute


class Ledger:
    """In-memory ledger for one organization, bound to its collaborators."""

    def __init__(
        self,
        settings: LedgerSettings,
        sheets,
        forms,
        mapping_key: str,
        audit: AuditLog | None = None,
        publisher: SheetPublisher | None = None,
    ) -> None:
        self.settings = settings
        self.sheets = sheets
        self.forms = forms
        self._mapping_key = mapping_key
        self.audit = audit or AuditLog(
            settings.id,
            MemoryAuditSink(settings.output_capacity, settings.output_retention_period_days),
        )
        self.publisher = publisher or SheetPublisher(sheets)
        self.lock = threading.RLock()

        self.categories: list[Category] = []
        self.events: list[Event] = []
        self.members: dict[str, Member] = {}
        self.ready = False
        self.counters = IngestCounters()
        self._next_member_id = 0

    def __repr__(self) -> str:
        return (
            f"Ledger(id={self.settings.id}, name={self.settings.name!r}, "
            f"categories={len(self.categories)}, events={len(self.events)}, "
            f"members={len(self.members)}, ready={self.ready})"
        )

    # -- codec wrappers -----------------------------------------------------

    def get_mapping_token(self, question_map: QuestionMap) -> str:
        if not question_map:
            return ""
        return codec.encode(question_map, self._mapping_key, self.settings.mapping_iv)

    def get_map_from_token(self, token: str) -> QuestionMap:
        """Decode a token; an unreadable token means "no mapping configured yet"."""
        if not trim(token):
            return {}
        try:
            return codec.decode(token, self._mapping_key, self.settings.mapping_iv)
        except DecodeError as exc:
            log.warning("ledger %s: unreadable mapping token (%s)", self.settings.id, exc)
            return {}

    # -- reloads ------------------------------------------------------------

    def full_reload(self) -> bool:
        """Rebuild everything from the ledger spreadsheet, then re-ingest.

        Any failure before ingestion completes puts the previous state back;
        an unexpected one is re-raised after the restore.
        """
        with self.lock:
            self.audit.log("FULL RELOAD: reading ledger spreadsheet...")
            saved = self._capture_state()
            self._clear()
            try:
                self._load_snapshot()
                ok = self._ingest_all(frozenset(self.members))
            except SnapshotReadError as exc:
                self._restore_state(saved)
                self.audit.error(f"FULL RELOAD: {exc}; keeping previous state")
                return False
            except Exception as exc:
                self._restore_state(saved)
                self.audit.error(f"FULL RELOAD: {type(exc).__name__}: {exc}; keeping previous state")
                raise

            self.ready = True
            self.audit.log(
                f"FULL RELOAD: {len(self.categories)} categories, {len(self.events)} events, "
                f"{len(self.members)} members"
            )
            return ok

    def soft_reload(self) -> bool:
        """Recompute membership and attendance; categories and events are kept.

        An event whose source fails keeps the attendees it had, and they are
        credited its points again.
        """
        with self.lock:
            self.audit.log("SOFT RELOAD: recomputing attendance...")
            previous_members = self.members
            previous_attendance = [set(event.attendees) for event in self.events]
            self.members = {}
            self._next_member_id = 0
            self.counters = IngestCounters()
            for event in self.events:
                event.attendees.clear()

            ok = True
            for event, attendees in zip(self.events, previous_attendance):
                if not self._ingest_guarded(event):
                    self._keep_attendance(event, attendees, previous_members)
                    ok = False
            return ok

    def _load_snapshot(self) -> None:
        snapshot = self.publisher.read_snapshot(self.settings.spreadsheet_locator)
        self.categories = snapshot.categories
        for record in snapshot.events:
            if not 0 <= record.category_index < len(self.categories):
                raise SnapshotReadError(
                    f"event {record.name!r} references unknown category {record.category_index}"
                )
            question_map = self.get_map_from_token(record.mapping_token)
            if trim(record.mapping_token) and not question_map:
                self.counters.warnings.append(f"event {record.name!r}: mapping token unreadable, cleared")
            self.events.append(Event(
                name=record.name,
                event_date=record.event_date,
                category=self.categories[record.category_index],
                source=record.source,
                source_kind=record.source_kind,
                question_map=question_map,
                mapping_token=record.mapping_token if question_map else "",
            ))
        for member in snapshot.members:
            self.members[member.key] = member
        self._next_member_id = max((m.member_id for m in self.members.values()), default=-1) + 1
        self.counters.members_loaded = len(self.members)

    def _ingest_all(self, trusted: frozenset[str]) -> bool:
        results = [self._ingest_guarded(event, trusted) for event in self.events]
        return all(results)

    def _ingest_guarded(self, event: Event, trusted: frozenset[str] = frozenset()) -> bool:
        try:
            self.ingest_event(event, trusted)
        except SourceIngestionError as exc:
            self.counters.events_failed += 1
            self.counters.warnings.append(f"event {event.name!r} not ingested: {exc}")
            self.audit.error(f"INGEST {event.name!r}: {exc}")
            return False
        return True

    def _keep_attendance(
        self,
        event: Event,
        attendees: set[str],
        previous_members: dict[str, Member],
    ) -> None:
        for key in sorted(attendees):
            member = self.members.get(key)
            if member is None:
                member = self._new_member(key)
                previous = previous_members.get(key)
                if previous is not None:
                    # attributes survive; points are re-credited below
                    member = replace(previous, member_id=member.member_id,
                                     fall_points=0, spring_points=0)
                    self.members[key] = member
            event.attendees.add(key)
            member.add_points(event.event_date, event.category.points)
        if attendees:
            self.audit.log(f"INGEST {event.name!r}: kept {len(attendees)} previous attendee(s)")

    # -- ingestion ----------------------------------------------------------

    def ingest_event(self, event: Event, trusted: frozenset[str] = frozenset()) -> None:
        """Materialize *event*'s attendees from its source.

        Members in *trusted* were loaded with authoritative totals and are
        not credited again. Raises SourceIngestionError.
        """
        if event.source_kind is SourceKind.TABULAR:
            answers = self._tabular_answers(event)
        elif event.source_kind is SourceKind.FORM:
            answers = self._form_answers(event)
        else:
            raise SourceIngestionError(f"unknown source kind {event.source_kind!r}")
        self._apply_answers(event, answers, trusted)

    def _tabular_answers(self, event: Event) -> list[dict[str, Any]]:
        try:
            rows = self.sheets.read_rows(event.source, RANGE_TABULAR_SIGN_IN)
        except _SOURCE_ERRORS as exc:
            raise SourceIngestionError(f"sign-in sheet {event.source} unavailable: {exc}") from exc
        if not isinstance(rows, list):
            raise SourceIngestionError(f"sign-in sheet {event.source} returned {type(rows).__name__}")
        # row 0 is the header
        return [{str(idx): cell for idx, cell in enumerate(row)} for row in rows[1:]]

    def _form_answers(self, event: Event) -> list[dict[str, Any]]:
        try:
            responses = self.forms.list_responses(event.source)
        except _SOURCE_ERRORS as exc:
            raise SourceIngestionError(f"form {event.source} unavailable: {exc}") from exc
        if not isinstance(responses, list):
            raise SourceIngestionError(f"form {event.source} returned {type(responses).__name__}")
        return responses

    def _apply_answers(
        self,
        event: Event,
        answers: list[dict[str, Any]],
        trusted: frozenset[str],
    ) -> None:
        questions = attribute_questions(event.question_map)
        key_question = questions.get(MemberAttribute.EXTERNAL_ID)
        if key_question is None:
            self.counters.events_without_key_question += 1
            return

        for answer in answers:
            self.counters.rows_read += 1
            key = trim(answer.get(key_question))
            if key is None:
                self.counters.rows_skipped_no_external_id += 1
                continue

            member = self.members.get(key)
            if member is None:
                member = self._new_member(key)

            for attr, qid in questions.items():
                if qid in answer and member.fill(attr, answer[qid]):
                    self.counters.attributes_filled += 1

            if key not in event.attendees:
                event.attendees.add(key)
                self.counters.attendees_added += 1
                if key not in trusted:
                    member.add_points(event.event_date, event.category.points)
        self.counters.events_ingested += 1

    def _new_member(self, key: str) -> Member:
        member = Member(key=key, member_id=self._next_member_id)
        self._next_member_id += 1
        self.members[key] = member
        self.counters.members_created += 1
        return member

    # -- point bookkeeping used by operations ---------------------------------

    def adjust_attendee_points(self, event: Event, delta: int) -> None:
        """Apply *delta* points to every current attendee of *event*."""
        for key in event.attendees:
            member = self.members.get(key)
            if member is not None:
                member.add_points(event.event_date, delta)

    def set_event_category(self, event: Event, category: Category) -> None:
        """Repoint *event*, moving attendees' points from the old value to the new."""
        self.adjust_attendee_points(event, category.points - event.category.points)
        event.category = category

    def clear_attendance(self, event: Event) -> None:
        """Debit *event*'s points from its attendees and empty the attendee set."""
        self.adjust_attendee_points(event, -event.category.points)
        event.attendees.clear()

    def remove_event(self, index: int) -> Event:
        event = self.events[index]
        self.clear_attendance(event)
        del self.events[index]
        return event

    def renumber_categories(self) -> None:
        for idx, category in enumerate(self.categories):
            category.id = idx

    # -- publishing / sources -------------------------------------------------

    def publish(self, include_categories: bool) -> None:
        """Push the snapshot to the ledger spreadsheet. Raises PublishError."""
        with self.lock:
            self.audit.log("UPDATE LOGS: clearing and rewriting ledger ranges...")
            try:
                self.publisher.publish(self, include_categories)
            except PublishError as exc:
                self.audit.error(f"UPDATE LOGS: {exc}")
                raise

    def list_source_questions(self, event: Event) -> list[tuple[str, str]]:
        """(question id, question text) pairs offered by *event*'s source."""
        try:
            if event.source_kind is SourceKind.TABULAR:
                rows = self.sheets.read_rows(event.source, RANGE_TABULAR_SIGN_IN_TITLES)
                header = rows[0] if rows else []
                return [(str(idx), str(title)) for idx, title in enumerate(header)]
            return list(self.forms.list_questions(event.source))
        except _SOURCE_ERRORS as exc:
            raise SourceIngestionError(f"questions for {event.source} unavailable: {exc}") from exc

    # -- snapshot / restore -----------------------------------------------------

    def _clear(self) -> None:
        self.categories = []
        self.events = []
        self.members = {}
        self._next_member_id = 0
        self.counters = IngestCounters()

    def _capture_state(self) -> tuple[Any, ...]:
        # one deepcopy keeps event -> category references shared
        return copy.deepcopy(
            (self.categories, self.events, self.members, self._next_member_id, self.ready)
        )

    def _restore_state(self, saved: tuple[Any, ...]) -> None:
        (self.categories, self.events, self.members,
         self._next_member_id, self.ready) = saved
