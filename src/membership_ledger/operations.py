"""membership_ledger.operations

Edit commands against a Ledger.

Each command is an immutable value carrying only its own fields. A command
exists only once every required field is present (command_from_fields()
rejects anything missing), so running one is two steps:

  validate(ledger) -> validated command    raises ValidationError, never mutates
  apply(ledger)    -> bool                 mutates; False if re-ingestion failed

run_operation() wraps both under the ledger's lock, narrates to the audit
log, and republishes the snapshot when publishing is enabled and the apply
succeeded. Id -1 means "create new"; ids >= 0 address existing rows by index.

| operation            | effect                                                        |
|----------------------|---------------------------------------------------------------|
| upsert_category      | append, or edit in place and move attendees' points by delta  |
| delete_category      | repoint events to the replacement, remove, renumber ids       |
| upsert_event         | append or edit, then soft reload                              |
| delete_event         | debit attendees, remove, soft reload                          |
| update_question_map  | replace map + token, soft reload                              |
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

from membership_ledger.errors import (
    PublishError,
    SnapshotReadError,
    SourceIngestionError,
    ValidationError,
)
from membership_ledger.ledger import Ledger
from membership_ledger.models import Category, Event, MemberAttribute, QuestionMap, SourceKind
from membership_ledger.normalize import format_date, parse_date, parse_int, trim

log = logging.getLogger(__name__)

NEW_ID = -1


def _check_index(ledger_rows: list, idx: int, what: str, allow_new: bool = False) -> None:
    if allow_new and idx == NEW_ID:
        return
    if not 0 <= idx < len(ledger_rows):
        raise ValidationError(f"{what} id {idx} is out of range (0..{len(ledger_rows) - 1})")


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UpsertCategory:
    category_id: int
    name: str
    points: int

    label = "UPDATE CATEGORY"
    affects_categories = True

    def validate(self, ledger: Ledger) -> UpsertCategory:
        _check_index(ledger.categories, self.category_id, "category", allow_new=True)
        if not trim(self.name):
            raise ValidationError("category name is blank")
        if self.points < 0:
            raise ValidationError(f"category points must be >= 0, got {self.points}")
        return self

    def apply(self, ledger: Ledger) -> bool:
        name = trim(self.name) or ""
        if self.category_id == NEW_ID:
            ledger.categories.append(Category(len(ledger.categories), name, self.points))
            ledger.audit.log(f"{self.label}: created {name!r} ({self.points} points)")
            return True

        category = ledger.categories[self.category_id]
        delta = self.points - category.points
        # recompute unconditionally; a zero delta is a no-op per attendee
        for event in ledger.events:
            if event.category is category:
                ledger.adjust_attendee_points(event, delta)
        category.name = name
        category.points = self.points
        ledger.audit.log(
            f"{self.label}: category {self.category_id} is now {name!r} ({self.points} points)"
        )
        return True


@dataclass(frozen=True)
class DeleteCategory:
    remove_id: int
    replace_id: int

    label = "DELETE CATEGORY"
    affects_categories = True

    def validate(self, ledger: Ledger) -> DeleteCategory:
        _check_index(ledger.categories, self.remove_id, "category")
        _check_index(ledger.categories, self.replace_id, "replacement category")
        if self.remove_id == self.replace_id:
            raise ValidationError("a category cannot replace itself")
        return self

    def apply(self, ledger: Ledger) -> bool:
        removed = ledger.categories[self.remove_id]
        replacement = ledger.categories[self.replace_id]
        moved = 0
        for event in ledger.events:
            if event.category is removed:
                ledger.set_event_category(event, replacement)
                moved += 1
        del ledger.categories[self.remove_id]
        ledger.renumber_categories()
        ledger.audit.log(
            f"{self.label}: removed {removed.name!r}, {moved} event(s) moved to {replacement.name!r}"
        )
        return True


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UpsertEvent:
    event_id: int
    title: str
    raw_date: str
    source: str
    source_kind: str
    category_id: int

    label = "UPDATE EVENT"
    affects_categories = False

    def validate(self, ledger: Ledger) -> ValidUpsertEvent:
        _check_index(ledger.events, self.event_id, "event", allow_new=True)
        title = trim(self.title)
        if title is None:
            raise ValidationError("event title is blank")
        event_date = parse_date(self.raw_date)
        if event_date is None:
            raise ValidationError(f"unparseable event date: {self.raw_date!r}")
        source = trim(self.source)
        if source is None:
            raise ValidationError("event source is blank")
        try:
            kind = SourceKind.parse(self.source_kind)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        _check_index(ledger.categories, self.category_id, "category")
        return ValidUpsertEvent(self.event_id, title, event_date, source, kind, self.category_id)


@dataclass(frozen=True)
class ValidUpsertEvent:
    event_id: int
    title: str
    event_date: date
    source: str
    source_kind: SourceKind
    category_id: int

    label = UpsertEvent.label

    def apply(self, ledger: Ledger) -> bool:
        category = ledger.categories[self.category_id]
        if self.event_id == NEW_ID:
            ledger.events.append(Event(
                name=self.title,
                event_date=self.event_date,
                category=category,
                source=self.source,
                source_kind=self.source_kind,
            ))
            ledger.audit.log(f"{self.label}: created {self.title!r} on {format_date(self.event_date)}")
        else:
            event = ledger.events[self.event_id]
            if event.source != self.source or event.source_kind is not self.source_kind:
                # the old mapping describes another source's questions
                ledger.clear_attendance(event)
                event.question_map = {}
                event.mapping_token = ""
                ledger.audit.log(f"{self.label}: source changed, mapping for {event.name!r} reset")
            if event.category is not category:
                ledger.set_event_category(event, category)
            event.name = self.title
            event.event_date = self.event_date
            event.source = self.source
            event.source_kind = self.source_kind
            ledger.audit.log(f"{self.label}: event {self.event_id} updated")
        return ledger.soft_reload()


@dataclass(frozen=True)
class DeleteEvent:
    event_id: int

    label = "DELETE EVENT"
    affects_categories = False

    def validate(self, ledger: Ledger) -> DeleteEvent:
        _check_index(ledger.events, self.event_id, "event")
        return self

    def apply(self, ledger: Ledger) -> bool:
        event = ledger.remove_event(self.event_id)
        ledger.audit.log(
            f"{self.label}: removed {event.name!r}, "
            f"{event.category.points} point(s) debited from each attendee"
        )
        return ledger.soft_reload()


# ---------------------------------------------------------------------------
# Question map
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UpdateQuestionMap:
    event_id: int
    matches: tuple[tuple[str, str], ...]

    label = "UPDATE QUESTION MAP"
    affects_categories = False

    def validate(self, ledger: Ledger) -> ValidQuestionMap:
        _check_index(ledger.events, self.event_id, "event")
        question_map: QuestionMap = {}
        for question_id, raw_attribute in self.matches:
            qid = trim(question_id)
            if qid is None:
                raise ValidationError("question id is blank")
            try:
                attribute = MemberAttribute.parse(raw_attribute)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            # duplicate question ids collapse, last one wins
            question_map.pop(qid, None)
            if attribute is not None:
                question_map[qid] = attribute
        return ValidQuestionMap(self.event_id, question_map)


@dataclass(frozen=True)
class ValidQuestionMap:
    event_id: int
    question_map: QuestionMap

    label = UpdateQuestionMap.label

    def apply(self, ledger: Ledger) -> bool:
        event = ledger.events[self.event_id]
        event.question_map = dict(self.question_map)
        event.mapping_token = ledger.get_mapping_token(event.question_map)
        ledger.audit.log(
            f"{self.label}: {event.name!r} now maps {len(event.question_map)} question(s)"
        )
        return ledger.soft_reload()


Command = Union[UpsertCategory, DeleteCategory, UpsertEvent, DeleteEvent, UpdateQuestionMap]


# ---------------------------------------------------------------------------
# Building commands from loose fields (API bodies, spreadsheet command regions)
# ---------------------------------------------------------------------------

def _require(fields: Mapping[str, Any], name: str) -> Any:
    value = fields.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"missing required field: {name}")
    return value


def _require_int(fields: Mapping[str, Any], name: str, default: int | None = None) -> int:
    if default is not None and trim(fields.get(name)) is None:
        return default
    value = parse_int(_require(fields, name))
    if value is None:
        raise ValidationError(f"field {name} must be an integer")
    return value


def _matches(raw: Any) -> tuple[tuple[str, str], ...]:
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("field matches must be a list")
    pairs: list[tuple[str, str]] = []
    for item in raw:
        if isinstance(item, Mapping):
            qid, attr = item.get("question_id"), item.get("attribute")
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            qid, attr = item
        else:
            raise ValidationError(f"malformed question match: {item!r}")
        if trim(qid) is None:
            raise ValidationError(f"question match without question id: {item!r}")
        pairs.append((str(trim(qid)), "" if attr is None else str(attr)))
    return tuple(pairs)


def command_from_fields(operation: str, fields: Mapping[str, Any]) -> Command:
    """Build a command, rejecting missing or mistyped fields with ValidationError.

    Create/edit ids default to -1 (create) when omitted.
    """
    if operation == "upsert_category":
        return UpsertCategory(
            category_id=_require_int(fields, "category_id", default=NEW_ID),
            name=str(_require(fields, "name")),
            points=_require_int(fields, "points"),
        )
    if operation == "delete_category":
        return DeleteCategory(
            remove_id=_require_int(fields, "remove_id"),
            replace_id=_require_int(fields, "replace_id"),
        )
    if operation == "upsert_event":
        return UpsertEvent(
            event_id=_require_int(fields, "event_id", default=NEW_ID),
            title=str(_require(fields, "title")),
            raw_date=str(_require(fields, "raw_date")),
            source=str(_require(fields, "source")),
            source_kind=str(_require(fields, "source_kind")),
            category_id=_require_int(fields, "category_id"),
        )
    if operation == "delete_event":
        return DeleteEvent(event_id=_require_int(fields, "event_id"))
    if operation == "update_question_map":
        return UpdateQuestionMap(
            event_id=_require_int(fields, "event_id"),
            matches=_matches(_require(fields, "matches")),
        )
    raise ValidationError(f"unknown operation: {operation!r}")


OPERATIONS = (
    "upsert_category",
    "delete_category",
    "upsert_event",
    "delete_event",
    "update_question_map",
)


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------

def run_operation(ledger: Ledger, command: Command, publish: bool = True) -> bool:
    """Validate then apply *command*; never raises for bad input.

    Returns False when validation fails (ledger untouched), when re-ingestion
    of a source failed (the edit stands in memory but is not published), or
    when the snapshot could not be published.
    """
    log.debug("ledger %s: %r", ledger.settings.id, command)
    with ledger.lock:
        try:
            validated = command.validate(ledger)
        except ValidationError as exc:
            ledger.audit.error(f"{command.label}: rejected: {exc}")
            ledger.audit.flush()
            return False

        ok = validated.apply(ledger)
        if publish and not ok:
            ledger.audit.error(f"{command.label}: not published; spreadsheet keeps the last good snapshot")
        elif publish:
            try:
                ledger.publish(include_categories=command.affects_categories)
            except PublishError:
                ok = False
        ledger.audit.log(f"{command.label}: {'done' if ok else 'finished with errors'}")
        ledger.audit.flush()
        return ok


def run_fields(
    ledger: Ledger,
    operation: str,
    fields: Mapping[str, Any],
    publish: bool = True,
) -> bool:
    """Entry point for callers holding loose fields (HTTP bodies)."""
    try:
        command = command_from_fields(operation, fields)
    except ValidationError as exc:
        ledger.audit.error(f"{operation}: rejected: {exc}")
        ledger.audit.flush()
        return False
    return run_operation(ledger, command, publish=publish)


def run_sheet_command(ledger: Ledger, operation: str, publish: bool = True) -> bool:
    """Execute a command authored in the spreadsheet's command region."""
    try:
        fields = ledger.publisher.read_command_fields(
            ledger.settings.spreadsheet_locator, operation
        )
    except (SnapshotReadError, ValueError) as exc:
        ledger.audit.error(f"{operation}: could not read command: {exc}")
        ledger.audit.flush()
        return False
    return run_fields(ledger, operation, fields, publish=publish)


# ---------------------------------------------------------------------------
# Load prompts: copy current values into a command region for editing
# ---------------------------------------------------------------------------

def load_category_prompt(ledger: Ledger, category_id: int) -> bool:
    with ledger.lock:
        if not 0 <= category_id < len(ledger.categories):
            ledger.audit.error(f"LOAD CATEGORY: id {category_id} is out of range")
            ledger.audit.flush()
            return False
        c = ledger.categories[category_id]
        return _write_prompt(ledger, "upsert_category", [c.id, c.name, c.points])


def load_event_prompt(ledger: Ledger, event_id: int) -> bool:
    with ledger.lock:
        if not 0 <= event_id < len(ledger.events):
            ledger.audit.error(f"LOAD EVENT: id {event_id} is out of range")
            ledger.audit.flush()
            return False
        e = ledger.events[event_id]
        return _write_prompt(ledger, "upsert_event", [
            event_id, e.name, format_date(e.event_date), e.source,
            e.source_kind.value, e.category.id,
        ])


def load_question_map_prompt(ledger: Ledger, event_id: int) -> bool:
    """List the source's questions next to their currently mapped attribute."""
    with ledger.lock:
        if not 0 <= event_id < len(ledger.events):
            ledger.audit.error(f"LOAD QUESTION MAP: id {event_id} is out of range")
            ledger.audit.flush()
            return False
        event = ledger.events[event_id]
        try:
            questions = ledger.list_source_questions(event)
        except SourceIngestionError as exc:
            ledger.audit.error(f"LOAD QUESTION MAP: {exc}")
            ledger.audit.flush()
            return False
        rows = [
            (text, qid, event.question_map[qid].value if qid in event.question_map else "")
            for qid, text in questions
        ]
        try:
            ledger.publisher.write_question_prompt(
                ledger.settings.spreadsheet_locator, event_id, rows
            )
        except PublishError as exc:
            ledger.audit.error(f"LOAD QUESTION MAP: {exc}")
            ledger.audit.flush()
            return False
        ledger.audit.log(f"LOAD QUESTION MAP: {len(rows)} question(s) for {event.name!r}")
        ledger.audit.flush()
        return True


def _write_prompt(ledger: Ledger, operation: str, values: list[Any]) -> bool:
    try:
        ledger.publisher.write_command_prompt(
            ledger.settings.spreadsheet_locator, operation, values
        )
    except PublishError as exc:
        ledger.audit.error(f"LOAD {operation}: {exc}")
        ledger.audit.flush()
        return False
    ledger.audit.log(f"LOAD {operation}: prompt written")
    ledger.audit.flush()
    return True
