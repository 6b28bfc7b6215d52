"""Unit test fixtures: in-memory stand-ins for the Google collaborators."""

from __future__ import annotations

import copy
from datetime import date

import pytest
import requests

from membership_ledger.ledger import Ledger
from membership_ledger.models import (
    Category,
    Event,
    LedgerSettings,
    MemberAttribute,
    SourceKind,
)

LEDGER_LOCATOR = "ledger-sheet"
MAPPING_KEY = "test-mapping-secret"
# 16 zero bytes
MAPPING_IV = "AAAAAAAAAAAAAAAAAAAAAA=="


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeSheetsClient:
    """Sign-in sheets (``sources``) plus named regions of ledger spreadsheets.

    Regions are keyed by (locator, range) exactly as the code under test
    addresses them.
    """

    def __init__(self) -> None:
        self.sources: dict[str, list[list]] = {}
        self.regions: dict[tuple[str, str], list[list]] = {}
        self.cleared: list[tuple[str, list[str]]] = []
        self.writes: list[tuple[str, dict[str, list[list]]]] = []
        self.appended: list[tuple[str, str, list[list]]] = []
        self.fail_reads = False
        self.fail_writes = False
        # raised instead of the default transport error when set
        self.read_error: Exception | None = None
        self.source_errors: dict[str, Exception] = {}

    def read_rows(self, locator: str, cell_range: str) -> list[list]:
        if locator in self.source_errors:
            raise self.source_errors[locator]
        if locator not in self.sources:
            raise requests.HTTPError(f"404 Client Error: spreadsheet {locator} not found")
        rows = copy.deepcopy(self.sources[locator])
        if cell_range == "A1:ZZ1":
            return rows[:1]
        return rows

    def batch_read(self, locator: str, ranges: list[str]) -> list[list[list]]:
        if self.read_error is not None:
            raise self.read_error
        if self.fail_reads:
            raise requests.ConnectionError("connection reset")
        return [copy.deepcopy(self.regions.get((locator, r), [])) for r in ranges]

    def batch_clear(self, locator: str, ranges: list[str]) -> None:
        if self.fail_writes:
            raise requests.ConnectionError("connection reset")
        self.cleared.append((locator, list(ranges)))
        for r in ranges:
            self.regions[(locator, r)] = []

    def batch_write(self, locator: str, values: dict[str, list[list]]) -> None:
        if self.fail_writes:
            raise requests.ConnectionError("connection reset")
        self.writes.append((locator, copy.deepcopy(values)))
        for r, rows in values.items():
            self.regions[(locator, r)] = copy.deepcopy(rows)

    def append_rows(self, locator: str, cell_range: str, rows: list[list]) -> None:
        if self.fail_writes:
            raise requests.ConnectionError("connection reset")
        self.appended.append((locator, cell_range, copy.deepcopy(rows)))
        self.regions.setdefault((locator, cell_range), []).extend(copy.deepcopy(rows))


class FakeFormsClient:
    def __init__(self) -> None:
        self.responses: dict[str, list[dict[str, str]]] = {}
        self.questions: dict[str, list[tuple[str, str]]] = {}

    def list_responses(self, locator: str) -> list[dict[str, str]]:
        if locator not in self.responses:
            raise requests.HTTPError(f"404 Client Error: form {locator} not found")
        return copy.deepcopy(self.responses[locator])

    def list_questions(self, locator: str) -> list[tuple[str, str]]:
        if locator not in self.questions:
            raise requests.HTTPError(f"404 Client Error: form {locator} not found")
        return list(self.questions[locator])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sheets() -> FakeSheetsClient:
    return FakeSheetsClient()


@pytest.fixture
def forms() -> FakeFormsClient:
    return FakeFormsClient()


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(
        id=0,
        name="Test Org",
        spreadsheet_locator=LEDGER_LOCATOR,
        mapping_iv=MAPPING_IV,
    )


@pytest.fixture
def ledger(settings, sheets, forms) -> Ledger:
    return Ledger(settings, sheets, forms, MAPPING_KEY)


def add_event(
    ledger: Ledger,
    name: str,
    when: date,
    category_index: int,
    source: str,
    kind: SourceKind = SourceKind.TABULAR,
    question_map: dict[str, MemberAttribute] | None = None,
) -> Event:
    """Append an event directly (no ingestion)."""
    qmap = dict(question_map or {})
    event = Event(
        name=name,
        event_date=when,
        category=ledger.categories[category_index],
        source=source,
        source_kind=kind,
        question_map=qmap,
        mapping_token=ledger.get_mapping_token(qmap),
    )
    ledger.events.append(event)
    return event


def add_category(ledger: Ledger, name: str, points: int) -> Category:
    category = Category(len(ledger.categories), name, points)
    ledger.categories.append(category)
    return category


def audit_messages(ledger: Ledger) -> list[str]:
    """Flushed plus pending narration for a ledger built on the memory sink."""
    return [msg for _, msg in ledger.audit.sink.messages] + ledger.audit.pending


@pytest.fixture(name="add_event")
def add_event_fixture():
    return add_event


@pytest.fixture(name="add_category")
def add_category_fixture():
    return add_category


@pytest.fixture(name="audit_messages")
def audit_messages_fixture():
    return audit_messages
