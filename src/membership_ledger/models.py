"""membership_ledger.models

Data model for one organization's membership ledger: categories (point-valued
event types), events, members, and the persisted per-ledger settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable

from membership_ledger.normalize import (
    normalize_email,
    normalize_space,
    parse_date,
    parse_int,
    trim,
)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class MemberAttribute(str, Enum):
    """Closed set of member attributes a sign-in question can map to."""

    FIRST_NAME = "First Name"
    LAST_NAME = "Last Name"
    EXTERNAL_ID = "External ID"
    EMAIL = "Email"
    PHONE_NUMBER = "Phone Number"
    BIRTHDAY = "Birthday"
    MAJOR = "Major"
    GRADUATION_YEAR = "Graduation Year"

    @classmethod
    def parse(cls, value: Any) -> MemberAttribute | None:
        """Return the attribute named by *value*, or None for "unmapped".

        Accepts the display value ("Graduation Year") or the member name
        ("GRADUATION_YEAR"), case-insensitively. Raises ValueError for
        anything else.
        """
        v = trim(value)
        if v is None:
            return None
        folded = v.casefold()
        for attr in cls:
            if folded in (attr.value.casefold(), attr.name.casefold()):
                return attr
        raise ValueError(f"unknown member attribute: {v!r}")


class SourceKind(str, Enum):
    """Where an event's sign-in data lives."""

    TABULAR = "GoogleSheets"
    FORM = "GoogleForms"

    @classmethod
    def parse(cls, value: Any) -> SourceKind:
        v = trim(value)
        if v is not None:
            folded = v.casefold()
            for kind in cls:
                if folded in (kind.value.casefold(), kind.name.casefold()):
                    return kind
        raise ValueError(f"unknown source kind: {value!r}")


class Semester(str, Enum):
    FALL = "Fall"
    SPRING = "Spring"

    @classmethod
    def for_date(cls, d: date) -> Semester:
        """January through July is spring; August through December is fall."""
        return cls.FALL if d.month >= 8 else cls.SPRING


def semester_label(d: date) -> str:
    return f"{Semester.for_date(d).value} {d.year}"


# question identifier (column index or form question id) -> attribute
QuestionMap = dict[str, MemberAttribute]


# ---------------------------------------------------------------------------
# Category / Event
# ---------------------------------------------------------------------------

@dataclass
class Category:
    id: int
    name: str
    points: int


@dataclass
class Event:
    name: str
    event_date: date
    category: Category
    source: str
    source_kind: SourceKind
    question_map: QuestionMap = field(default_factory=dict)
    mapping_token: str = ""
    attendees: set[str] = field(default_factory=set)

    @property
    def semester(self) -> str:
        return semester_label(self.event_date)


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------

# attribute -> (Member field, parser); external id is the key, never filled
_ATTRIBUTE_FIELDS: dict[MemberAttribute, tuple[str, Callable[[Any], Any]]] = {
    MemberAttribute.FIRST_NAME: ("first_name", normalize_space),
    MemberAttribute.LAST_NAME: ("last_name", normalize_space),
    MemberAttribute.EMAIL: ("email", normalize_email),
    MemberAttribute.PHONE_NUMBER: ("phone_number", trim),
    MemberAttribute.BIRTHDAY: ("birthday", parse_date),
    MemberAttribute.MAJOR: ("major", normalize_space),
    MemberAttribute.GRADUATION_YEAR: ("graduation_year", parse_int),
}


@dataclass
class Member:
    """A member keyed by external id.

    Attribute slots start unset and are filled first-writer-wins. Points are
    kept per semester; the total is always their sum.
    """

    key: str
    member_id: int
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    birthday: date | None = None
    major: str | None = None
    graduation_year: int | None = None
    fall_points: int = 0
    spring_points: int = 0

    @property
    def total_points(self) -> int:
        return self.fall_points + self.spring_points

    def fill(self, attribute: MemberAttribute, raw: Any) -> bool:
        """Set *attribute* from a raw answer if it is still unset.

        Returns True when the slot was filled.
        """
        spec = _ATTRIBUTE_FIELDS.get(attribute)
        if spec is None:
            return False
        field_name, parser = spec
        if getattr(self, field_name) is not None:
            return False
        value = parser(raw)
        if value is None:
            return False
        setattr(self, field_name, value)
        return True

    def add_points(self, when: date, points: int) -> None:
        """Credit (or debit, when negative) the bucket of the semester of *when*."""
        if Semester.for_date(when) is Semester.FALL:
            self.fall_points += points
        else:
            self.spring_points += points


# ---------------------------------------------------------------------------
# Persisted settings
# ---------------------------------------------------------------------------

@dataclass
class LedgerSettings:
    """Per-ledger settings as persisted in the ledgers JSON file."""

    id: int
    name: str
    spreadsheet_locator: str
    version: str = "1.0.0"
    mapping_iv: str = ""
    output_capacity: int = 200
    output_retention_period_days: int = 7

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerSettings:
        missing = {"id", "name", "spreadsheetLocator"} - set(data)
        if missing:
            raise ValueError(f"ledger settings missing keys: {sorted(missing)}")
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            spreadsheet_locator=str(data["spreadsheetLocator"]),
            version=str(data.get("version", "1.0.0")),
            mapping_iv=str(data.get("mappingIv") or ""),
            output_capacity=int(data.get("outputCapacity", 200)),
            output_retention_period_days=int(data.get("outputRetentionPeriodDays", 7)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "spreadsheetLocator": self.spreadsheet_locator,
            "version": self.version,
            "mappingIv": self.mapping_iv,
            "outputCapacity": self.output_capacity,
            "outputRetentionPeriodDays": self.output_retention_period_days,
        }
