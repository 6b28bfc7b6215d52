"""Normalization functions for sign-in answers and spreadsheet cells.

All functions accept str | None (spreadsheet cells may also arrive as
numbers) and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

DATE_FORMAT = "%m/%d/%Y"
_DATE_FORMATS = (DATE_FORMAT, "%Y-%m-%d", "%m/%d/%y")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_date
# ---------------------------------------------------------------------------

def parse_date(value: Any) -> date | None:
    """Parse 'MM/DD/YYYY' (sheet format) or ISO 'YYYY-MM-DD'.

    Single-digit months and days are accepted ('2/2/2024').
    """
    v = trim(value)
    if v is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def format_date(value: date | None) -> str:
    """Render a date the way the ledger spreadsheet stores it."""
    if value is None:
        return ""
    return value.strftime(DATE_FORMAT)


# ---------------------------------------------------------------------------
# Rule 5: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: Any) -> int | None:
    """Parse an integer, tolerating '2026.0' style cells; None on failure."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    v = trim(value)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        pass
    try:
        f = float(v)
    except ValueError:
        return None
    return int(f) if f.is_integer() else None
