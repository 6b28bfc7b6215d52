"""membership_ledger.errors

Exception taxonomy shared by the ledger, the operations and the publisher.
No error kind is fatal to the process.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every ledger-level failure."""


class ValidationError(LedgerError, ValueError):
    """Raised when a command field is missing, malformed or out of range.

    Always recoverable: the ledger is untouched and the caller may retry
    with corrected input.
    """


class DecodeError(LedgerError):
    """Raised when a mapping token cannot be decoded.

    Callers treat this as "no mapping configured yet".
    """


class SourceIngestionError(LedgerError):
    """Raised when a sign-in source is unreachable or returns malformed data."""


class PublishError(LedgerError):
    """Raised when writing the snapshot to the ledger spreadsheet fails."""


class SnapshotReadError(LedgerError):
    """Raised when the reserved ranges cannot be read or parsed on full reload."""
