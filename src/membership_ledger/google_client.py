"""membership_ledger.google_client

Thin REST clients for the two Google providers the ledger talks to.

  GoogleSheetsClient  Sheets API v4 values endpoints (sign-in sheets and the
                      ledger spreadsheet itself)
  GoogleFormsClient   Forms API v1 responses / form structure

Both wrap a requests-compatible session (google-auth's AuthorizedSession in
production, a MagicMock in tests). Every call is bounded by a per-request
timeout and raises one of TRANSPORT_ERRORS on transport, HTTP or credential
failure; callers convert that into their own error kinds.

Usage:
    session = build_session(Path("config/service_account.json"))
    sheets = GoogleSheetsClient(session, timeout=30)
    rows = sheets.read_rows("1AbC...", "A1:ZZ")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.service_account import Credentials

log = logging.getLogger(__name__)

SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/forms.body.readonly",
    "https://www.googleapis.com/auth/forms.responses.readonly",
)

SHEETS_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"
FORMS_BASE_URL = "https://forms.googleapis.com/v1/forms"

VALUE_INPUT_OPTION = "USER_ENTERED"

# AuthorizedSession raises google-auth errors (token refresh) next to requests' own
TRANSPORT_ERRORS = (requests.RequestException, GoogleAuthError)


def build_session(service_account_path: Path) -> AuthorizedSession:
    """Authorized session from a service-account key file."""
    creds = Credentials.from_service_account_file(str(service_account_path), scopes=list(SCOPES))
    return AuthorizedSession(creds)


def _check(resp: requests.Response) -> dict[str, Any]:
    resp.raise_for_status()
    return resp.json() if resp.content else {}


# ---------------------------------------------------------------------------
# Sheets
# ---------------------------------------------------------------------------

class GoogleSheetsClient:
    def __init__(self, session: requests.Session, timeout: float = 30) -> None:
        self._session = session
        self._timeout = timeout

    def _url(self, locator: str, suffix: str) -> str:
        return f"{SHEETS_BASE_URL}/{quote(locator, safe='')}/{suffix}"

    def read_rows(self, locator: str, cell_range: str) -> list[list[Any]]:
        """Rows of one range; trailing empty rows and cells are omitted by the API."""
        resp = self._session.get(
            self._url(locator, f"values/{quote(cell_range, safe='')}"),
            timeout=self._timeout,
        )
        return _check(resp).get("values", [])

    def batch_read(self, locator: str, ranges: list[str]) -> list[list[list[Any]]]:
        resp = self._session.get(
            self._url(locator, "values:batchGet"),
            params={"ranges": list(ranges)},
            timeout=self._timeout,
        )
        value_ranges = _check(resp).get("valueRanges", [])
        out = [vr.get("values", []) for vr in value_ranges]
        # one entry per requested range
        out.extend([] for _ in range(len(ranges) - len(out)))
        return out

    def batch_clear(self, locator: str, ranges: list[str]) -> None:
        if not ranges:
            return
        resp = self._session.post(
            self._url(locator, "values:batchClear"),
            json={"ranges": list(ranges)},
            timeout=self._timeout,
        )
        _check(resp)

    def batch_write(self, locator: str, values: dict[str, list[list[Any]]]) -> None:
        if not values:
            return
        resp = self._session.post(
            self._url(locator, "values:batchUpdate"),
            json={
                "valueInputOption": VALUE_INPUT_OPTION,
                "data": [{"range": r, "values": rows} for r, rows in values.items()],
            },
            timeout=self._timeout,
        )
        _check(resp)
        log.debug("wrote %d range(s) to %s", len(values), locator)

    def append_rows(self, locator: str, cell_range: str, rows: list[list[Any]]) -> None:
        resp = self._session.post(
            self._url(locator, f"values/{quote(cell_range, safe='')}:append"),
            params={"valueInputOption": VALUE_INPUT_OPTION, "insertDataOption": "INSERT_ROWS"},
            json={"values": rows},
            timeout=self._timeout,
        )
        _check(resp)


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------

def flatten_response(response: dict[str, Any]) -> dict[str, str]:
    """Form response -> {question id: answer text}; multi-valued answers are comma-joined."""
    flat: dict[str, str] = {}
    for qid, answer in (response.get("answers") or {}).items():
        texts = [
            a.get("value", "")
            for a in (answer.get("textAnswers") or {}).get("answers", [])
        ]
        if texts:
            flat[qid] = ", ".join(texts)
    return flat


class GoogleFormsClient:
    def __init__(self, session: requests.Session, timeout: float = 30) -> None:
        self._session = session
        self._timeout = timeout

    def list_responses(self, locator: str) -> list[dict[str, str]]:
        """Every response to the form, following pagination."""
        url = f"{FORMS_BASE_URL}/{quote(locator, safe='')}/responses"
        responses: list[dict[str, str]] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            body = _check(self._session.get(url, params=params, timeout=self._timeout))
            responses.extend(flatten_response(r) for r in body.get("responses", []))
            page_token = body.get("nextPageToken")
            if not page_token:
                return responses

    def list_questions(self, locator: str) -> list[tuple[str, str]]:
        """(question id, title) for every question item, in form order."""
        body = _check(self._session.get(
            f"{FORMS_BASE_URL}/{quote(locator, safe='')}",
            timeout=self._timeout,
        ))
        questions: list[tuple[str, str]] = []
        for item in body.get("items", []):
            question = (item.get("questionItem") or {}).get("question") or {}
            qid = question.get("questionId")
            if qid:
                questions.append((qid, item.get("title", "")))
        return questions
