"""membership_ledger.shared

Ingestion counters and run-report writing shared by the ledger, the
registry and the CLI.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# IngestCounters
# ---------------------------------------------------------------------------

@dataclass
class IngestCounters:
    rows_read: int = 0
    rows_skipped_no_external_id: int = 0
    events_ingested: int = 0
    events_without_key_question: int = 0
    events_failed: int = 0
    members_created: int = 0
    members_loaded: int = 0
    attendees_added: int = 0
    attributes_filled: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    reports_dir: Path,
    results: dict[str, Any],
    counters: dict[int, IngestCounters],
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "results": results,
        "counters": {str(k): c.to_dict() for k, c in counters.items()},
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
