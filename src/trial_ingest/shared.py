"""trial_ingest.shared

Shared types used by every stage of the ingestion pipeline: the row and
result dataclasses, the structural exception hierarchy, RejectWriter and
run-report writing for the CLI.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"

REJECT_INVALID = "invalid"
REJECT_DUPLICATE = "duplicate"
REJECT_DB_ERROR = "db_error"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IngestionError(Exception):
    """Structural failure: aborts the whole ingestion call.

    trial_id carries an auto-detected identifier so the audit entry can
    still name the trial the file pointed at.
    """

    def __init__(self, message: str, trial_id: str | None = None) -> None:
        super().__init__(message)
        self.trial_id = trial_id


class RawContentError(IngestionError):
    """Raised when file content cannot be decoded into rows."""


class UnknownDataTypeError(IngestionError):
    """Raised when a data type has no column mapping or extractor."""


class MissingTrialIdError(IngestionError):
    """Raised when no trial id was supplied and none could be detected."""


class TrialNotFoundError(IngestionError):
    """Raised when the target trial does not exist in storage."""


class TrialSummaryError(IngestionError):
    """Raised when a trial-summary workbook has no usable content."""


class GISFormatError(ValueError):
    """Raised when a GIS file cannot be parsed into GeoJSON."""


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedRow:
    """Header -> raw text, plus the 1-based data-row index in the source."""

    index: int
    values: dict[str, str]


@dataclass(frozen=True)
class NormalizedRow:
    """Typed record keyed by canonical field name."""

    index: int
    fields: dict[str, Any]
    raw: dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def get(self, name: str) -> Any:
        return self.fields.get(name)


@dataclass(frozen=True)
class Rejection:
    row_index: int
    reason: str
    kind: str = REJECT_INVALID

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "reason": self.reason, "kind": self.kind}


# ---------------------------------------------------------------------------
# IngestionResult / UploadLogEntry
# ---------------------------------------------------------------------------

def derive_status(accepted: int, rejected: int) -> str:
    """success: nothing rejected; partial: mixed; error: nothing accepted."""
    if accepted == 0:
        return STATUS_ERROR
    if rejected == 0:
        return STATUS_SUCCESS
    return STATUS_PARTIAL


@dataclass
class IngestionResult:
    status: str
    records_accepted: int = 0
    records_rejected: int = 0
    records_duplicate: int = 0
    rejections: list[Rejection] = field(default_factory=list)
    detail: str = ""
    trial_id: str | None = None
    data_type: str | None = None
    filename: str | None = None
    unmapped_columns: list[str] = field(default_factory=list)

    @classmethod
    def error(
        cls,
        detail: str,
        trial_id: str | None = None,
        data_type: str | None = None,
        filename: str | None = None,
    ) -> "IngestionResult":
        return cls(
            status=STATUS_ERROR,
            detail=detail,
            trial_id=trial_id,
            data_type=data_type,
            filename=filename,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "records_accepted": self.records_accepted,
            "records_rejected": self.records_rejected,
            "records_duplicate": self.records_duplicate,
            "rejections": [r.to_dict() for r in self.rejections],
            "detail": self.detail,
            "trial_id": self.trial_id,
            "data_type": self.data_type,
            "filename": self.filename,
            "unmapped_columns": self.unmapped_columns,
        }


@dataclass(frozen=True)
class UploadLogEntry:
    """Append-only audit record, one per ingestion call."""

    trial_id: str | None
    filename: str
    data_type: str | None
    status: str
    records_accepted: int
    records_rejected: int
    detail: str
    timestamp: datetime

    @classmethod
    def from_result(cls, result: IngestionResult, filename: str) -> "UploadLogEntry":
        return cls(
            trial_id=result.trial_id,
            filename=filename,
            data_type=result.data_type,
            status=result.status,
            records_accepted=result.records_accepted,
            records_rejected=result.records_rejected,
            detail=result.detail,
            timestamp=datetime.now(timezone.utc),
        )


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    FIELDNAMES = ["filename", "row_index", "kind", "reason"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, filename: str, rejection: Rejection) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.FIELDNAMES)
            self._writer.writeheader()
        self._writer.writerow({"filename": filename, **rejection.to_dict()})
        self._fh.flush()
        self.count += 1

    def write_result(self, result: IngestionResult) -> None:
        for rejection in result.rejections:
            self.write(result.filename or "", rejection)

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    results: list[Any],
) -> Path:
    """Write ./artifacts/reports/{run_id}.json; results are anything with to_dict()."""
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "results": [r.to_dict() for r in results],
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=_json_default))
    return report_path
