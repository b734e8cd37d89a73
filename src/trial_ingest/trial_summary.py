"""trial_ingest.trial_summary

Trial-summary workbooks are a key/value metadata block followed by a small
treatment table, so they bypass the row normalizer entirely.

Layout recognised (case-insensitive labels, trailing colons ignored):

    Trial ID:      | T-2024-01
    Grower:        | Smith Farms
    Planting date: | 2024-04-02
    ...
    Treatment      | Application | Fertiliser | Product | Rate | Timing
    1              | Foliar      | Urea       | ...
    2              | ...
    <blank>                                   <- end of table
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from trial_ingest.normalize import (
    normalize_space,
    normalize_trial_id,
    parse_date,
    parse_integer,
)
from trial_ingest.raw_content import read_grid
from trial_ingest.shared import TrialSummaryError

log = logging.getLogger(__name__)

SHEET_HINT = "treatment"
TREATMENT_HEADER_LABEL = "treatment"
TREATMENT_HEADER_MIN_CELLS = 3

LABELS: dict[str, str] = {
    "trial": "trial_id",
    "trial id": "trial_id",
    "trial no": "trial_id",
    "trial no.": "trial_id",
    "trial number": "trial_id",
    "trial code": "trial_id",
    "name": "name",
    "grower": "grower",
    "location": "location",
    "gps": "gps",
    "crop": "crop",
    "trial type": "trial_type",
    "contact": "contact",
    "planting": "planting_date",
    "planting date": "planting_date",
    "harvest": "harvest_date",
    "harvest date": "harvest_date",
    "treatments": "num_treatments",
    "reps": "reps",
}

TREATMENT_COLUMNS = ("application", "fertiliser", "product", "rate", "timing")


@dataclass(frozen=True)
class Treatment:
    trt_number: int
    application: str | None = None
    fertiliser: str | None = None
    product: str | None = None
    rate: str | None = None
    timing: str | None = None


@dataclass(frozen=True)
class TrialMetadata:
    trial_id: str
    name: str | None = None
    grower: str | None = None
    location: str | None = None
    gps: str | None = None
    crop: str | None = None
    trial_type: str | None = None
    contact: str | None = None
    planting_date: date | None = None
    harvest_date: date | None = None
    num_treatments: int = 0
    reps: int = 1


@dataclass
class TrialSummary:
    metadata: TrialMetadata
    treatments: list[Treatment] = field(default_factory=list)

    @property
    def trial_id(self) -> str:
        return self.metadata.trial_id


def _label(cell: str) -> str:
    return (normalize_space(cell) or "").lower().rstrip(":").strip()


def _cell(row: list[str], pos: int) -> str | None:
    return normalize_space(row[pos]) if pos < len(row) else None


def _filled(row: list[str]) -> int:
    """Cells up to and including the last non-blank one."""
    for pos in range(len(row) - 1, -1, -1):
        if row[pos].strip():
            return pos + 1
    return 0


def extract_trial_summary(grid: list[list[str]]) -> TrialSummary:
    """Scan a sheet grid for metadata labels and the treatment table.

    Raises:
        TrialSummaryError: If no trial id label carries a value.
    """
    labels: dict[str, str] = {}
    treatments: list[Treatment] = []
    in_table = False

    for row in grid:
        if in_table:
            trt_number = parse_integer(_cell(row, 0))
            if trt_number is not None:
                treatments.append(Treatment(
                    trt_number,
                    **{col: _cell(row, pos) for pos, col in enumerate(TREATMENT_COLUMNS, start=1)},
                ))
                continue
            in_table = False

        if not row:
            continue
        label = _label(row[0])
        key = LABELS.get(label)
        if key is not None:
            value = _cell(row, 1)
            if value:
                labels[key] = value
        if label == TREATMENT_HEADER_LABEL and _filled(row) >= TREATMENT_HEADER_MIN_CELLS:
            in_table = True
            treatments = []

    trial_id = normalize_trial_id(labels.get("trial_id"))
    if not trial_id:
        raise TrialSummaryError("Trial summary has no trial id")

    name = labels.get("name")
    metadata = TrialMetadata(
        trial_id=trial_id,
        name=name,
        grower=labels.get("grower") or name,
        location=labels.get("location"),
        gps=labels.get("gps"),
        crop=labels.get("crop"),
        trial_type=labels.get("trial_type"),
        contact=labels.get("contact"),
        planting_date=parse_date(labels.get("planting_date")),
        harvest_date=parse_date(labels.get("harvest_date")),
        num_treatments=parse_integer(labels.get("num_treatments")) or len(treatments),
        reps=parse_integer(labels.get("reps")) or 1,
    )
    log.info("Trial summary %s: %d treatments", trial_id, len(treatments))
    return TrialSummary(metadata=metadata, treatments=treatments)


def parse_trial_summary(content: bytes | str, is_binary: bool) -> TrialSummary:
    return extract_trial_summary(read_grid(content, is_binary, sheet_hint=SHEET_HINT))
