"""Unit test fixtures.

FakeTrialStore is an in-memory TrialStore that enforces each mapping's
natural key the way the unique indexes in migrations/ do.
"""

from __future__ import annotations

import io
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict

import openpyxl
import pytest

from trial_ingest.loader import InsertOutcome
from trial_ingest.shared import REJECT_DUPLICATE, Rejection


class FakeTrialStore:
    def __init__(self, trials=(), fail_upload_log: bool = False) -> None:
        self.trials: dict[str, dict] = {t: {"id": t, "name": t} for t in trials}
        self.treatments: dict[str, list] = {}
        self.tables: dict[str, list[dict]] = defaultdict(list)
        self.coverage: dict[tuple[str, str], bool] = {}
        self.upload_log: list = []
        self.fail_upload_log = fail_upload_log
        self._keys: dict[str, set] = defaultdict(set)

    @contextmanager
    def transaction(self):
        yield self

    def trial_exists(self, trial_id):
        return trial_id in self.trials

    def create_trial(self, trial_id, name):
        self.trials.setdefault(trial_id, {"id": trial_id, "name": name})

    def insert_rows(self, mapping, trial_id, filename, rows):
        outcome = InsertOutcome()
        for row in rows:
            key = (trial_id, *(row.get(k) for k in mapping.natural_key))
            if key in self._keys[mapping.table]:
                outcome.rejections.append(Rejection(row.index, "duplicate", REJECT_DUPLICATE))
                continue
            self._keys[mapping.table].add(key)
            self.tables[mapping.table].append(
                {"trial_id": trial_id, **row.fields, "source_filename": filename}
            )
            outcome.inserted += 1
        return outcome

    def mark_coverage(self, trial_id, data_type):
        self.coverage[(trial_id, data_type)] = True

    def append_upload_log(self, entry):
        if self.fail_upload_log:
            raise RuntimeError("upload_log unavailable")
        self.upload_log.append(entry)

    def save_trial_summary(self, summary, filename):
        self.trials[summary.trial_id] = asdict(summary.metadata)
        self.treatments[summary.trial_id] = list(summary.treatments)

    def covered_data_types(self, trial_id):
        return sorted(dt for (tid, dt), has in self.coverage.items() if tid == trial_id and has)


def build_xlsx(sheets: dict[str, list[list]]) -> bytes:
    """Build a workbook in memory: {sheet title: rows}."""
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture
def store() -> FakeTrialStore:
    return FakeTrialStore(trials=["T-2024-01"])


@pytest.fixture
def xlsx():
    return build_xlsx
