"""trial_ingest.loader

Idempotent Loader: the storage collaborator and the load step built on it.

TrialStore is the seam between the pipeline and durable storage.
PostgresTrialStore implements it over a psycopg connection; unit tests use
an in-memory double.

Duplicate detection is delegated to the unique index on each measurement
table (see column_maps.yml natural_key): inserts use ON CONFLICT DO NOTHING
and a row that comes back without an id collided with an existing record.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, ContextManager, Protocol

import psycopg

from trial_ingest.column_maps import ColumnMapping
from trial_ingest.shared import (
    REJECT_DB_ERROR,
    REJECT_DUPLICATE,
    NormalizedRow,
    Rejection,
    TrialNotFoundError,
    UploadLogEntry,
)
from trial_ingest.trial_summary import TrialSummary

log = logging.getLogger(__name__)


@dataclass
class InsertOutcome:
    inserted: int = 0
    rejections: list[Rejection] = field(default_factory=list)

    @property
    def duplicates(self) -> int:
        return sum(1 for r in self.rejections if r.kind == REJECT_DUPLICATE)


# ---------------------------------------------------------------------------
# Storage protocol
# ---------------------------------------------------------------------------

class TrialStore(Protocol):
    def transaction(self) -> ContextManager[Any]: ...

    def trial_exists(self, trial_id: str) -> bool: ...

    def create_trial(self, trial_id: str, name: str) -> None: ...

    def insert_rows(
        self, mapping: ColumnMapping, trial_id: str, filename: str, rows: list[NormalizedRow]
    ) -> InsertOutcome: ...

    def mark_coverage(self, trial_id: str, data_type: str) -> None: ...

    def append_upload_log(self, entry: UploadLogEntry) -> None: ...

    def save_trial_summary(self, summary: TrialSummary, filename: str) -> None: ...

    def covered_data_types(self, trial_id: str) -> list[str]: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

class PostgresTrialStore:
    """TrialStore over a psycopg connection (schema in migrations/)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def transaction(self) -> ContextManager[Any]:
        return self._conn.transaction()

    def trial_exists(self, trial_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM trials WHERE id = %s", (trial_id,)
        ).fetchone()
        return row is not None

    def create_trial(self, trial_id: str, name: str) -> None:
        self._conn.execute(
            """
            INSERT INTO trials (id, name)
            VALUES (%s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (trial_id, name),
        )

    def insert_rows(
        self,
        mapping: ColumnMapping,
        trial_id: str,
        filename: str,
        rows: list[NormalizedRow],
    ) -> InsertOutcome:
        columns = ["trial_id", *mapping.persisted_fields, "source_filename", "source_row", "raw_data"]
        placeholders = ", ".join(["%s"] * (len(columns) - 1) + ["%s::jsonb"])
        sql = f"""
            INSERT INTO {mapping.table} ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT DO NOTHING
            RETURNING id
        """
        outcome = InsertOutcome()
        for row in rows:
            params = (
                trial_id,
                *(row.get(name) for name in mapping.persisted_fields),
                filename,
                row.index,
                json.dumps(row.raw, ensure_ascii=False, sort_keys=True),
            )
            try:
                with self._conn.transaction():
                    inserted = self._conn.execute(sql, params).fetchone()
            except psycopg.DataError as exc:
                outcome.rejections.append(
                    Rejection(row.index, f"row {row.index}: {exc}", REJECT_DB_ERROR)
                )
                continue
            if inserted:
                outcome.inserted += 1
            else:
                outcome.rejections.append(Rejection(row.index, "duplicate", REJECT_DUPLICATE))
        return outcome

    def mark_coverage(self, trial_id: str, data_type: str) -> None:
        self._conn.execute(
            """
            INSERT INTO trial_data_coverage (trial_id, data_type, has_data, last_updated)
            VALUES (%s, %s, true, now())
            ON CONFLICT (trial_id, data_type) DO UPDATE
                SET has_data = true, last_updated = now()
            """,
            (trial_id, data_type),
        )

    def append_upload_log(self, entry: UploadLogEntry) -> None:
        self._conn.execute(
            """
            INSERT INTO upload_log
              (trial_id, filename, data_type, status,
               records_accepted, records_rejected, detail, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (entry.trial_id, entry.filename, entry.data_type, entry.status,
             entry.records_accepted, entry.records_rejected, entry.detail, entry.timestamp),
        )

    def save_trial_summary(self, summary: TrialSummary, filename: str) -> None:
        """Upsert the trial row and replace its treatments."""
        m = summary.metadata
        self._conn.execute(
            """
            INSERT INTO trials
              (id, name, grower, location, gps, crop, trial_type, contact,
               planting_date, harvest_date, num_treatments, reps, source_filename)
            VALUES (%s, COALESCE(%s, %s), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
              name = COALESCE(%s, trials.name),
              grower = COALESCE(EXCLUDED.grower, trials.grower),
              location = COALESCE(EXCLUDED.location, trials.location),
              gps = COALESCE(EXCLUDED.gps, trials.gps),
              crop = COALESCE(EXCLUDED.crop, trials.crop),
              trial_type = COALESCE(EXCLUDED.trial_type, trials.trial_type),
              contact = COALESCE(EXCLUDED.contact, trials.contact),
              planting_date = COALESCE(EXCLUDED.planting_date, trials.planting_date),
              harvest_date = COALESCE(EXCLUDED.harvest_date, trials.harvest_date),
              num_treatments = EXCLUDED.num_treatments,
              reps = EXCLUDED.reps,
              source_filename = EXCLUDED.source_filename,
              updated_at = now()
            """,
            (m.trial_id, m.name, m.trial_id, m.grower, m.location, m.gps, m.crop,
             m.trial_type, m.contact, m.planting_date, m.harvest_date,
             m.num_treatments, m.reps, filename, m.name),
        )
        self._conn.execute("DELETE FROM treatments WHERE trial_id = %s", (m.trial_id,))
        for t in summary.treatments:
            self._conn.execute(
                """
                INSERT INTO treatments
                  (trial_id, trt_number, application, fertiliser, product, rate, timing)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (trial_id, trt_number) DO NOTHING
                """,
                (m.trial_id, t.trt_number, t.application, t.fertiliser,
                 t.product, t.rate, t.timing),
            )

    def covered_data_types(self, trial_id: str) -> list[str]:
        rows = self._conn.execute(
            """
            SELECT data_type FROM trial_data_coverage
            WHERE trial_id = %s AND has_data
            ORDER BY data_type
            """,
            (trial_id,),
        ).fetchall()
        return [r[0] for r in rows]


# ---------------------------------------------------------------------------
# Load step
# ---------------------------------------------------------------------------

def load_rows(
    store: TrialStore,
    mapping: ColumnMapping,
    trial_id: str,
    filename: str,
    rows: list[NormalizedRow],
    create_missing: bool = False,
) -> InsertOutcome:
    """Insert rows for (trial_id, mapping.data_type) and update coverage.

    All writes happen in one transaction; a single failing row is confined
    to its own savepoint inside the store.

    Raises:
        TrialNotFoundError: If trial_id does not exist and create_missing
            is not set.
    """
    with store.transaction():
        if not store.trial_exists(trial_id):
            if not create_missing:
                raise TrialNotFoundError(f"Trial not found: {trial_id}", trial_id=trial_id)
            log.info("Creating trial %s", trial_id)
            store.create_trial(trial_id, trial_id)
        outcome = store.insert_rows(mapping, trial_id, filename, rows)
        if outcome.inserted:
            store.mark_coverage(trial_id, mapping.data_type)
    log.info(
        "%s/%s: inserted=%d duplicates=%d db_errors=%d",
        trial_id, mapping.data_type, outcome.inserted, outcome.duplicates,
        len(outcome.rejections) - outcome.duplicates,
    )
    return outcome


def load_trial_summary(
    store: TrialStore,
    summary: TrialSummary,
    filename: str,
    data_type: str,
) -> None:
    """Create or update the trial and replace its treatments atomically."""
    with store.transaction():
        store.save_trial_summary(summary, filename)
        store.mark_coverage(summary.trial_id, data_type)


def record_upload(store: TrialStore, entry: UploadLogEntry) -> bool:
    """Append the audit entry. Failures are logged, never raised."""
    try:
        with store.transaction():
            store.append_upload_log(entry)
    except Exception as exc:  # noqa: BLE001
        log.warning("Upload log write failed for %s: %s", entry.filename, exc)
        return False
    return True
