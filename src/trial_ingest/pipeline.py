"""trial_ingest.pipeline

Ingestion Orchestrator.

    classify (if unset) -> parse -> resolve trial id (if unset)
        -> normalize -> idempotent load -> audit log entry

Trial-summary workbooks take a separate path: metadata extraction, then a
trial upsert with its treatments.

Structural failures raise IngestionError subclasses internally and are
converted to an `error` IngestionResult exactly once, in ingest(). Every
call writes one UploadLogEntry, whatever the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from trial_ingest.classify import NON_INGESTIBLE, TRIAL_SUMMARY, classify_file
from trial_ingest.column_maps import ColumnMapping, get_mapping
from trial_ingest.loader import TrialStore, load_rows, load_trial_summary, record_upload
from trial_ingest.normalize import normalize_trial_id
from trial_ingest.raw_content import is_spreadsheet, parse_raw_content
from trial_ingest.row_normalizer import normalize_rows
from trial_ingest.shared import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    IngestionError,
    IngestionResult,
    MissingTrialIdError,
    UnknownDataTypeError,
    UploadLogEntry,
    derive_status,
)
from trial_ingest.trial_id import resolve_trial_id
from trial_ingest.trial_summary import parse_trial_summary

log = logging.getLogger(__name__)


@dataclass
class IngestOptions:
    """Per-call knobs.

    extra_defaults: fixed values merged into null fields of every row
        (e.g. {"assay_type": "nutrient"}).
    column_overrides: source header -> canonical field or "__skip__".
    create_missing_trial: create an auto-detected trial that does not
        exist yet instead of failing with "trial not found".
    mappings: alternate column mapping registry (defaults to the packaged one).
    """

    extra_defaults: dict[str, Any] = field(default_factory=dict)
    column_overrides: dict[str, str] = field(default_factory=dict)
    create_missing_trial: bool = False
    mappings: Mapping[str, ColumnMapping] | None = None


# ---------------------------------------------------------------------------
# Single file
# ---------------------------------------------------------------------------

def _ingest_trial_summary(
    store: TrialStore,
    filename: str,
    content: bytes | str,
    is_binary: bool,
    trial_id: str | None,
) -> IngestionResult:
    summary = parse_trial_summary(content, is_binary)
    if trial_id and trial_id != summary.trial_id:
        log.warning(
            "%s: supplied trial id %s differs from workbook trial id %s; using workbook",
            filename, trial_id, summary.trial_id,
        )
    load_trial_summary(store, summary, filename, TRIAL_SUMMARY)
    count = len(summary.treatments)
    return IngestionResult(
        status=STATUS_SUCCESS,
        records_accepted=count,
        detail=f"Trial {summary.trial_id} saved with {count} treatments",
        trial_id=summary.trial_id,
        data_type=TRIAL_SUMMARY,
        filename=filename,
    )


def _ingest_tabular(
    store: TrialStore,
    filename: str,
    content: bytes | str,
    is_binary: bool,
    trial_id: str | None,
    data_type: str,
    options: IngestOptions,
) -> IngestionResult:
    mapping = get_mapping(data_type, options.mappings)
    table = parse_raw_content(content, is_binary)

    auto_detected = False
    if trial_id is None:
        trial_id = resolve_trial_id(table.headers, table.rows, mapping)
        if trial_id is None:
            raise MissingTrialIdError(
                "No trial id supplied and none found in columns "
                f"{list(mapping.trial_id_candidates)}; select a trial and retry"
            )
        auto_detected = True
        log.info("%s: auto-detected trial id %s", filename, trial_id)

    normalized = normalize_rows(
        table, mapping,
        extra_defaults=options.extra_defaults,
        overrides=options.column_overrides,
    )
    outcome = load_rows(
        store, mapping, trial_id, filename, normalized.accepted,
        create_missing=auto_detected and options.create_missing_trial,
    )

    rejections = sorted(normalized.rejections + outcome.rejections, key=lambda r: r.row_index)
    accepted = outcome.inserted
    detail = (
        f"{accepted} records loaded into {mapping.table}; "
        f"{len(rejections)} rejected ({outcome.duplicates} duplicates)"
    )
    if not table.rows:
        detail = "File has a header row but no data rows"
    return IngestionResult(
        status=derive_status(accepted, len(rejections)),
        records_accepted=accepted,
        records_rejected=len(rejections),
        records_duplicate=outcome.duplicates,
        rejections=rejections,
        detail=detail,
        trial_id=trial_id,
        data_type=data_type,
        filename=filename,
        unmapped_columns=normalized.unmapped_columns,
    )


def ingest(
    store: TrialStore,
    filename: str,
    content: bytes | str,
    is_binary: bool | None = None,
    trial_id: str | None = None,
    data_type: str | None = None,
    options: IngestOptions | None = None,
) -> IngestionResult:
    """Ingest one uploaded file.

    Args:
        store: Storage collaborator.
        filename: Original upload name; drives classification when
            data_type is None.
        content: Raw text or spreadsheet bytes.
        is_binary: Spreadsheet flag; inferred from the extension when None.
        trial_id: Target trial; auto-detected from the rows when None.
        data_type: Data type tag; classified from filename when None.
        options: See IngestOptions.

    Returns:
        IngestionResult. Structural failures come back as status 'error'
        with the reason in detail; this function does not raise them.
    """
    options = options or IngestOptions()
    trial_id = normalize_trial_id(trial_id)
    data_type = data_type or classify_file(filename)
    binary = is_spreadsheet(filename) if is_binary is None else is_binary

    try:
        if data_type in NON_INGESTIBLE:
            raise UnknownDataTypeError(f"Cannot ingest {filename}: data type is {data_type}")
        if data_type == TRIAL_SUMMARY:
            result = _ingest_trial_summary(store, filename, content, binary, trial_id)
        else:
            result = _ingest_tabular(store, filename, content, binary, trial_id, data_type, options)
    except IngestionError as exc:
        log.info("%s: ingestion failed: %s", filename, exc)
        result = IngestionResult.error(
            str(exc),
            trial_id=exc.trial_id or trial_id,
            data_type=data_type,
            filename=filename,
        )

    record_upload(store, UploadLogEntry.from_result(result, filename))
    return result


# ---------------------------------------------------------------------------
# Batch (folder upload)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadFile:
    filename: str
    content: bytes | str
    is_binary: bool | None = None


@dataclass
class BatchResult:
    trial_id: str | None = None
    results: list[IngestionResult] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def status(self) -> str:
        accepted = sum(r.records_accepted for r in self.results)
        failed = sum(1 for r in self.results if r.status != STATUS_SUCCESS)
        return derive_status(accepted, failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trial_id": self.trial_id,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "skipped": [{"filename": f, "reason": why} for f, why in self.skipped],
        }


def ingest_batch(
    store: TrialStore,
    files: list[UploadFile],
    trial_id: str | None = None,
    options: IngestOptions | None = None,
) -> BatchResult:
    """Ingest a folder of uploads, trial summary first.

    A successfully loaded trial summary sets the trial id for every other
    file in the batch. Photos and unrecognised files are skipped.
    """
    batch = BatchResult(trial_id=normalize_trial_id(trial_id))
    classified = [(f, classify_file(f.filename)) for f in files]
    classified.sort(key=lambda pair: pair[1] != TRIAL_SUMMARY)

    for upload, data_type in classified:
        if data_type in NON_INGESTIBLE:
            batch.skipped.append((upload.filename, f"skipped: {data_type}"))
            log.info("Skipping %s (%s)", upload.filename, data_type)
            continue
        result = ingest(
            store, upload.filename, upload.content,
            is_binary=upload.is_binary,
            trial_id=batch.trial_id,
            data_type=data_type,
            options=options,
        )
        if data_type == TRIAL_SUMMARY and result.status != STATUS_ERROR:
            batch.trial_id = result.trial_id
        batch.results.append(result)
    return batch
