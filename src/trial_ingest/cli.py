"""trial_ingest.cli

Unified CLI entrypoint for field-trial ingestion.

Modes (--mode):
  ingest    : ingest one file (default)
  batch     : ingest every file in a folder, trial summary first
  gis       : normalize a GIS file into one <layer>.geojson per layer (no DB)
  coverage  : list the data types a trial has data for
  classify  : print the data type tag for a filename (no DB)

Usage (ingest):
    trial-ingest --mode ingest \\
        --db-dsn "$DB_DSN" \\
        --path "uploads/T-2024-01 Soil Health Data.csv" \\
        --trial-id T-2024-01

Usage (batch, trial id taken from the trial summary workbook):
    trial-ingest --mode batch --db-dsn "$DB_DSN" --dir uploads/T-2024-01/

Usage (gis):
    trial-ingest --mode gis --path paddocks.zip --output-dir artifacts/gis/
"""

from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from contextlib import nullcontext
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from trial_ingest.classify import DATA_TYPES, NON_INGESTIBLE, classify_file
from trial_ingest.column_maps import (
    DEFAULT_REGISTRY_PATH,
    ColumnMappingValidationError,
    load_column_mappings,
    registry_hash,
)
from trial_ingest.gis import normalize_gis_file
from trial_ingest.loader import PostgresTrialStore
from trial_ingest.pipeline import IngestOptions, UploadFile, ingest, ingest_batch
from trial_ingest.raw_content import is_spreadsheet
from trial_ingest.shared import (
    STATUS_ERROR,
    GISFormatError,
    IngestionResult,
    RejectWriter,
    write_run_report,
)

INGESTIBLE_TYPES = [t for t in DATA_TYPES if t not in NON_INGESTIBLE]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _require(run_id: str, mode: str, **flags: object) -> None:
    missing = [f"--{name.replace('_', '-')}" for name, value in flags.items() if not value]
    if missing:
        _fatal(run_id, f"--mode {mode} requires {', '.join(missing)}")


def _echo_result(run_id: str, result: IngestionResult) -> None:
    click.echo(
        f"[{run_id}] {result.filename}: {result.status} "
        f"(data_type={result.data_type} trial_id={result.trial_id} "
        f"accepted={result.records_accepted} rejected={result.records_rejected} "
        f"duplicates={result.records_duplicate})",
        err=result.status == STATUS_ERROR,
    )
    if result.detail:
        click.echo(f"[{run_id}]   {result.detail}", err=result.status == STATUS_ERROR)
    if result.unmapped_columns:
        click.echo(f"[{run_id}]   unmapped columns: {', '.join(result.unmapped_columns)}")


def _parse_column_overrides(run_id: str, values: tuple[str, ...]) -> dict[str, str]:
    """Turn repeated "Source Header=field" options into an override map."""
    overrides: dict[str, str] = {}
    for value in values:
        header, sep, target = value.rpartition("=")
        if not sep or not header.strip() or not target.strip():
            _fatal(run_id, f"--column-override expects 'Source Header=field', got {value!r}")
        overrides[header.strip()] = target.strip()
    return overrides


def _layer_filename(name: str) -> str:
    return re.sub(r"[^\w\- ]+", "_", name).strip() or "layer"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="ingest",
    type=click.Choice(["ingest", "batch", "gis", "coverage", "classify"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", default=None, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
@click.option("--path", "path_", default=None, type=click.Path(exists=True, dir_okay=False), help="[ingest|gis|classify] Input file")
@click.option("--dir", "dir_", default=None, type=click.Path(exists=True, file_okay=False), help="[batch] Folder of uploads")
@click.option("--trial-id", default=None, help="[ingest|batch|coverage] Target trial; auto-detected when omitted")
@click.option("--data-type", default=None, type=click.Choice(INGESTIBLE_TYPES), help="[ingest] Override filename classification")
@click.option("--assay-type", default=None, help="[ingest|batch] Default assay_type for sample metadata rows")
@click.option(
    "--create-missing-trial",
    is_flag=True,
    default=False,
    help="[ingest|batch] Create an auto-detected trial that does not exist yet",
)
@click.option("--column-map-file", default=None, type=click.Path(exists=True, dir_okay=False), help="Alternate column mapping YAML")
@click.option(
    "--column-override",
    "column_overrides",
    multiple=True,
    help="[ingest|batch] Map a source header: 'Source Header=field' or 'Source Header=__skip__' (repeatable)",
)
@click.option("--output-dir", default="./artifacts/gis", show_default=True, type=click.Path(file_okay=False), help="[gis] Where to write layers")
@click.option("--dry-run", is_flag=True, default=False, help="Roll back every write")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/trial_ingest_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at DEBUG level")
def main(
    mode: str,
    db_dsn: str | None,
    path_: str | None,
    dir_: str | None,
    trial_id: str | None,
    data_type: str | None,
    assay_type: str | None,
    create_missing_trial: bool,
    column_map_file: str | None,
    column_overrides: tuple[str, ...],
    output_dir: str,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Field-trial ingestion CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if mode == "classify":
        _require(run_id, mode, path=path_)
        click.echo(classify_file(Path(path_).name))  # type: ignore[arg-type]
        return

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "gis":
        _require(run_id, mode, path=path_)
        _run_gis(run_id, started_at, Path(path_), Path(output_dir))  # type: ignore[arg-type]
        return

    _require(run_id, mode, db_dsn=db_dsn)

    mappings = None
    map_path = Path(column_map_file) if column_map_file else DEFAULT_REGISTRY_PATH
    if column_map_file:
        try:
            mappings = load_column_mappings(map_path)
        except ColumnMappingValidationError as exc:
            _fatal(run_id, f"invalid column map file {map_path}: {exc}")

    options = IngestOptions(
        extra_defaults={"assay_type": assay_type} if assay_type else {},
        column_overrides=_parse_column_overrides(run_id, column_overrides),
        create_missing_trial=create_missing_trial,
        mappings=mappings,
    )

    conn = psycopg.connect(db_dsn, autocommit=True)  # type: ignore[arg-type]
    try:
        store = PostgresTrialStore(conn)
        if mode == "coverage":
            _require(run_id, mode, trial_id=trial_id)
            types = store.covered_data_types(trial_id)  # type: ignore[arg-type]
            click.echo(f"[{run_id}] {trial_id}: {', '.join(types) if types else '(no data)'}")
            return

        source_paths = {
            "column_map_file": str(map_path),
            "column_map_sha256": registry_hash(map_path),
        }
        # A dry run wraps every store transaction in one that is always rolled back.
        outer = conn.transaction(force_rollback=True) if dry_run else nullcontext()
        with outer:
            if mode == "ingest":
                _require(run_id, mode, path=path_)
                path = Path(path_)  # type: ignore[arg-type]
                source_paths["path"] = str(path)
                results = [ingest(
                    store, path.name, path.read_bytes(),
                    is_binary=is_spreadsheet(path.name),
                    trial_id=trial_id,
                    data_type=data_type,
                    options=options,
                )]
            else:
                _require(run_id, mode, dir=dir_)
                folder = Path(dir_)  # type: ignore[arg-type]
                source_paths["dir"] = str(folder)
                files = [
                    UploadFile(p.name, p.read_bytes(), is_spreadsheet(p.name))
                    for p in sorted(folder.iterdir())
                    if p.is_file() and not p.name.startswith(".")
                ]
                batch = ingest_batch(store, files, trial_id=trial_id, options=options)
                for filename, reason in batch.skipped:
                    click.echo(f"[{run_id}] {filename}: {reason}")
                results = batch.results
    finally:
        conn.close()

    rejects = RejectWriter(Path(rejects_path))
    for result in results:
        _echo_result(run_id, result)
        rejects.write_result(result)
    rejects.close()
    if dry_run:
        click.echo(f"[{run_id}] DRY RUN: rolled back.")

    report_path = write_run_report(run_id, started_at, mode, dry_run, source_paths, results)
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected rows written to {rejects_path}")

    if any(r.status == STATUS_ERROR for r in results):
        click.echo(f"[{run_id}] One or more files failed; exiting non-zero", err=True)
        sys.exit(1)


def _run_gis(run_id: str, started_at: str, path: Path, output_dir: Path) -> None:
    try:
        layers = normalize_gis_file(path.name, path.read_bytes())
    except GISFormatError as exc:
        _fatal(run_id, str(exc))
        return

    output_dir.mkdir(parents=True, exist_ok=True)
    written: set[str] = set()
    for layer in layers:
        base = _layer_filename(layer.name)
        fname, n = base, 1
        while fname in written:
            n += 1
            fname = f"{base} ({n})"
        written.add(fname)
        out = output_dir / f"{fname}.geojson"
        out.write_text(json.dumps(layer.feature_collection), encoding="utf-8")
        click.echo(
            f"[{run_id}] {layer.name}: {layer.feature_count}/{layer.features_in} features -> {out}"
        )

    report_path = write_run_report(
        run_id, started_at, "gis", False,
        {"path": str(path), "output_dir": str(output_dir)},
        layers,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
