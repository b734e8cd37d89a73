"""trial_ingest.row_normalizer

Row Normalizer: ParsedRows + ColumnMapping -> typed NormalizedRows and
per-row Rejections.

Direct layouts produce one record per source row. Pivot layouts turn each
numeric measurement column into its own record (metric, value, unit),
keeping the row's identity fields on every record.

A rejected row never aborts the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from trial_ingest.column_maps import SKIP_COLUMN, ColumnMapping
from trial_ingest.normalize import (
    parse_date,
    parse_decimal,
    parse_integer,
    split_metric_header,
    trim,
)
from trial_ingest.raw_content import ParsedTable
from trial_ingest.shared import NormalizedRow, ParsedRow, Rejection

log = logging.getLogger(__name__)

COERCERS: dict[str, Callable[[str | None], Any]] = {
    "text": trim,
    "integer": parse_integer,
    "decimal": parse_decimal,
    "date": parse_date,
}


@dataclass
class NormalizationResult:
    accepted: list[NormalizedRow] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)
    unmapped_columns: list[str] = field(default_factory=list)


def coerce_value(field_type: str, raw: str | None) -> Any:
    """Empty or unparseable input becomes None, never zero."""
    return COERCERS[field_type](raw)


def _resolve_defaults(
    mapping: ColumnMapping,
    extra_defaults: Mapping[str, Any] | None,
) -> dict[str, Any]:
    merged = {**mapping.defaults, **(extra_defaults or {})}
    defaults: dict[str, Any] = {}
    for name, value in merged.items():
        field_type = mapping.field_types.get(name)
        if field_type is None:
            log.warning("Ignoring default for undeclared %s field %r", mapping.data_type, name)
            continue
        defaults[name] = coerce_value(field_type, value) if isinstance(value, str) else value
    return defaults


def _identity_fields(
    row: ParsedRow,
    mapping: ColumnMapping,
    field_headers: dict[str, str],
    defaults: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """Coerce every declared field; return (fields, first failure reason)."""
    values: dict[str, Any] = {}
    for name, field_type in mapping.field_types.items():
        header = field_headers.get(name)
        raw = row.values.get(header) if header is not None else None
        values[name] = coerce_value(field_type, raw)

    for name, value in defaults.items():
        if values.get(name) is None:
            values[name] = value

    for name in mapping.required_fields:
        if values.get(name) is not None:
            continue
        header = field_headers.get(name)
        raw = trim(row.values.get(header)) if header is not None else None
        if raw is None:
            return values, f"row {row.index}: missing {name}"
        return values, (
            f"row {row.index}: invalid {mapping.field_types[name]} for {name}: {raw!r}"
        )
    return values, None


def normalize_rows(
    table: ParsedTable,
    mapping: ColumnMapping,
    extra_defaults: Mapping[str, Any] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> NormalizationResult:
    header_map = mapping.resolve_headers(table.headers, overrides)
    field_headers: dict[str, str] = {}
    for header, target in header_map.items():
        if target == SKIP_COLUMN:
            continue
        if target not in mapping.field_types:
            log.warning("Override maps %r to undeclared %s field %r; skipping column",
                        header, mapping.data_type, target)
            header_map[header] = SKIP_COLUMN
            continue
        field_headers.setdefault(target, header)

    defaults = _resolve_defaults(mapping, extra_defaults)
    result = NormalizationResult()
    free_headers = [h for h in table.headers if h not in header_map]
    if not mapping.is_pivot:
        result.unmapped_columns = free_headers

    persisted = [n for n in mapping.field_types if n not in mapping.lookup_only]

    for row in table.rows:
        values, failure = _identity_fields(row, mapping, field_headers, defaults)
        if failure:
            result.rejections.append(Rejection(row.index, failure))
            continue

        record = {n: values[n] for n in persisted}
        if not mapping.is_pivot:
            result.accepted.append(NormalizedRow(row.index, record, raw=row.values))
            continue

        emitted = 0
        for header in free_headers:
            value = parse_decimal(row.values.get(header))
            if value is None:
                continue
            metric, unit = split_metric_header(header)
            result.accepted.append(NormalizedRow(
                row.index,
                {**record, "metric": metric or header, "value": value, "unit": unit or None},
                raw=row.values,
            ))
            emitted += 1
        if emitted == 0:
            result.rejections.append(
                Rejection(row.index, f"row {row.index}: no numeric measurements")
            )

    log.info(
        "%s: %d records accepted, %d rows rejected",
        mapping.data_type, len(result.accepted), len(result.rejections),
    )
    return result
