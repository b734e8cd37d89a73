"""trial_ingest.trial_id

Trial-Identifier Resolver. Never raises: a miss returns None and the
caller decides what to do about it.
"""

from __future__ import annotations

import logging

from trial_ingest.column_maps import ColumnMapping
from trial_ingest.normalize import header_key, normalize_trial_id
from trial_ingest.shared import ParsedRow

log = logging.getLogger(__name__)


def candidate_header(headers: list[str], mapping: ColumnMapping, field_name: str) -> str | None:
    """First header (in source order) that is an alias of field_name."""
    aliases = mapping.header_aliases.get(field_name, frozenset())
    for h in headers:
        if header_key(h) in aliases:
            return h
    return None


def resolve_trial_id(
    headers: list[str],
    rows: list[ParsedRow],
    mapping: ColumnMapping,
) -> str | None:
    """Return the first non-empty trial id across mapping.trial_id_candidates.

    Candidates are tried in priority order; within a candidate, rows are
    scanned top to bottom.
    """
    for field_name in mapping.trial_id_candidates:
        header = candidate_header(headers, mapping, field_name)
        if header is None:
            continue
        for row in rows:
            trial_id = normalize_trial_id(row.values.get(header))
            if trial_id:
                log.debug("Detected trial id %r from column %r", trial_id, header)
                return trial_id
    return None
