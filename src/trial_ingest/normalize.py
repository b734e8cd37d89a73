"""Normalization functions for field-trial ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

# Spreadsheet serial dates count days from 1899-12-30 (this absorbs the
# 1900 leap-year bug carried over from Lotus 1-2-3).
SERIAL_EPOCH = date(1899, 12, 30)
_SERIAL_MIN = 1
_SERIAL_MAX = 200000

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_DMY_DATE_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$")
_SERIAL_RE = re.compile(r"^\d+(?:\.\d+)?$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: header_key  (alias matching)
# ---------------------------------------------------------------------------

def header_key(value: str | None) -> str:
    """Return the comparison key for a header or alias.

    Lowercased, underscores treated as spaces, whitespace collapsed, so
    " Sample No ", "sample_no" and "SAMPLE  NO" all compare equal.
    """
    if value is None:
        return ""
    v = value.replace("_", " ").lower()
    return re.sub(r"\s+", " ", v).strip()


# ---------------------------------------------------------------------------
# Rule 4: normalize_trial_id
# ---------------------------------------------------------------------------

def normalize_trial_id(value: str | None) -> str | None:
    """Trial identifiers are stored upper-case with single internal spaces."""
    v = normalize_space(value)
    if v is None:
        return None
    return v.upper()


# ---------------------------------------------------------------------------
# Rule 5: parse_decimal / parse_integer
# ---------------------------------------------------------------------------

def parse_decimal(value: str | None) -> Decimal | None:
    """Parse a finite decimal number from a string, returning None on failure."""
    v = trim(value)
    if v is None:
        return None
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return d


def parse_integer(value: str | None) -> int | None:
    """Parse an integer; integral decimals such as '12.0' are accepted."""
    d = parse_decimal(value)
    if d is None or d != d.to_integral_value():
        return None
    return int(d)


# ---------------------------------------------------------------------------
# Rule 6: parse_date  (ISO, then spreadsheet serial, then day-first)
# ---------------------------------------------------------------------------

def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_iso_date(value: str | None) -> date | None:
    """Parse 'YYYY-MM-DD', optionally followed by a time component."""
    v = trim(value)
    if v is None:
        return None
    m = _ISO_DATE_RE.match(v)
    if not m:
        return None
    return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))


def parse_serial_date(value: str | None) -> date | None:
    """Parse a spreadsheet day-count such as '45000' (-> 2023-03-15)."""
    v = trim(value)
    if v is None or not _SERIAL_RE.match(v):
        return None
    days = float(v)
    if not (_SERIAL_MIN < days < _SERIAL_MAX):
        return None
    return SERIAL_EPOCH + timedelta(days=int(days))


def parse_dmy_date(value: str | None) -> date | None:
    """Parse day-first 'DD/MM/YYYY' with '/', '-' or '.' separators."""
    v = trim(value)
    if v is None:
        return None
    m = _DMY_DATE_RE.match(v)
    if not m:
        return None
    return _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))


_DATE_PARSERS = (parse_iso_date, parse_serial_date, parse_dmy_date)


def parse_date(value: str | None) -> date | None:
    """Return the first calendar date any of the known shapes yields."""
    for parser in _DATE_PARSERS:
        parsed = parser(value)
        if parsed is not None:
            return parsed
    return None


# ---------------------------------------------------------------------------
# Rule 7: cell_text  (spreadsheet cell -> raw text)
# ---------------------------------------------------------------------------

def cell_text(value: object) -> str:
    """Render a decoded spreadsheet cell the way it would appear in a CSV.

    Dates become ISO text, integral floats drop their '.0', None becomes ''.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


# ---------------------------------------------------------------------------
# Helper: split_metric_header  (pivot layouts)
# ---------------------------------------------------------------------------

_UNIT_RE = re.compile(r"\(([^)]+)\)")


def split_metric_header(header: str) -> tuple[str, str]:
    """Split 'Nitrogen (mg/kg)' into ('Nitrogen', 'mg/kg').

    Headers without a parenthesised unit return an empty unit.
    """
    m = _UNIT_RE.search(header)
    unit = m.group(1).strip() if m else ""
    metric = re.sub(r"\s*\([^)]+\)\s*", " ", header, count=1).strip()
    return metric, unit
