"""trial_ingest.raw_content

Raw Content Parser: delimited text or a workbook (.xlsx via openpyxl, legacy
.xls via xlrd) -> ordered rows of header -> raw text. Headers are trimmed
and whitespace-collapsed but not aliased; that happens in row_normalizer.

Workbook format is decided by content, not extension: legacy .xls files are
OLE2 compound documents, .xlsx files are zip archives.

Failures here are structural and raise RawContentError.
"""

from __future__ import annotations

import csv
import io
import logging
import struct
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePath

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException

from trial_ingest.normalize import cell_text, normalize_space
from trial_ingest.shared import ParsedRow, RawContentError

log = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xlsm", ".xls"})
OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
CANDIDATE_DELIMITERS = (",", "\t", ";", "|")


@dataclass
class ParsedTable:
    headers: list[str]
    rows: list[ParsedRow] = field(default_factory=list)


def is_spreadsheet(filename: str) -> bool:
    return PurePath(filename).suffix.lower() in SPREADSHEET_EXTENSIONS


# ---------------------------------------------------------------------------
# Grid readers
# ---------------------------------------------------------------------------

def _decode_text(content: bytes | str) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise RawContentError(f"File is not valid UTF-8 text: {exc}") from exc


def sniff_delimiter(text: str) -> str:
    """Pick the candidate delimiter that occurs most often in the first line."""
    first_line = next((ln for ln in text.splitlines() if ln.strip()), "")
    best = max(CANDIDATE_DELIMITERS, key=first_line.count)
    return best if first_line.count(best) else ","


def _is_blank(cells: list[str]) -> bool:
    return all(not c.strip() for c in cells)


def read_text_grid(content: bytes | str) -> list[list[str]]:
    text = _decode_text(content)
    delimiter = sniff_delimiter(text)
    try:
        return [list(r) for r in csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)]
    except csv.Error as exc:
        raise RawContentError(f"Malformed delimited text: {exc}") from exc


def _load_workbook(content: bytes):
    try:
        return openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise RawContentError(f"Unreadable spreadsheet: {exc}") from exc


def _sheet_grid(ws) -> list[list[str]]:
    return [[cell_text(v) for v in row] for row in ws.iter_rows(values_only=True)]


def read_workbook_grids(content: bytes) -> dict[str, list[list[str]]]:
    """Return {sheet title: grid} for every sheet, in workbook order."""
    wb = _load_workbook(content)
    try:
        return {ws.title: _sheet_grid(ws) for ws in wb.worksheets}
    finally:
        wb.close()


def _xls_cell(cell, datemode: int) -> str:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return ""
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return cell_text(xlrd.xldate_as_datetime(cell.value, datemode))
        except (xlrd.XLDateError, OverflowError, ValueError):
            return cell_text(cell.value)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return cell_text(bool(cell.value))
    return cell_text(cell.value)


def read_xls_grids(content: bytes) -> dict[str, list[list[str]]]:
    """Legacy BIFF workbook: {sheet name: grid} for every sheet, in workbook order."""
    try:
        book = xlrd.open_workbook(file_contents=content, on_demand=True)
    except (xlrd.XLRDError, xlrd.compdoc.CompDocError, struct.error, ValueError, IndexError, OSError) as exc:
        raise RawContentError(f"Unreadable spreadsheet: {exc}") from exc
    try:
        grids = {}
        for index in range(book.nsheets):
            sheet = book.sheet_by_index(index)
            grids[sheet.name] = [
                [_xls_cell(cell, book.datemode) for cell in sheet.row(r)]
                for r in range(sheet.nrows)
            ]
        return grids
    finally:
        book.release_resources()


def select_sheet(grids: dict[str, list[list[str]]], sheet_hint: str | None = None) -> list[list[str]]:
    """First sheet whose title contains sheet_hint, else the first non-empty sheet."""
    if sheet_hint:
        for title, grid in grids.items():
            if sheet_hint.lower() in title.lower():
                log.debug("Using sheet %r (matched hint %r)", title, sheet_hint)
                return grid
    for grid in grids.values():
        if any(not _is_blank(r) for r in grid):
            return grid
    return []


def read_grid(
    content: bytes | str,
    is_binary: bool,
    sheet_hint: str | None = None,
) -> list[list[str]]:
    if is_binary:
        if isinstance(content, str):
            raise RawContentError("Spreadsheet content must be bytes")
        if content.startswith(OLE2_MAGIC):
            return select_sheet(read_xls_grids(content), sheet_hint)
        return select_sheet(read_workbook_grids(content), sheet_hint)
    return read_text_grid(content)


# ---------------------------------------------------------------------------
# Header row + data rows
# ---------------------------------------------------------------------------

def clean_headers(raw: list[str]) -> list[str]:
    """Trim/collapse header text; name blanks column_N; suffix duplicates.

    Trailing blank header cells are dropped.
    """
    cells = [normalize_space(h) or "" for h in raw]
    while cells and not cells[-1]:
        cells.pop()

    headers: list[str] = []
    seen: dict[str, int] = {}
    for n, h in enumerate(cells, start=1):
        name = h or f"column_{n}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def grid_to_table(grid: list[list[str]]) -> ParsedTable:
    """The first non-blank row is the header; fully blank rows are skipped.

    Row indexes are 1-based over the data rows below the header, and blank
    rows still consume an index so messages match the source layout.
    """
    header_pos = next((i for i, r in enumerate(grid) if not _is_blank(r)), None)
    if header_pos is None:
        raise RawContentError("File contains no rows")

    headers = clean_headers(grid[header_pos])
    table = ParsedTable(headers=headers)
    for index, cells in enumerate(grid[header_pos + 1:], start=1):
        if _is_blank(cells):
            continue
        padded = list(cells) + [""] * (len(headers) - len(cells))
        table.rows.append(ParsedRow(index=index, values=dict(zip(headers, padded))))
    return table


def parse_raw_content(
    content: bytes | str,
    is_binary: bool,
    sheet_hint: str | None = None,
) -> ParsedTable:
    table = grid_to_table(read_grid(content, is_binary, sheet_hint))
    log.debug("Parsed %d rows with headers %s", len(table.rows), table.headers)
    return table
