"""Unit tests for trial_ingest.raw_content."""

from __future__ import annotations

from datetime import datetime

import pytest
import xlrd
from xlrd.sheet import Cell

from trial_ingest.raw_content import (
    OLE2_MAGIC,
    clean_headers,
    grid_to_table,
    is_spreadsheet,
    parse_raw_content,
    select_sheet,
    sniff_delimiter,
)
from trial_ingest.shared import RawContentError


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

class TestParseText:
    def test_basic_csv(self):
        table = parse_raw_content("Sample No,Date,Block\nS1,2024-01-05,A\n", is_binary=False)
        assert table.headers == ["Sample No", "Date", "Block"]
        assert len(table.rows) == 1
        assert table.rows[0].index == 1
        assert table.rows[0].values == {"Sample No": "S1", "Date": "2024-01-05", "Block": "A"}

    def test_headers_trimmed_and_collapsed_not_aliased(self):
        table = parse_raw_content("  Sample   No ,DATE\nS1,x\n", is_binary=False)
        assert table.headers == ["Sample No", "DATE"]

    def test_blank_rows_skipped_but_counted(self):
        table = parse_raw_content("a,b\n1,2\n,\n\n3,4\n", is_binary=False)
        assert [r.index for r in table.rows] == [1, 4]

    def test_short_rows_padded(self):
        table = parse_raw_content("a,b,c\n1\n", is_binary=False)
        assert table.rows[0].values == {"a": "1", "b": "", "c": ""}

    def test_bytes_with_bom(self):
        table = parse_raw_content("\ufeffa,b\n1,2\n".encode("utf-8"), is_binary=False)
        assert table.headers == ["a", "b"]

    def test_tab_delimited(self):
        table = parse_raw_content("a\tb\n1\t2\n", is_binary=False)
        assert table.rows[0].values == {"a": "1", "b": "2"}

    def test_quoted_commas(self):
        table = parse_raw_content('a,b\n"x, y",2\n', is_binary=False)
        assert table.rows[0].values["a"] == "x, y"

    def test_invalid_utf8_is_structural(self):
        with pytest.raises(RawContentError, match="UTF-8"):
            parse_raw_content(b"a,b\n\xff\xfe\xfa,1\n", is_binary=False)

    def test_empty_is_structural(self):
        with pytest.raises(RawContentError, match="no rows"):
            parse_raw_content("\n\n", is_binary=False)


class TestSniffDelimiter:
    @pytest.mark.parametrize("line,expected", [
        ("a,b,c", ","),
        ("a;b;c", ";"),
        ("a\tb", "\t"),
        ("a|b|c", "|"),
        ("single", ","),
    ])
    def test_sniff(self, line, expected):
        assert sniff_delimiter(line + "\n1\n") == expected


class TestCleanHeaders:
    def test_blank_headers_named(self):
        assert clean_headers(["a", "", "c"]) == ["a", "column_2", "c"]

    def test_trailing_blanks_dropped(self):
        assert clean_headers(["a", "b", "", " "]) == ["a", "b"]

    def test_duplicates_suffixed(self):
        assert clean_headers(["pH", "pH", "pH"]) == ["pH", "pH_2", "pH_3"]


class TestGridToTable:
    def test_leading_blank_rows_before_header(self):
        table = grid_to_table([["", ""], ["a", "b"], ["1", "2"]])
        assert table.headers == ["a", "b"]
        assert table.rows[0].index == 1


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------

class TestParseSpreadsheet:
    def test_first_non_empty_sheet(self, xlsx):
        content = xlsx({
            "Cover": [],
            "Data": [["Sample No", "Date", "Value"], ["S1", datetime(2024, 1, 5), 3.0]],
        })
        table = parse_raw_content(content, is_binary=True)
        assert table.headers == ["Sample No", "Date", "Value"]
        assert table.rows[0].values == {"Sample No": "S1", "Date": "2024-01-05", "Value": "3"}

    def test_sheet_hint(self, xlsx):
        content = xlsx({
            "Info": [["x"], ["1"]],
            "Treatments": [["y"], ["2"]],
        })
        table = parse_raw_content(content, is_binary=True, sheet_hint="treatment")
        assert table.headers == ["y"]

    def test_none_cells_become_empty(self, xlsx):
        content = xlsx({"S": [["a", "b"], [None, 5]]})
        table = parse_raw_content(content, is_binary=True)
        assert table.rows[0].values == {"a": "", "b": "5"}

    def test_garbage_binary_is_structural(self):
        with pytest.raises(RawContentError, match="Unreadable spreadsheet"):
            parse_raw_content(b"not a zip at all", is_binary=True)

    def test_select_sheet_all_empty(self):
        assert select_sheet({"A": [], "B": [["", ""]]}) == []


class _FakeSheet:
    def __init__(self, name, rows):
        self.name = name
        self._rows = rows
        self.nrows = len(rows)

    def row(self, r):
        return self._rows[r]


class _FakeBook:
    datemode = 0

    def __init__(self, sheets):
        self._sheets = sheets
        self.nsheets = len(sheets)
        self.released = False

    def sheet_by_index(self, index):
        return self._sheets[index]

    def release_resources(self):
        self.released = True


class TestParseLegacyXls:
    CONTENT = OLE2_MAGIC + b"\0" * 504

    def test_cells_rendered_like_csv(self, monkeypatch):
        book = _FakeBook([
            _FakeSheet("Notes", []),
            _FakeSheet("Data", [
                [Cell(xlrd.XL_CELL_TEXT, "Sample No"), Cell(xlrd.XL_CELL_TEXT, "Date"),
                 Cell(xlrd.XL_CELL_TEXT, "N"), Cell(xlrd.XL_CELL_TEXT, "Flag")],
                [Cell(xlrd.XL_CELL_TEXT, " S1 "), Cell(xlrd.XL_CELL_DATE, 45292.0),
                 Cell(xlrd.XL_CELL_NUMBER, 12.0), Cell(xlrd.XL_CELL_EMPTY, "")],
            ]),
        ])
        calls = []

        def fake_open(**kwargs):
            calls.append(kwargs)
            return book

        monkeypatch.setattr(xlrd, "open_workbook", fake_open)
        table = parse_raw_content(self.CONTENT, is_binary=True)

        assert calls[0]["file_contents"] == self.CONTENT
        assert table.headers == ["Sample No", "Date", "N", "Flag"]
        assert table.rows[0].values == {"Sample No": "S1", "Date": "2024-01-01", "N": "12", "Flag": ""}
        assert book.released

    def test_sheet_hint_applies(self, monkeypatch):
        book = _FakeBook([
            _FakeSheet("Info", [[Cell(xlrd.XL_CELL_TEXT, "x")]]),
            _FakeSheet("Treatments", [[Cell(xlrd.XL_CELL_TEXT, "y")], [Cell(xlrd.XL_CELL_NUMBER, 2.0)]]),
        ])
        monkeypatch.setattr(xlrd, "open_workbook", lambda **kwargs: book)
        table = parse_raw_content(self.CONTENT, is_binary=True, sheet_hint="treatment")
        assert table.headers == ["y"]
        assert table.rows[0].values == {"y": "2"}

    def test_corrupt_xls_is_structural(self):
        with pytest.raises(RawContentError, match="Unreadable spreadsheet"):
            parse_raw_content(self.CONTENT, is_binary=True)

    def test_xlsx_bytes_not_sent_to_xlrd(self, monkeypatch, xlsx):
        def fail(**kwargs):
            raise AssertionError("xlsx content routed to xlrd")

        monkeypatch.setattr(xlrd, "open_workbook", fail)
        table = parse_raw_content(xlsx({"S": [["a"], ["1"]]}), is_binary=True)
        assert table.rows[0].values == {"a": "1"}


class TestIsSpreadsheet:
    @pytest.mark.parametrize("name,expected", [
        ("data.xlsx", True),
        ("DATA.XLSM", True),
        ("legacy.xls", True),
        ("data.csv", False),
        ("data.txt", False),
    ])
    def test_extension(self, name, expected):
        assert is_spreadsheet(name) is expected
