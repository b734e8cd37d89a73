"""Unit tests for trial_ingest.trial_summary."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from trial_ingest.shared import TrialSummaryError
from trial_ingest.trial_summary import Treatment, extract_trial_summary, parse_trial_summary

GRID = [
    ["Trial ID:", "t-2024-01"],
    ["Name", "Nitrogen timing"],
    ["Location", "Gatton"],
    ["Crop", "Wheat"],
    ["Planting date", "2024-04-02"],
    ["Harvest", "15/10/2024"],
    ["Reps", "4"],
    [],
    ["Treatment", "Application", "Fertiliser", "Product", "Rate", "Timing"],
    ["1", "Foliar", "Urea", "U46", "50 kg/ha", "Sowing"],
    ["2", "Banded", "MAP", "", "80 kg/ha", "Tillering"],
    [""],
    ["Contact", "J. Smith"],
]


class TestExtractTrialSummary:
    def test_metadata(self):
        summary = extract_trial_summary(GRID)
        md = summary.metadata
        assert summary.trial_id == "T-2024-01"
        assert md.name == "Nitrogen timing"
        assert md.location == "Gatton"
        assert md.crop == "Wheat"
        assert md.planting_date == date(2024, 4, 2)
        assert md.harvest_date == date(2024, 10, 15)
        assert md.reps == 4
        assert md.contact == "J. Smith"

    def test_treatments(self):
        summary = extract_trial_summary(GRID)
        assert summary.treatments == [
            Treatment(1, "Foliar", "Urea", "U46", "50 kg/ha", "Sowing"),
            Treatment(2, "Banded", "MAP", None, "80 kg/ha", "Tillering"),
        ]

    def test_grower_falls_back_to_name(self):
        assert extract_trial_summary(GRID).metadata.grower == "Nitrogen timing"

    def test_num_treatments_falls_back_to_count(self):
        assert extract_trial_summary(GRID).metadata.num_treatments == 2

    def test_declared_num_treatments_kept(self):
        grid = [["Trial", "T1"], ["Treatments", "6"]]
        assert extract_trial_summary(grid).metadata.num_treatments == 6

    def test_reps_default_one(self):
        assert extract_trial_summary([["Trial", "T1"]]).metadata.reps == 1

    def test_last_label_wins(self):
        grid = [["Crop", "Wheat"], ["Trial", "T1"], ["Crop", "Barley"]]
        assert extract_trial_summary(grid).metadata.crop == "Barley"

    def test_blank_label_value_does_not_clear(self):
        grid = [["Crop", "Wheat"], ["Trial", "T1"], ["Crop", ""]]
        assert extract_trial_summary(grid).metadata.crop == "Wheat"

    def test_short_treatment_header_is_not_a_table(self):
        grid = [["Trial", "T1"], ["Treatment", "x"], ["1", "Foliar"]]
        assert extract_trial_summary(grid).treatments == []

    def test_missing_trial_id(self):
        with pytest.raises(TrialSummaryError, match="no trial id"):
            extract_trial_summary([["Crop", "Wheat"]])


class TestParseTrialSummary:
    def test_workbook_prefers_treatment_sheet(self, xlsx):
        content = xlsx({
            "Cover": [["Welcome"]],
            "Trial Treatments": [
                ["Trial ID", "T-9"],
                ["Planting Date", datetime(2024, 5, 1)],
                ["Treatment", "Application", "Fertiliser"],
                [1, "Foliar", "Urea"],
                [2.0, "Soil", "MAP"],
            ],
        })
        summary = parse_trial_summary(content, is_binary=True)
        assert summary.trial_id == "T-9"
        assert summary.metadata.planting_date == date(2024, 5, 1)
        assert [t.trt_number for t in summary.treatments] == [1, 2]
        assert summary.treatments[1].fertiliser == "MAP"

    def test_csv_summary(self):
        summary = parse_trial_summary("Trial,T-5\nCrop,Canola\n", is_binary=False)
        assert summary.trial_id == "T-5"
        assert summary.metadata.crop == "Canola"
