"""Unit tests for trial_ingest.classify."""

import pytest

from trial_ingest.classify import (
    PHOTO,
    PLOT_DATA,
    SAMPLE_METADATA,
    SOIL_CHEMISTRY,
    SOIL_HEALTH,
    TISSUE_CHEMISTRY,
    TRIAL_SUMMARY,
    UNKNOWN,
    classify_file,
)


class TestClassifyFile:
    @pytest.mark.parametrize("filename,expected", [
        ("Soil Health Data.csv", SOIL_HEALTH),
        ("soil_health_2024.xlsx", SOIL_HEALTH),
        ("T01 - Soil-Chemistry.csv", SOIL_CHEMISTRY),
        ("Plot Data.xlsx", PLOT_DATA),
        ("TISSUE CHEMISTRY results.csv", TISSUE_CHEMISTRY),
        ("Sample Metadata.csv", SAMPLE_METADATA),
        ("assay data march.csv", SAMPLE_METADATA),
        ("metadata.csv", SAMPLE_METADATA),
        ("0. START HERE.xlsx", TRIAL_SUMMARY),
        ("Trial Summary 2024.xlsx", TRIAL_SUMMARY),
        ("paddock.JPG", PHOTO),
        ("drone.webp", PHOTO),
        ("random.xyz", UNKNOWN),
        ("notes.txt", UNKNOWN),
    ])
    def test_table(self, filename, expected):
        assert classify_file(filename) == expected

    def test_first_match_wins(self):
        # both keywords present; trial summary is checked first
        assert classify_file("Trial Summary - soil health.xlsx") == TRIAL_SUMMARY

    def test_keyword_beats_photo_extension(self):
        assert classify_file("plot data.png") == PLOT_DATA

    def test_directory_part_ignored(self):
        assert classify_file("soil health/readme.md") == UNKNOWN
