"""trial_ingest.classify

File Classifier: filename -> data type tag. First match wins.
"""

from __future__ import annotations

import re
from pathlib import PurePath

TRIAL_SUMMARY = "trial_summary"
SOIL_HEALTH = "soil_health"
SOIL_CHEMISTRY = "soil_chemistry"
PLOT_DATA = "plot_data"
TISSUE_CHEMISTRY = "tissue_chemistry"
SAMPLE_METADATA = "sample_metadata"
PHOTO = "photo"
UNKNOWN = "unknown"

DATA_TYPES = (
    TRIAL_SUMMARY,
    SOIL_HEALTH,
    SOIL_CHEMISTRY,
    PLOT_DATA,
    TISSUE_CHEMISTRY,
    SAMPLE_METADATA,
    PHOTO,
    UNKNOWN,
)

# Types that are not loaded by the ingestion pipeline.
NON_INGESTIBLE = frozenset({PHOTO, UNKNOWN})

PHOTO_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp"})

_KEYWORD_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("start here", "trial summary"), TRIAL_SUMMARY),
    (("soil health",), SOIL_HEALTH),
    (("soil chemistry",), SOIL_CHEMISTRY),
    (("plot data",), PLOT_DATA),
    (("tissue chemistry",), TISSUE_CHEMISTRY),
    (("sample metadata", "assay data", "metadata"), SAMPLE_METADATA),
)


def _name_key(filename: str) -> str:
    name = PurePath(filename).name.lower()
    return re.sub(r"[\s_\-]+", " ", name)


def classify_file(filename: str) -> str:
    """Return the data type tag for filename, or 'unknown'."""
    key = _name_key(filename)
    for keywords, data_type in _KEYWORD_RULES:
        if any(k in key for k in keywords):
            return data_type
    if PurePath(filename).suffix.lower() in PHOTO_EXTENSIONS:
        return PHOTO
    return UNKNOWN
