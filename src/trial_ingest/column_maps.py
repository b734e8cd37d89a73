"""trial_ingest.column_maps

Column Mapping Registry: declarative per-data-type schemas.

Responsibilities:
  - Load and validate the YAML registry (column_maps.yml by default)
  - Freeze each entry into a ColumnMapping with a precompiled alias index
  - Resolve raw headers to canonical field names

Usage:
    from trial_ingest.column_maps import get_mapping

    mapping = get_mapping("soil_health")
    header_map = mapping.resolve_headers(["Sample No", "Date", "Block"])
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from trial_ingest.normalize import header_key
from trial_ingest.shared import UnknownDataTypeError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_REGISTRY_PATH = Path(__file__).with_name("column_maps.yml")

FIELD_TYPES = frozenset({"text", "integer", "decimal", "date"})
LAYOUT_DIRECT = "direct"
LAYOUT_PIVOT = "pivot"
VALID_LAYOUTS = frozenset({LAYOUT_DIRECT, LAYOUT_PIVOT})

# Fields produced by the wide-to-long pivot rather than read from a header.
PIVOT_FIELDS = ("metric", "value", "unit")

SKIP_COLUMN = "__skip__"

REQUIRED_ENTRY_KEYS = frozenset({"table", "layout", "fields", "natural_key"})

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ColumnMappingValidationError(ValueError):
    """Raised when a column mapping entry fails schema validation."""


# ---------------------------------------------------------------------------
# ColumnMapping dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnMapping:
    """Validated schema for one data type.

    header_aliases holds header keys (see normalize.header_key), not the
    spellings as written in YAML.
    """

    data_type: str
    table: str
    layout: str
    field_types: Mapping[str, str]
    header_aliases: Mapping[str, frozenset[str]]
    required_fields: tuple[str, ...]
    trial_id_candidates: tuple[str, ...]
    natural_key: tuple[str, ...]
    lookup_only: frozenset[str] = frozenset()
    ignored_aliases: frozenset[str] = frozenset()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    _alias_index: Mapping[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index: dict[str, str] = {}
        for name in self.field_types:
            for alias in sorted(self.header_aliases.get(name, ())):
                index.setdefault(alias, name)
        object.__setattr__(self, "_alias_index", MappingProxyType(index))

    @property
    def is_pivot(self) -> bool:
        return self.layout == LAYOUT_PIVOT

    @property
    def persisted_fields(self) -> tuple[str, ...]:
        """Canonical fields written to storage, in declaration order."""
        names = tuple(n for n in self.field_types if n not in self.lookup_only)
        if self.is_pivot:
            names += PIVOT_FIELDS
        return names

    def field_for_header(self, header: str) -> str | None:
        return self._alias_index.get(header_key(header))

    def is_known_header(self, header: str) -> bool:
        key = header_key(header)
        return key in self._alias_index or key in self.ignored_aliases

    def resolve_headers(
        self,
        headers: list[str],
        overrides: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Return {raw header: canonical field or SKIP_COLUMN}.

        Fields claim headers in declaration order; each field takes the
        first unclaimed header (in source order) whose key is one of its
        aliases. Overrides, keyed by raw header, win over aliases.
        """
        override_by_key = {header_key(k): v for k, v in (overrides or {}).items()}
        resolved: dict[str, str] = {}
        claimed_fields: set[str] = set()

        for h in headers:
            target = override_by_key.get(header_key(h))
            if target is not None:
                resolved[h] = target
                if target != SKIP_COLUMN:
                    claimed_fields.add(target)

        for name in self.field_types:
            if name in claimed_fields:
                continue
            aliases = self.header_aliases.get(name, frozenset())
            for h in headers:
                if h in resolved:
                    continue
                if header_key(h) in aliases:
                    resolved[h] = name
                    claimed_fields.add(name)
                    break

        for h in headers:
            if h not in resolved and header_key(h) in self.ignored_aliases:
                resolved[h] = SKIP_COLUMN
        return resolved


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def validate_mapping_entry(data_type: str, data: dict[str, Any]) -> None:
    """Raise ColumnMappingValidationError if an entry is not self-consistent.

    Validates:
      - Required keys present, layout known
      - Every field has a known type and a list of aliases
      - required, trial_id_candidates, natural_key, lookup_only and
        defaults only reference declared fields (pivot layouts may also
        use metric/value/unit in natural_key)
    """
    if not isinstance(data, dict):
        raise ColumnMappingValidationError(f"{data_type}: entry must be a mapping.")

    missing = REQUIRED_ENTRY_KEYS - set(data.keys())
    if missing:
        raise ColumnMappingValidationError(
            f"{data_type}: missing required keys: {sorted(missing)}"
        )

    # table and field names are interpolated into SQL
    if not _IDENTIFIER_RE.match(str(data["table"])):
        raise ColumnMappingValidationError(f"{data_type}: invalid table name '{data['table']}'.")

    layout = data.get("layout")
    if layout not in VALID_LAYOUTS:
        raise ColumnMappingValidationError(
            f"{data_type}: invalid layout '{layout}'. Must be one of {sorted(VALID_LAYOUTS)}."
        )

    fields = data.get("fields") or {}
    if not isinstance(fields, dict) or not fields:
        raise ColumnMappingValidationError(f"{data_type}: 'fields' must be a non-empty mapping.")

    for name, spec in fields.items():
        if not _IDENTIFIER_RE.match(str(name)):
            raise ColumnMappingValidationError(f"{data_type}: invalid field name '{name}'.")
        if not isinstance(spec, dict):
            raise ColumnMappingValidationError(f"{data_type}.{name}: field spec must be a mapping.")
        if spec.get("type") not in FIELD_TYPES:
            raise ColumnMappingValidationError(
                f"{data_type}.{name}: type '{spec.get('type')}' must be one of {sorted(FIELD_TYPES)}."
            )
        aliases = spec.get("aliases", [])
        if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
            raise ColumnMappingValidationError(f"{data_type}.{name}: aliases must be a list of strings.")

    declared = set(fields)
    key_fields = declared | set(PIVOT_FIELDS) if layout == LAYOUT_PIVOT else declared
    references = {
        "required": (data.get("required") or [], declared),
        "trial_id_candidates": (data.get("trial_id_candidates") or [], declared),
        "lookup_only": (data.get("lookup_only") or [], declared),
        "defaults": (list((data.get("defaults") or {}).keys()), declared),
        "natural_key": (data.get("natural_key") or [], key_fields),
    }
    for key, (names, allowed) in references.items():
        unknown = [n for n in names if n not in allowed]
        if unknown:
            raise ColumnMappingValidationError(
                f"{data_type}: {key} references undeclared fields: {unknown}"
            )

    if not data.get("natural_key"):
        raise ColumnMappingValidationError(f"{data_type}: 'natural_key' must not be empty.")
    lookup_only = set(data.get("lookup_only") or [])
    if lookup_only & set(data["natural_key"]):
        raise ColumnMappingValidationError(
            f"{data_type}: natural_key may not use lookup_only fields: "
            f"{sorted(lookup_only & set(data['natural_key']))}"
        )


def build_mapping(data_type: str, data: dict[str, Any]) -> ColumnMapping:
    validate_mapping_entry(data_type, data)
    fields = data["fields"]
    return ColumnMapping(
        data_type=data_type,
        table=str(data["table"]),
        layout=data["layout"],
        field_types=MappingProxyType({n: s["type"] for n, s in fields.items()}),
        header_aliases=MappingProxyType({
            n: frozenset({header_key(n)} | {header_key(a) for a in s.get("aliases", [])})
            for n, s in fields.items()
        }),
        required_fields=tuple(data.get("required") or []),
        trial_id_candidates=tuple(data.get("trial_id_candidates") or []),
        natural_key=tuple(data["natural_key"]),
        lookup_only=frozenset(data.get("lookup_only") or []),
        ignored_aliases=frozenset(header_key(a) for a in data.get("ignore") or []),
        defaults=MappingProxyType(dict(data.get("defaults") or {})),
    )


def load_column_mappings(path: Path | None = None) -> Mapping[str, ColumnMapping]:
    """Load, validate and freeze the registry from a YAML file.

    Raises:
        ColumnMappingValidationError: If any entry is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    yaml_path = path or DEFAULT_REGISTRY_PATH
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if not isinstance(data, dict) or not data:
        raise ColumnMappingValidationError("YAML root must be a non-empty mapping.")
    return MappingProxyType({
        str(data_type): build_mapping(str(data_type), entry)
        for data_type, entry in data.items()
    })


def registry_hash(path: Path | None = None) -> str:
    """sha256 of the registry YAML, for run reports."""
    yaml_path = path or DEFAULT_REGISTRY_PATH
    return hashlib.sha256(yaml_path.read_bytes()).hexdigest()


# Process-wide registry, read-only after import.
COLUMN_MAPPINGS: Mapping[str, ColumnMapping] = load_column_mappings()


def get_mapping(
    data_type: str,
    mappings: Mapping[str, ColumnMapping] | None = None,
) -> ColumnMapping:
    registry = COLUMN_MAPPINGS if mappings is None else mappings
    try:
        return registry[data_type]
    except KeyError:
        raise UnknownDataTypeError(f"Unknown data type: {data_type}") from None
