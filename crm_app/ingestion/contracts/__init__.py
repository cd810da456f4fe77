"""Canonical ingest contract helpers for the CSV processors."""

from __future__ import annotations

from .fields import (
    ALIAS_MAP,
    CANONICAL_FIELDS,
    SKIP_TARGET,
    CanonicalField,
    ColumnMapping,
    FieldDefinition,
    MappedRow,
    lookup_canonical,
    map_row,
    normalize_header,
    resolve_column_mapping,
)

__all__ = [
    "ALIAS_MAP",
    "CANONICAL_FIELDS",
    "CanonicalField",
    "ColumnMapping",
    "FieldDefinition",
    "MappedRow",
    "SKIP_TARGET",
    "lookup_canonical",
    "map_row",
    "normalize_header",
    "resolve_column_mapping",
]
