"""
Field-level survivorship for contact and account merges.

This module applies the policies of the active :mod:`config.survivorship`
profile to an existing record and an incoming payload. It mutates the record
in place and returns one :class:`FieldChange` per field that actually
changed, which the upsert engine persists to the field change log.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context

from config.survivorship import (
    MERGE,
    PREFER_NEW_IF_NOT_NULL,
    PREFER_NEW_NORMALIZED,
    UNION,
    FieldRule,
    SurvivorshipProfile,
    load_profile,
)

from .normalize import normalize_phone_e164, split_list

CustomFields = dict[str, Any]


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    old_value: Any
    new_value: Any
    policy: str


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _comparable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    return value


def to_json_value(value: Any) -> Any:
    """Best-effort conversion of a field value into something JSON can store."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): to_json_value(inner) for key, inner in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_value(item) for item in value]
    return str(value)


def union_values(existing: Iterable[Any] | None, incoming: Iterable[Any] | None) -> list[Any]:
    """Order-preserving union: existing items first, then unseen incoming items."""
    merged: list[Any] = []
    for item in list(existing or ()) + list(incoming or ()):
        if item not in merged:
            merged.append(item)
    return merged


def merge_custom_fields(existing: Mapping[str, Any] | None, incoming: Mapping[str, Any] | None) -> CustomFields:
    """Shallow merge of custom-field maps; incoming keys win."""
    merged: CustomFields = dict(existing or {})
    for key, value in (incoming or {}).items():
        merged[str(key)] = value
    return merged


def _merge_scalar(current: Any, raw: Any) -> tuple[bool, Any]:
    incoming = _normalize_value(raw)
    if incoming is None or _comparable(incoming) == _comparable(current):
        return False, current
    return True, incoming


def _merge_union(current: Any, raw: Any) -> tuple[bool, Any]:
    incoming = split_list(raw)
    if not incoming:
        return False, current
    existing = list(current or [])
    merged = union_values(existing, incoming)
    if set(merged) == set(existing):
        return False, current
    return True, merged


def _merge_map(current: Any, raw: Any) -> tuple[bool, Any]:
    if not isinstance(raw, Mapping) or not raw:
        return False, current
    existing = dict(current or {})
    merged = merge_custom_fields(existing, raw)
    if merged == existing:
        return False, current
    return True, merged


def _merge_normalized(current: Any, raw: Any) -> tuple[bool, Any]:
    incoming = normalize_phone_e164(raw)
    if incoming is None or incoming == current:
        return False, current
    return True, incoming


_MERGERS = {
    PREFER_NEW_IF_NOT_NULL: _merge_scalar,
    UNION: _merge_union,
    MERGE: _merge_map,
    PREFER_NEW_NORMALIZED: _merge_normalized,
}


def merge_fields(record: Any, incoming: Mapping[str, Any], rules: Sequence[FieldRule]) -> list[FieldChange]:
    """
    Merge ``incoming`` into ``record`` under ``rules``.

    Fields missing from ``incoming`` are left untouched. The record is only
    written when the policy reports a real change, so re-running the same
    payload produces no changes at all.
    """
    changes: list[FieldChange] = []
    for rule in rules:
        if rule.incoming_key not in incoming:
            continue
        merger = _MERGERS.get(rule.policy)
        if merger is None:
            raise ValueError(f"Unknown survivorship policy '{rule.policy}' for field {rule.field_name}.")
        current = getattr(record, rule.field_name, None)
        changed, new_value = merger(current, incoming[rule.incoming_key])
        if not changed:
            continue
        setattr(record, rule.field_name, new_value)
        changes.append(
            FieldChange(
                field_name=rule.field_name,
                old_value=to_json_value(current),
                new_value=to_json_value(new_value),
                policy=rule.policy,
            )
        )
    return changes


@lru_cache(maxsize=8)
def resolve_profile(override_path: str | None) -> SurvivorshipProfile:
    env = {"INGESTION_SURVIVORSHIP_PROFILE_PATH": override_path} if override_path else {}
    return load_profile(env)


def get_active_profile() -> SurvivorshipProfile:
    """
    Load and cache the survivorship profile for ingestion runs.

    The override path comes from the Flask config when an app context is
    active, otherwise from the environment.
    """
    if has_app_context():
        path = current_app.config.get("INGESTION_SURVIVORSHIP_PROFILE_PATH")
    else:
        path = os.environ.get("INGESTION_SURVIVORSHIP_PROFILE_PATH")
    return resolve_profile(path or None)


__all__ = [
    "CustomFields",
    "FieldChange",
    "get_active_profile",
    "merge_custom_fields",
    "merge_fields",
    "resolve_profile",
    "to_json_value",
    "union_values",
]
