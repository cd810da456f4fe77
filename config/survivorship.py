"""
Survivorship policy configuration for contact and account merges.

The upsert engine loads this module to decide how each field of an existing
Contact or Account is merged with an incoming CSV value. Four policies exist:

``prefer_new_if_not_null``
    Scalars. The incoming value replaces the stored one only when it is
    present and different.
``union``
    Array fields (tags, topics, tech stack). Incoming items are added to the
    stored set; order never counts as a change.
``merge``
    Free-form custom-field maps. Shallow merge, incoming keys win.
``prefer_new_normalized``
    Phone numbers. The incoming raw value is normalized to E.164 and compared
    against the stored E.164 form.

Configuration is file-backed so no tables or migrations are needed. Operators
can override the defaults by pointing ``INGESTION_SURVIVORSHIP_PROFILE_PATH``
at a JSON or YAML file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

PREFER_NEW_IF_NOT_NULL = "prefer_new_if_not_null"
UNION = "union"
MERGE = "merge"
PREFER_NEW_NORMALIZED = "prefer_new_normalized"

POLICIES: tuple[str, ...] = (PREFER_NEW_IF_NOT_NULL, UNION, MERGE, PREFER_NEW_NORMALIZED)

ENTITY_TYPES: tuple[str, ...] = ("contact", "account")


@dataclass(frozen=True)
class FieldRule:
    """
    Survivorship policy for a single field.

    Attributes:
        field_name: Target attribute on the Contact/Account model.
        policy: One of :data:`POLICIES`.
        source_field: For ``prefer_new_normalized`` rules, the raw incoming
            field whose normalized form is compared (``direct_phone`` feeds
            ``direct_phone_e164``). Defaults to ``field_name``.
    """

    field_name: str
    policy: str = PREFER_NEW_IF_NOT_NULL
    source_field: str | None = None

    @property
    def incoming_key(self) -> str:
        return self.source_field or self.field_name


@dataclass(frozen=True)
class FieldGroup:
    """
    Group of related fields sharing an entity type.

    Groups help operators read the profile and summarize merge decisions.
    """

    name: str
    display_name: str
    entity_type: str
    fields: Sequence[FieldRule]


@dataclass(frozen=True)
class SurvivorshipProfile:
    """Container for all field rules of both entity types."""

    key: str
    label: str
    description: str
    field_groups: Sequence[FieldGroup]

    def find_rule(self, entity_type: str, field_name: str) -> FieldRule | None:
        for group in self.field_groups:
            if group.entity_type != entity_type:
                continue
            for rule in group.fields:
                if rule.field_name == field_name:
                    return rule
        return None

    def rules_for(self, entity_type: str) -> tuple[FieldRule, ...]:
        return tuple(
            rule for group in self.field_groups if group.entity_type == entity_type for rule in group.fields
        )


# ---------------------------------------------------------------------------
# Default profile
# ---------------------------------------------------------------------------

CONTACT_IDENTITY_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("full_name"),
    FieldRule("first_name"),
    FieldRule("last_name"),
    FieldRule("title"),
    FieldRule("email"),
    FieldRule("linkedin_url"),
    FieldRule("cav_id"),
    FieldRule("cav_user_id"),
    FieldRule("source_type"),
    FieldRule("account_id"),
)

CONTACT_COMMUNICATION_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("direct_phone"),
    FieldRule("direct_phone_e164", PREFER_NEW_NORMALIZED, source_field="direct_phone"),
    FieldRule("mobile_phone"),
    FieldRule("mobile_phone_e164", PREFER_NEW_NORMALIZED, source_field="mobile_phone"),
)

CONTACT_ADDRESS_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("contact_address_1"),
    FieldRule("contact_address_2"),
    FieldRule("contact_address_3"),
    FieldRule("contact_city"),
    FieldRule("contact_state"),
    FieldRule("contact_postal_code"),
    FieldRule("contact_country"),
)

CONTACT_COLLECTION_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("tags", UNION),
    FieldRule("intent_topics", UNION),
    FieldRule("custom_fields", MERGE),
)

ACCOUNT_PROFILE_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("name"),
    FieldRule("domain"),
    FieldRule("industry"),
    FieldRule("annual_revenue"),
    FieldRule("employees_size_range"),
    FieldRule("description"),
    FieldRule("year_founded"),
    FieldRule("sic_code"),
    FieldRule("naics_code"),
    FieldRule("linkedin_url"),
)

ACCOUNT_HQ_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("hq_address_1"),
    FieldRule("hq_address_2"),
    FieldRule("hq_address_3"),
    FieldRule("hq_city"),
    FieldRule("hq_state"),
    FieldRule("hq_postal_code"),
    FieldRule("hq_country"),
    FieldRule("main_phone"),
    FieldRule("main_phone_e164", PREFER_NEW_NORMALIZED, source_field="main_phone"),
)

ACCOUNT_COLLECTION_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("tags", UNION),
    FieldRule("intent_topics", UNION),
    FieldRule("tech_stack", UNION),
    FieldRule("custom_fields", MERGE),
)

DEFAULT_PROFILE = SurvivorshipProfile(
    key="default",
    label="Default survivorship",
    description="Incoming non-null values overwrite stored scalars, collections are unioned, "
    "custom fields are merged with incoming keys winning and phones compare on E.164.",
    field_groups=(
        FieldGroup("contact_identity", "Contact identity", "contact", CONTACT_IDENTITY_FIELDS),
        FieldGroup("contact_communication", "Contact phones", "contact", CONTACT_COMMUNICATION_FIELDS),
        FieldGroup("contact_address", "Contact address", "contact", CONTACT_ADDRESS_FIELDS),
        FieldGroup("contact_collections", "Contact collections", "contact", CONTACT_COLLECTION_FIELDS),
        FieldGroup("account_profile", "Account profile", "account", ACCOUNT_PROFILE_FIELDS),
        FieldGroup("account_hq", "Account headquarters", "account", ACCOUNT_HQ_FIELDS),
        FieldGroup("account_collections", "Account collections", "account", ACCOUNT_COLLECTION_FIELDS),
    ),
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class SurvivorshipConfigError(RuntimeError):
    """Raised when a configuration override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise SurvivorshipConfigError(f"Survivorship override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise SurvivorshipConfigError(f"Unable to read survivorship override file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise SurvivorshipConfigError(f"Survivorship override file {path} is malformed: {exc}") from exc

    if not isinstance(data, Mapping):
        raise SurvivorshipConfigError("Survivorship override must be a JSON/YAML object.")
    return dict(data)


def _coerce_field_rule(raw: Mapping[str, object]) -> FieldRule:
    name = str(raw.get("field_name") or "").strip()
    if not name:
        raise SurvivorshipConfigError("Each field rule requires a non-empty field_name.")
    policy = str(raw.get("policy") or PREFER_NEW_IF_NOT_NULL).strip()
    if policy not in POLICIES:
        raise SurvivorshipConfigError(f"Field {name} uses unknown policy '{policy}'.")
    source_field = raw.get("source_field")
    if policy == PREFER_NEW_NORMALIZED and not source_field:
        raise SurvivorshipConfigError(f"Field {name} uses {PREFER_NEW_NORMALIZED} and needs a source_field.")
    return FieldRule(
        field_name=name,
        policy=policy,
        source_field=str(source_field).strip() if source_field else None,
    )


def _coerce_field_group(raw: Mapping[str, object]) -> FieldGroup:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise SurvivorshipConfigError("Each field group requires a non-empty name.")
    display_name = str(raw.get("display_name") or "").strip() or name.replace("_", " ").title()
    entity_type = str(raw.get("entity_type") or "").strip()
    if entity_type not in ENTITY_TYPES:
        raise SurvivorshipConfigError(f"Group {name} needs entity_type 'contact' or 'account'.")
    fields_raw = raw.get("fields") or ()
    if not isinstance(fields_raw, Iterable) or isinstance(fields_raw, (str, bytes)):
        raise SurvivorshipConfigError(f"Group {name} fields must be a sequence.")
    rules = tuple(_coerce_field_rule(rule) for rule in fields_raw)  # type: ignore[arg-type]
    return FieldGroup(name=name, display_name=display_name, entity_type=entity_type, fields=rules)


def _coerce_profile(raw: Mapping[str, object]) -> SurvivorshipProfile:
    key = str(raw.get("key") or DEFAULT_PROFILE.key).strip() or DEFAULT_PROFILE.key
    label = str(raw.get("label") or DEFAULT_PROFILE.label).strip() or DEFAULT_PROFILE.label
    description = str(raw.get("description") or DEFAULT_PROFILE.description).strip() or DEFAULT_PROFILE.description
    raw_groups = raw.get("field_groups") or ()
    if not isinstance(raw_groups, Iterable) or isinstance(raw_groups, (str, bytes)):
        raise SurvivorshipConfigError("field_groups must be a sequence.")
    groups = tuple(_coerce_field_group(group) for group in raw_groups)  # type: ignore[arg-type]
    if not groups:
        groups = tuple(DEFAULT_PROFILE.field_groups)
    return SurvivorshipProfile(key=key, label=label, description=description, field_groups=groups)


def load_profile(env: Mapping[str, str] | None = None) -> SurvivorshipProfile:
    """
    Load the active survivorship profile.

    If ``INGESTION_SURVIVORSHIP_PROFILE_PATH`` is set, its JSON/YAML content
    replaces the default profile. Otherwise the built-in defaults are used.
    """

    env_map = env or {}
    override_path = env_map.get("INGESTION_SURVIVORSHIP_PROFILE_PATH")
    if not override_path:
        return DEFAULT_PROFILE
    return _coerce_profile(_load_override(Path(override_path)))


__all__ = [
    "DEFAULT_PROFILE",
    "FieldGroup",
    "FieldRule",
    "MERGE",
    "POLICIES",
    "PREFER_NEW_IF_NOT_NULL",
    "PREFER_NEW_NORMALIZED",
    "SurvivorshipConfigError",
    "SurvivorshipProfile",
    "UNION",
    "load_profile",
]
