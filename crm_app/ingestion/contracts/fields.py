"""Canonical ingest field contract.

Every CSV column is mapped onto one of the :class:`CanonicalField` targets,
either through a user supplied ``{csvColumn, targetField}`` override or
through the built-in header alias table below. Columns mapped to anything
else land in the contact's ``custom_fields``.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence, Tuple

from ..errors import FieldMappingError


SKIP_TARGET = "skip"

_HEADER_STRIP_RE = re.compile(r"[^a-z0-9_]")


class CanonicalField(str, enum.Enum):
    # Contact
    FULL_NAME = "full_name"
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    TITLE = "title"
    EMAIL = "email"
    DIRECT_PHONE = "direct_phone"
    MOBILE_PHONE = "mobile_phone"
    LINKEDIN_URL = "linkedin_url"
    CONTACT_ADDRESS_1 = "contact_address_1"
    CONTACT_ADDRESS_2 = "contact_address_2"
    CONTACT_ADDRESS_3 = "contact_address_3"
    CONTACT_CITY = "contact_city"
    CONTACT_STATE = "contact_state"
    CONTACT_POSTAL_CODE = "contact_postal_code"
    CONTACT_COUNTRY = "contact_country"
    CAV_ID = "cav_id"
    CAV_USER_ID = "cav_user_id"
    SOURCE_TYPE = "source_type"
    TAGS = "tags"
    INTENT_TOPICS = "intent_topics"
    # Account
    COMPANY_NAME = "company_name"
    DOMAIN = "domain"
    INDUSTRY = "industry"
    ANNUAL_REVENUE = "annual_revenue"
    EMPLOYEES_SIZE_RANGE = "employees_size_range"
    DESCRIPTION = "description"
    YEAR_FOUNDED = "year_founded"
    SIC_CODE = "sic_code"
    NAICS_CODE = "naics_code"
    COMPANY_LINKEDIN_URL = "company_linkedin_url"
    TECH_STACK = "tech_stack"
    HQ_ADDRESS_1 = "hq_address_1"
    HQ_ADDRESS_2 = "hq_address_2"
    HQ_ADDRESS_3 = "hq_address_3"
    HQ_CITY = "hq_city"
    HQ_STATE = "hq_state"
    HQ_POSTAL_CODE = "hq_postal_code"
    HQ_COUNTRY = "hq_country"
    MAIN_PHONE = "main_phone"
    # Validation results
    EMAIL_STATUS = "email_status"
    # Submissions
    CONTACT_ID = "contact_id"
    SUBMITTED_AT = "submitted_at"


@dataclass(frozen=True)
class FieldDefinition:
    """Metadata describing a canonical ingest field."""

    name: CanonicalField
    description: str
    aliases: Tuple[str, ...] = ()

    def headers(self) -> Tuple[str, ...]:
        return (self.name.value, *self.aliases)


CANONICAL_FIELDS: Tuple[FieldDefinition, ...] = (
    FieldDefinition(CanonicalField.FULL_NAME, "Full display name.", ("name", "contact_name")),
    FieldDefinition(CanonicalField.FIRST_NAME, "Given name.", ("first", "given_name")),
    FieldDefinition(CanonicalField.LAST_NAME, "Family name.", ("last", "surname")),
    FieldDefinition(CanonicalField.TITLE, "Job title.", ("job_title", "position")),
    FieldDefinition(CanonicalField.EMAIL, "Work email address.", ("email_address", "work_email")),
    FieldDefinition(CanonicalField.DIRECT_PHONE, "Direct dial.", ("phone", "phone_number", "direct_dial")),
    FieldDefinition(CanonicalField.MOBILE_PHONE, "Mobile phone.", ("mobile", "mobile_number", "cell")),
    FieldDefinition(CanonicalField.LINKEDIN_URL, "Contact LinkedIn profile.", ("linkedin", "linkedin_profile")),
    FieldDefinition(CanonicalField.CONTACT_ADDRESS_1, "Street line 1.", ("address1", "address_1", "street1")),
    FieldDefinition(CanonicalField.CONTACT_ADDRESS_2, "Street line 2.", ("address2", "address_2", "street2")),
    FieldDefinition(CanonicalField.CONTACT_ADDRESS_3, "Street line 3.", ("address3", "address_3", "street3")),
    FieldDefinition(CanonicalField.CONTACT_CITY, "Contact city.", ("city",)),
    FieldDefinition(CanonicalField.CONTACT_STATE, "Contact state or region.", ("state", "region")),
    FieldDefinition(
        CanonicalField.CONTACT_POSTAL_CODE,
        "Contact postal code.",
        ("contact_postal", "postal_code", "postal", "zip", "zip_code"),
    ),
    FieldDefinition(CanonicalField.CONTACT_COUNTRY, "Contact country.", ("country",)),
    FieldDefinition(CanonicalField.CAV_ID, "Client account verification id."),
    FieldDefinition(CanonicalField.CAV_USER_ID, "Client account verification user id."),
    FieldDefinition(CanonicalField.SOURCE_TYPE, "Client_Provided or New_Sourced.", ("source",)),
    FieldDefinition(CanonicalField.TAGS, "Delimited tag list.", ("tag", "labels")),
    FieldDefinition(CanonicalField.INTENT_TOPICS, "Delimited intent topic list.", ("intent", "topics")),
    FieldDefinition(
        CanonicalField.COMPANY_NAME,
        "Account display name.",
        ("company", "account_name", "account", "organization", "employer"),
    ),
    FieldDefinition(
        CanonicalField.DOMAIN,
        "Company website or domain.",
        ("company_domain", "website", "company_website", "website_domain", "url"),
    ),
    FieldDefinition(CanonicalField.INDUSTRY, "Industry.", ("company_industry", "vertical")),
    FieldDefinition(CanonicalField.ANNUAL_REVENUE, "Annual revenue or revenue band.", ("revenue", "revenue_range")),
    FieldDefinition(
        CanonicalField.EMPLOYEES_SIZE_RANGE,
        "Headcount band.",
        ("employees", "employee_size_range", "staff_count_range", "company_size", "headcount"),
    ),
    FieldDefinition(CanonicalField.DESCRIPTION, "Company description.", ("company_description",)),
    FieldDefinition(CanonicalField.YEAR_FOUNDED, "Founding year.", ("founded", "founded_date", "founded_year")),
    FieldDefinition(CanonicalField.SIC_CODE, "SIC code.", ("sic",)),
    FieldDefinition(CanonicalField.NAICS_CODE, "NAICS code.", ("naics",)),
    FieldDefinition(
        CanonicalField.COMPANY_LINKEDIN_URL,
        "Company LinkedIn page.",
        ("company_linkedin", "company_linkedin_id", "linkedin_id"),
    ),
    FieldDefinition(CanonicalField.TECH_STACK, "Delimited technology list.", ("technologies", "web_technologies")),
    FieldDefinition(CanonicalField.HQ_ADDRESS_1, "HQ street line 1.", ("hq_street1", "hq_street_1")),
    FieldDefinition(CanonicalField.HQ_ADDRESS_2, "HQ street line 2.", ("hq_street2", "hq_street_2")),
    FieldDefinition(CanonicalField.HQ_ADDRESS_3, "HQ street line 3.", ("hq_street3", "hq_street_3")),
    FieldDefinition(CanonicalField.HQ_CITY, "HQ city.", ("headquarters_city", "company_city")),
    FieldDefinition(CanonicalField.HQ_STATE, "HQ state.", ("headquarters_state", "company_state")),
    FieldDefinition(CanonicalField.HQ_POSTAL_CODE, "HQ postal code.", ("hq_postal", "hq_zip", "hq_zip_code")),
    FieldDefinition(CanonicalField.HQ_COUNTRY, "HQ country.", ("headquarters_country", "company_country")),
    FieldDefinition(
        CanonicalField.MAIN_PHONE,
        "Company switchboard.",
        ("hq_phone", "company_phone", "company_phone_number"),
    ),
    FieldDefinition(
        CanonicalField.EMAIL_STATUS,
        "Email verification outcome.",
        ("status", "verification_status", "validation_status", "result"),
    ),
    FieldDefinition(CanonicalField.CONTACT_ID, "Existing contact id.", ("contactid",)),
    FieldDefinition(
        CanonicalField.SUBMITTED_AT,
        "When the lead was delivered (ISO-8601).",
        ("submitted", "submission_date", "delivered_at", "delivery_date"),
    ),
)


def _clean_cell(value: Any) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def normalize_header(header: Any) -> str:
    """Lower-case a header and drop everything outside ``[a-z0-9_]``."""
    return _HEADER_STRIP_RE.sub("", str(header or "").strip().lower())


def _build_alias_map(definitions: Iterable[FieldDefinition]) -> Mapping[str, CanonicalField]:
    mapping: dict[str, CanonicalField] = {}
    for definition in definitions:
        for header in definition.headers():
            token = normalize_header(header)
            for variant in {token, token.replace("_", "")}:
                existing = mapping.get(variant)
                if existing is not None and existing != definition.name:
                    raise RuntimeError(
                        f"Header alias '{variant}' maps to both {existing.value} and {definition.name.value}."
                    )
                mapping[variant] = definition.name
    return MappingProxyType(mapping)


ALIAS_MAP: Mapping[str, CanonicalField] = _build_alias_map(CANONICAL_FIELDS)


def lookup_canonical(header: Any) -> CanonicalField | None:
    return ALIAS_MAP.get(normalize_header(header))


@dataclass(frozen=True)
class ColumnMapping:
    """How each CSV header of one upload is consumed."""

    columns: Mapping[str, CanonicalField] = field(default_factory=dict)
    custom: Mapping[str, str] = field(default_factory=dict)
    skipped: Tuple[str, ...] = ()

    @property
    def targets(self) -> frozenset[CanonicalField]:
        return frozenset(self.columns.values())


@dataclass(frozen=True)
class MappedRow:
    fields: Mapping[str, str]
    custom_fields: Mapping[str, str]

    def get(self, name: CanonicalField | str) -> str | None:
        key = name.value if isinstance(name, CanonicalField) else name
        return self.fields.get(key)


def _override_lookup(overrides: Sequence[Mapping[str, Any]] | None) -> dict[str, str]:
    if not overrides:
        return {}
    if not isinstance(overrides, (list, tuple)):
        raise FieldMappingError("fieldMappings must be a list of {csvColumn, targetField} objects.")
    lookup: dict[str, str] = {}
    for index, item in enumerate(overrides):
        if not isinstance(item, Mapping):
            raise FieldMappingError(f"fieldMappings[{index}] must be an object.")
        column = _clean_cell(item.get("csvColumn", item.get("csv_column")))
        if not column:
            raise FieldMappingError(f"fieldMappings[{index}] is missing csvColumn.")
        target = _clean_cell(item.get("targetField", item.get("target_field"))) or SKIP_TARGET
        lookup[column] = target
    return lookup


def resolve_column_mapping(
    headers: Sequence[str],
    overrides: Sequence[Mapping[str, Any]] | None = None,
) -> ColumnMapping:
    """
    Decide the target of every CSV header.

    User overrides win over the alias table. A ``skip`` target drops the
    column, a target that is not a canonical field becomes a custom field key,
    and headers nobody recognizes are skipped.
    """
    lookup = _override_lookup(overrides)
    normalized_lookup = {normalize_header(column): target for column, target in lookup.items()}

    columns: dict[str, CanonicalField] = {}
    custom: dict[str, str] = {}
    skipped: list[str] = []
    for header in headers:
        target = lookup.get(header)
        if target is None:
            target = normalized_lookup.get(normalize_header(header))
        if target is not None:
            if target.lower() == SKIP_TARGET:
                skipped.append(header)
                continue
            canonical = lookup_canonical(target)
            if canonical is not None:
                columns[header] = canonical
            else:
                custom[header] = target
            continue

        canonical = lookup_canonical(header)
        if canonical is None:
            skipped.append(header)
        else:
            columns[header] = canonical
    return ColumnMapping(columns=columns, custom=custom, skipped=tuple(skipped))


def map_row(row: Mapping[str, Any], mapping: ColumnMapping) -> MappedRow:
    """Project a raw CSV row onto canonical fields; the first non-blank column wins."""
    fields: dict[str, str] = {}
    for header, canonical in mapping.columns.items():
        value = _clean_cell(row.get(header))
        if value is not None and canonical.value not in fields:
            fields[canonical.value] = value
    custom_fields: dict[str, str] = {}
    for header, key in mapping.custom.items():
        value = _clean_cell(row.get(header))
        if value is not None:
            custom_fields[key] = value
    return MappedRow(fields=fields, custom_fields=custom_fields)


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
