"""
Create-or-merge helpers that load normalized rows into contacts and accounts.

Lookups use each entity's natural key. A miss inserts a new row; a hit is
merged under the survivorship profile and every changed field is recorded in
the append-only :class:`FieldChangeLog` inside the caller's transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.orm import Session

from config.survivorship import SurvivorshipProfile
from crm_app.models import Account, Contact, EmailStatus, FieldChangeLog, SourceType

from ..errors import RowValidationError
from .normalize import (
    clean_text,
    company_name_from_domain,
    normalize_company_key,
    normalize_domain,
    normalize_email,
    normalize_phone_e164,
    split_list,
)
from .survivorship import FieldChange, get_active_profile, merge_custom_fields, merge_fields

ENTITY_CONTACT = "contact"
ENTITY_ACCOUNT = "account"

CONTACT_SCALAR_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "title",
    "email",
    "direct_phone",
    "mobile_phone",
    "linkedin_url",
    "contact_address_1",
    "contact_address_2",
    "contact_address_3",
    "contact_city",
    "contact_state",
    "contact_postal_code",
    "contact_country",
    "cav_id",
    "cav_user_id",
)

ACCOUNT_SCALAR_FIELDS: tuple[str, ...] = (
    "industry",
    "annual_revenue",
    "employees_size_range",
    "description",
    "year_founded",
    "sic_code",
    "naics_code",
    "linkedin_url",
    "hq_address_1",
    "hq_address_2",
    "hq_address_3",
    "hq_city",
    "hq_state",
    "hq_postal_code",
    "hq_country",
    "main_phone",
)


@dataclass(frozen=True)
class Provenance:
    """Where an incoming payload came from; copied onto rows and change logs."""

    source_system: str | None = None
    source_record_id: str | None = None
    source_updated_at: datetime | None = None
    actor_id: str | None = None
    job_id: int | None = None


@dataclass(frozen=True)
class UpsertResult:
    record: Any
    action: Literal["created", "updated"]
    changes: tuple[FieldChange, ...] = ()

    @property
    def changed(self) -> bool:
        return self.action == "created" or bool(self.changes)


def derive_full_name(first_name: Any, last_name: Any, email: Any = None) -> str | None:
    """``first last``, else whichever part exists, else the email."""
    first = clean_text(first_name)
    last = clean_text(last_name)
    if first and last:
        return f"{first} {last}"
    return first or last or clean_text(email)


def _apply_provenance(record: Any, provenance: Provenance) -> None:
    if provenance.source_system:
        record.source_system = provenance.source_system
    if provenance.source_record_id:
        record.source_record_id = provenance.source_record_id
    if provenance.source_updated_at:
        record.source_updated_at = provenance.source_updated_at


def _write_change_log(
    session: Session,
    *,
    entity_type: str,
    entity_id: int,
    changes: tuple[FieldChange, ...],
    provenance: Provenance,
) -> None:
    for change in changes:
        session.add(
            FieldChangeLog(
                job_id=provenance.job_id,
                entity_type=entity_type,
                entity_id=entity_id,
                field_key=change.field_name,
                old_value=change.old_value,
                new_value=change.new_value,
                source_system=provenance.source_system,
                actor_id=provenance.actor_id,
                survivorship_policy=change.policy,
            )
        )


def _log_merge(entity_type: str, entity_id: int, changes: tuple[FieldChange, ...], provenance: Provenance) -> None:
    if not changes or not has_app_context():
        return
    current_app.logger.debug(
        "Merged %s %s (%s fields changed)",
        entity_type,
        entity_id,
        len(changes),
        extra={
            "ingestion_job_id": provenance.job_id,
            "ingestion_entity_type": entity_type,
            "ingestion_entity_id": entity_id,
            "ingestion_changed_fields": [change.field_name for change in changes],
        },
    )


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def find_contacts_by_email(session: Session, email: Any, *, dataset_id: int | None = None) -> list[Contact]:
    """Non-deleted contacts sharing a normalized email, oldest first."""
    email_key = normalize_email(email)
    if not email_key:
        return []
    query = session.query(Contact).filter(Contact.email_normalized == email_key, Contact.deleted_at.is_(None))
    if dataset_id is not None:
        query = query.filter(Contact.dataset_id == dataset_id)
    return query.order_by(Contact.id).all()


def create_contact(
    session: Session,
    fields: Mapping[str, Any],
    provenance: Provenance,
    *,
    dataset_id: int | None = None,
) -> Contact:
    values = {name: clean_text(fields.get(name)) for name in CONTACT_SCALAR_FIELDS}
    contact = Contact(dataset_id=dataset_id, **values)
    contact.full_name = clean_text(fields.get("full_name")) or derive_full_name(
        values["first_name"], values["last_name"], values["email"]
    )
    contact.email_normalized = normalize_email(values["email"])
    contact.direct_phone_e164 = normalize_phone_e164(values["direct_phone"])
    contact.mobile_phone_e164 = normalize_phone_e164(values["mobile_phone"])
    contact.account_id = fields.get("account_id")
    contact.source_type = fields.get("source_type")
    contact.tags = split_list(fields.get("tags")) or None
    contact.intent_topics = split_list(fields.get("intent_topics")) or None
    contact.custom_fields = merge_custom_fields(None, fields.get("custom_fields")) or None
    for status_field in ("email_status", "eligibility_status", "eligibility_reason", "suppressed", "suppression_rule"):
        if fields.get(status_field) is not None:
            setattr(contact, status_field, fields[status_field])
    if contact.email_status is None:
        contact.email_status = EmailStatus.UNKNOWN
    _apply_provenance(contact, provenance)
    session.add(contact)
    session.flush()
    return contact


def merge_contact(
    session: Session,
    contact: Contact,
    fields: Mapping[str, Any],
    provenance: Provenance,
    *,
    profile: SurvivorshipProfile | None = None,
) -> UpsertResult:
    profile = profile or get_active_profile()
    previous_email = contact.email
    changes = tuple(merge_fields(contact, fields, profile.rules_for(ENTITY_CONTACT)))
    if contact.email != previous_email:
        contact.email_normalized = normalize_email(contact.email)
    _apply_provenance(contact, provenance)
    _write_change_log(session, entity_type=ENTITY_CONTACT, entity_id=contact.id, changes=changes, provenance=provenance)
    _log_merge(ENTITY_CONTACT, contact.id, changes, provenance)
    return UpsertResult(record=contact, action="updated", changes=changes)


def upsert_contact(
    session: Session,
    fields: Mapping[str, Any],
    provenance: Provenance,
    *,
    profile: SurvivorshipProfile | None = None,
    dataset_id: int | None = None,
) -> UpsertResult:
    """
    Insert or merge a contact keyed by normalized email.

    Raises:
        RowValidationError: several contacts share the email, so the target
            is ambiguous.
    """
    matches = find_contacts_by_email(session, fields.get("email"), dataset_id=dataset_id)
    if len(matches) > 1:
        raise RowValidationError(f"Ambiguous email match: {len(matches)} contacts share {normalize_email(fields.get('email'))}")
    if matches:
        return merge_contact(session, matches[0], fields, provenance, profile=profile)
    contact = create_contact(session, fields, provenance, dataset_id=dataset_id)
    return UpsertResult(record=contact, action="created")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def find_account(session: Session, fields: Mapping[str, Any]) -> Account | None:
    """
    Natural-key lookup: normalized domain, else name key + HQ city + HQ
    country among accounts that have no domain.
    """
    base = session.query(Account).filter(Account.deleted_at.is_(None))
    domain = normalize_domain(fields.get("domain"))
    if domain:
        return base.filter(Account.domain_normalized == domain).order_by(Account.id).first()

    name_key = normalize_company_key(fields.get("name"))
    if not name_key:
        return None
    query = base.filter(Account.name_normalized == name_key, Account.domain_normalized.is_(None))
    for column, raw in ((Account.hq_city, fields.get("hq_city")), (Account.hq_country, fields.get("hq_country"))):
        token = clean_text(raw)
        if token is None:
            query = query.filter(column.is_(None))
        else:
            query = query.filter(func.lower(column) == token.lower())
    return query.order_by(Account.id).first()


def _account_payload(fields: Mapping[str, Any]) -> dict[str, Any]:
    payload = dict(fields)
    if "domain" in payload:
        domain = normalize_domain(payload["domain"])
        if domain:
            payload["domain"] = domain
        else:
            payload.pop("domain")
    return payload


def create_account(session: Session, fields: Mapping[str, Any], provenance: Provenance) -> Account:
    payload = _account_payload(fields)
    domain = payload.get("domain")
    name = clean_text(payload.get("name")) or company_name_from_domain(domain) or domain
    if not name:
        raise RowValidationError("Account requires a company name or domain")
    values = {field_name: clean_text(payload.get(field_name)) for field_name in ACCOUNT_SCALAR_FIELDS}
    account = Account(
        name=name,
        name_normalized=normalize_company_key(name),
        domain=domain,
        domain_normalized=domain,
        **values,
    )
    account.main_phone_e164 = normalize_phone_e164(values["main_phone"])
    account.tags = split_list(payload.get("tags")) or None
    account.intent_topics = split_list(payload.get("intent_topics")) or None
    account.tech_stack = split_list(payload.get("tech_stack")) or None
    account.custom_fields = merge_custom_fields(None, payload.get("custom_fields")) or None
    _apply_provenance(account, provenance)
    session.add(account)
    session.flush()
    return account


def merge_account(
    session: Session,
    account: Account,
    fields: Mapping[str, Any],
    provenance: Provenance,
    *,
    profile: SurvivorshipProfile | None = None,
) -> UpsertResult:
    profile = profile or get_active_profile()
    payload = _account_payload(fields)
    previous_name, previous_domain = account.name, account.domain
    changes = tuple(merge_fields(account, payload, profile.rules_for(ENTITY_ACCOUNT)))
    if account.name != previous_name:
        account.name_normalized = normalize_company_key(account.name)
    if account.domain != previous_domain:
        account.domain_normalized = normalize_domain(account.domain)
    _apply_provenance(account, provenance)
    _write_change_log(session, entity_type=ENTITY_ACCOUNT, entity_id=account.id, changes=changes, provenance=provenance)
    _log_merge(ENTITY_ACCOUNT, account.id, changes, provenance)
    return UpsertResult(record=account, action="updated", changes=changes)


def upsert_account(
    session: Session,
    fields: Mapping[str, Any],
    provenance: Provenance,
    *,
    profile: SurvivorshipProfile | None = None,
) -> UpsertResult:
    existing = find_account(session, fields)
    if existing is not None:
        return merge_account(session, existing, fields, provenance, profile=profile)
    return UpsertResult(record=create_account(session, fields, provenance), action="created")


def upsert(
    session: Session,
    entity_type: str,
    fields: Mapping[str, Any],
    provenance: Provenance,
    *,
    profile: SurvivorshipProfile | None = None,
    dataset_id: int | None = None,
) -> UpsertResult:
    """Entity-agnostic entry point used by the CLI and tests."""
    if entity_type == ENTITY_CONTACT:
        return upsert_contact(session, fields, provenance, profile=profile, dataset_id=dataset_id)
    if entity_type == ENTITY_ACCOUNT:
        return upsert_account(session, fields, provenance, profile=profile)
    raise ValueError(f"Unsupported entity type '{entity_type}'.")


def coerce_source_type(cav_id: Any, cav_user_id: Any) -> SourceType:
    """Client-provided when the row carries CAV identifiers."""
    if clean_text(cav_id) or clean_text(cav_user_id):
        return SourceType.CLIENT_PROVIDED
    return SourceType.NEW_SOURCED


__all__ = [
    "ENTITY_ACCOUNT",
    "ENTITY_CONTACT",
    "Provenance",
    "UpsertResult",
    "coerce_source_type",
    "create_account",
    "create_contact",
    "derive_full_name",
    "find_account",
    "find_contacts_by_email",
    "merge_account",
    "merge_contact",
    "upsert",
    "upsert_account",
    "upsert_contact",
]
