"""
Exact-match suppression checks for incoming contacts.

A contact is suppressed when a global or dataset-scoped suppression entry
matches one of its identity keys. Only exact equality on pre-normalized
columns counts; a name alone or a company alone never suppresses anyone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from crm_app.models import SuppressionEntry

from ..metrics import record_suppression_hit
from .normalize import clean_text, compute_name_company_hash, normalize_company_key, normalize_email, normalize_name

RULE_EMAIL = "email"
RULE_CAV_ID = "cav_id"
RULE_CAV_USER_ID = "cav_user_id"
RULE_NAME_COMPANY = "name_company"

# Evaluation order; the first rule that matches is reported.
RULE_ORDER: tuple[str, ...] = (RULE_EMAIL, RULE_CAV_ID, RULE_CAV_USER_ID, RULE_NAME_COMPANY)

_RULE_COLUMNS = {
    RULE_EMAIL: SuppressionEntry.email_normalized,
    RULE_CAV_ID: SuppressionEntry.cav_id,
    RULE_CAV_USER_ID: SuppressionEntry.cav_user_id,
    RULE_NAME_COMPANY: SuppressionEntry.name_company_hash,
}


@dataclass(frozen=True)
class SuppressionKeys:
    email: str | None = None
    cav_id: str | None = None
    cav_user_id: str | None = None
    name_company_hash: str | None = None

    def for_rule(self, rule: str) -> str | None:
        return {
            RULE_EMAIL: self.email,
            RULE_CAV_ID: self.cav_id,
            RULE_CAV_USER_ID: self.cav_user_id,
            RULE_NAME_COMPANY: self.name_company_hash,
        }[rule]

    @property
    def is_empty(self) -> bool:
        return not any(self.for_rule(rule) for rule in RULE_ORDER)


@dataclass(frozen=True)
class SuppressionMatch:
    suppressed: bool
    rule: str | None = None
    entry_id: int | None = None


NOT_SUPPRESSED = SuppressionMatch(suppressed=False)


def build_suppression_keys(
    *,
    email: Any = None,
    cav_id: Any = None,
    cav_user_id: Any = None,
    full_name: Any = None,
    company: Any = None,
) -> SuppressionKeys:
    return SuppressionKeys(
        email=normalize_email(email),
        cav_id=clean_text(cav_id),
        cav_user_id=clean_text(cav_user_id),
        name_company_hash=compute_name_company_hash(full_name, company),
    )


class SuppressionMatcher:
    """Check suppression keys against global and dataset-scoped entries."""

    def __init__(self, session: Session, dataset_id: int | None = None) -> None:
        self.session = session
        self.dataset_id = dataset_id

    def _scope(self):
        query = self.session.query(SuppressionEntry)
        if self.dataset_id is None:
            return query.filter(SuppressionEntry.dataset_id.is_(None))
        return query.filter(
            or_(SuppressionEntry.dataset_id.is_(None), SuppressionEntry.dataset_id == self.dataset_id)
        )

    def match(self, keys: SuppressionKeys) -> SuppressionMatch:
        if keys.is_empty:
            return NOT_SUPPRESSED
        for rule in RULE_ORDER:
            value = keys.for_rule(rule)
            if not value:
                continue
            entry = self._scope().filter(_RULE_COLUMNS[rule] == value).order_by(SuppressionEntry.id).first()
            if entry is not None:
                record_suppression_hit(rule)
                return SuppressionMatch(suppressed=True, rule=rule, entry_id=entry.id)
        return NOT_SUPPRESSED

    def is_suppressed(self, keys: SuppressionKeys) -> bool:
        return self.match(keys).suppressed


def add_suppression(
    session: Session,
    *,
    dataset_id: int | None = None,
    email: Any = None,
    cav_id: Any = None,
    cav_user_id: Any = None,
    full_name: Any = None,
    company: Any = None,
    reason: str | None = None,
) -> SuppressionEntry:
    """
    Add a suppression entry with every match column pre-normalized.

    The name/company hash is only stored when both parts are present.
    """
    name_norm = normalize_name(full_name)
    company_norm = normalize_company_key(company)
    entry = SuppressionEntry(
        dataset_id=dataset_id,
        email_normalized=normalize_email(email),
        cav_id=clean_text(cav_id),
        cav_user_id=clean_text(cav_user_id),
        full_name_norm=name_norm,
        company_norm=company_norm,
        name_company_hash=compute_name_company_hash(full_name, company),
        reason=clean_text(reason),
    )
    if not any(
        (entry.email_normalized, entry.cav_id, entry.cav_user_id, entry.name_company_hash)
    ):
        raise ValueError("A suppression entry needs an email, a CAV id, or both a name and a company.")
    session.add(entry)
    session.flush()
    return entry


__all__ = [
    "RULE_ORDER",
    "SuppressionKeys",
    "SuppressionMatch",
    "SuppressionMatcher",
    "add_suppression",
    "build_suppression_keys",
]
