"""
Campaign eligibility decisions for contacts.

``evaluate_eligibility`` runs once per imported row. Later email validation
results only move a contact between the email-driven statuses; title and
geography decisions, suppression exclusion and the recent-submission hold are
never overridden by an email status.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from crm_app.models import EligibilityStatus, EmailStatus

from .normalize import clean_text, normalize_country_key


@dataclass(frozen=True)
class EligibilityRules:
    geo_allow: tuple[str, ...] = ()
    title_keywords: tuple[str, ...] = ()
    senior_dm_fallback: tuple[str, ...] = ()
    lead_cap_per_account: int | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "EligibilityRules":
        """
        Build rules from a dataset's ``eligibility_config``.

        Both ``snake_case`` and the ``camelCase`` keys older clients send are
        accepted.
        """
        config = config or {}

        def _terms(*keys: str) -> tuple[str, ...]:
            for key in keys:
                raw = config.get(key)
                if raw:
                    return _clean_terms(raw if isinstance(raw, (list, tuple)) else [raw])
            return ()

        cap_raw = config.get("lead_cap_per_account", config.get("leadCapPerAccount"))
        try:
            lead_cap = int(cap_raw) if cap_raw not in (None, "") else None
        except (TypeError, ValueError):
            lead_cap = None
        if lead_cap is not None and lead_cap <= 0:
            lead_cap = None

        return cls(
            geo_allow=_terms("geo_allow", "geoAllow"),
            title_keywords=_terms("title_keywords", "titleKeywords"),
            senior_dm_fallback=_terms("senior_dm_fallback", "seniorDmFallback"),
            lead_cap_per_account=lead_cap,
        )


@dataclass(frozen=True)
class EligibilityResult:
    status: EligibilityStatus
    reason: str


def _clean_terms(values: Iterable[Any]) -> tuple[str, ...]:
    terms = []
    for value in values:
        token = clean_text(value)
        if token:
            terms.append(token.lower())
    return tuple(terms)


def _title_allowed(title: str, rules: EligibilityRules) -> bool:
    if not rules.title_keywords:
        return True
    if any(keyword in title for keyword in rules.title_keywords):
        return True
    return any(senior in title for senior in rules.senior_dm_fallback)


def _country_allowed(country_key: str | None, rules: EligibilityRules) -> bool:
    if not rules.geo_allow:
        return True
    if not country_key:
        return False
    for allowed in rules.geo_allow:
        allowed_key = normalize_country_key(allowed)
        if allowed_key and (allowed_key in country_key or country_key in allowed_key):
            return True
    return False


def evaluate_eligibility(
    title: Any,
    country: Any,
    rules: EligibilityRules,
    email: Any = None,
) -> EligibilityResult:
    """Title first, then geography, then the presence of an email."""
    title_key = (clean_text(title) or "").lower()
    if not title_key or not _title_allowed(title_key, rules):
        reason = "missing_title" if not title_key else "title_not_matching_keywords"
        return EligibilityResult(EligibilityStatus.INELIGIBLE_TITLE, reason)
    if not _country_allowed(normalize_country_key(country), rules):
        return EligibilityResult(EligibilityStatus.INELIGIBLE_GEOGRAPHY, "country_not_in_geo_allow_list")
    if not clean_text(email):
        return EligibilityResult(EligibilityStatus.PENDING_EMAIL_VALIDATION, "missing_email_address")
    return EligibilityResult(EligibilityStatus.ELIGIBLE, "eligible")


# Statuses an email validation result may never change.
LOCKED_STATUSES: frozenset[EligibilityStatus] = frozenset(
    {
        EligibilityStatus.INELIGIBLE_TITLE,
        EligibilityStatus.INELIGIBLE_GEOGRAPHY,
        EligibilityStatus.EXCLUDED,
        EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED,
    }
)

_EMAIL_INELIGIBLE = {
    EmailStatus.INVALID: EligibilityStatus.INELIGIBLE_EMAIL_INVALID,
    EmailStatus.RISKY: EligibilityStatus.INELIGIBLE_EMAIL_RISKY,
    EmailStatus.DISPOSABLE: EligibilityStatus.INELIGIBLE_EMAIL_DISPOSABLE,
}


def eligibility_for_email_status(current: EligibilityStatus | None, email_status: EmailStatus) -> EligibilityResult:
    """
    Re-derive eligibility after an email validation result.

    ``accept_all`` and ``unknown`` results leave the status where it was.
    """
    current = current or EligibilityStatus.PENDING_EMAIL_VALIDATION
    if current in LOCKED_STATUSES:
        return EligibilityResult(current, f"kept_{current.value.lower()}")
    if email_status in _EMAIL_INELIGIBLE:
        return EligibilityResult(_EMAIL_INELIGIBLE[email_status], f"email_{email_status.value}")
    if email_status == EmailStatus.OK:
        return EligibilityResult(EligibilityStatus.ELIGIBLE, "email_ok")
    return EligibilityResult(current, f"email_{email_status.value}")


__all__ = [
    "EligibilityResult",
    "EligibilityRules",
    "LOCKED_STATUSES",
    "eligibility_for_email_status",
    "evaluate_eligibility",
]
