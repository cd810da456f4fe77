"""
Recent-submission exclusion sweep.

Contacts whose latest lead submission in a dataset falls inside the exclusion
window are held as ``Ineligible_Recently_Submitted``; contacts whose hold has
expired are released back to ``Pending_Email_Validation``. The sweep only
touches rows whose status actually changes, so it can run any number of
times.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Sequence

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.orm import Session

from crm_app.models import Contact, EligibilityStatus, LeadSubmission
from crm_app.models.base import as_utc, utcnow

DEFAULT_WINDOW_DAYS = 730
_IN_CLAUSE_CHUNK = 500


@dataclass(frozen=True)
class ExclusionStats:
    checked: int = 0
    excluded: int = 0
    reactivated: int = 0


def _chunks(values: Sequence[int], size: int = _IN_CLAUSE_CHUNK) -> Iterator[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def latest_submissions(session: Session, dataset_id: int) -> dict[int, datetime]:
    """Most recent ``submitted_at`` per contact within the dataset."""
    rows = (
        session.query(LeadSubmission.contact_id, func.max(LeadSubmission.submitted_at))
        .filter(LeadSubmission.dataset_id == dataset_id)
        .group_by(LeadSubmission.contact_id)
        .all()
    )
    return {contact_id: as_utc(submitted_at) for contact_id, submitted_at in rows if submitted_at is not None}


def enforce_submission_exclusion(
    session: Session,
    dataset_id: int,
    *,
    now: datetime | None = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> ExclusionStats:
    """
    Apply the exclusion window to every contact submitted in ``dataset_id``.

    Changes are flushed into the caller's transaction; committing is up to
    the caller.
    """
    now = as_utc(now) or utcnow()
    cutoff = now - timedelta(days=window_days)
    latest = latest_submissions(session, dataset_id)
    recent_ids = sorted(contact_id for contact_id, submitted_at in latest.items() if submitted_at >= cutoff)

    excluded = 0
    for chunk in _chunks(recent_ids):
        contacts = (
            session.query(Contact)
            .filter(
                Contact.dataset_id == dataset_id,
                Contact.id.in_(chunk),
                Contact.deleted_at.is_(None),
                Contact.eligibility_status != EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED,
            )
            .all()
        )
        for contact in contacts:
            contact.eligibility_status = EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED
            contact.eligibility_reason = f"submitted_within_{window_days}_days"
            excluded += 1

    # Only contacts whose latest submission aged out are released; a hold with
    # no submission behind it was set by someone else and stays.
    expired_ids = sorted(contact_id for contact_id, submitted_at in latest.items() if submitted_at < cutoff)
    reactivated = 0
    for chunk in _chunks(expired_ids):
        held = (
            session.query(Contact)
            .filter(
                Contact.dataset_id == dataset_id,
                Contact.id.in_(chunk),
                Contact.deleted_at.is_(None),
                Contact.eligibility_status == EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED,
            )
            .all()
        )
        for contact in held:
            contact.eligibility_status = EligibilityStatus.PENDING_EMAIL_VALIDATION
            contact.eligibility_reason = "submission_window_expired"
            reactivated += 1

    session.flush()
    stats = ExclusionStats(checked=len(latest), excluded=excluded, reactivated=reactivated)
    if has_app_context():
        current_app.logger.info(
            "Submission exclusion for dataset %s: checked=%s excluded=%s reactivated=%s",
            dataset_id,
            stats.checked,
            stats.excluded,
            stats.reactivated,
            extra={
                "ingestion_dataset_id": dataset_id,
                "ingestion_exclusion_checked": stats.checked,
                "ingestion_exclusion_excluded": stats.excluded,
                "ingestion_exclusion_reactivated": stats.reactivated,
            },
        )
    return stats


__all__ = ["DEFAULT_WINDOW_DAYS", "ExclusionStats", "enforce_submission_exclusion", "latest_submissions"]
