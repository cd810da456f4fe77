from datetime import datetime, timedelta, timezone

import pytest

from crm_app.ingestion.pipeline.eligibility import (
    EligibilityRules,
    eligibility_for_email_status,
    evaluate_eligibility,
)
from crm_app.ingestion.pipeline.exclusion import enforce_submission_exclusion, latest_submissions
from crm_app.models import Contact, EligibilityStatus, EmailStatus, LeadSubmission, db

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

RULES = EligibilityRules.from_config(
    {
        "geo_allow": ["United States", "Canada"],
        "title_keywords": ["marketing", "demand gen"],
        "senior_dm_fallback": ["chief"],
    }
)


@pytest.mark.parametrize(
    "title, country, email, status, reason",
    [
        ("VP Marketing", "United States", "a@acme.com", EligibilityStatus.ELIGIBLE, "eligible"),
        ("Director, Demand Gen", "canada", "a@acme.com", EligibilityStatus.ELIGIBLE, "eligible"),
        ("Chief Executive Officer", "United States of America", "a@acme.com", EligibilityStatus.ELIGIBLE, "eligible"),
        ("Software Engineer", "United States", "a@acme.com", EligibilityStatus.INELIGIBLE_TITLE, "title_not_matching_keywords"),
        ("  ", "United States", "a@acme.com", EligibilityStatus.INELIGIBLE_TITLE, "missing_title"),
        ("VP Marketing", "Germany", "a@acme.com", EligibilityStatus.INELIGIBLE_GEOGRAPHY, "country_not_in_geo_allow_list"),
        ("VP Marketing", None, "a@acme.com", EligibilityStatus.INELIGIBLE_GEOGRAPHY, "country_not_in_geo_allow_list"),
        ("VP Marketing", "United States", None, EligibilityStatus.PENDING_EMAIL_VALIDATION, "missing_email_address"),
    ],
)
def test_evaluate_eligibility(title, country, email, status, reason):
    result = evaluate_eligibility(title, country, RULES, email=email)

    assert result.status is status
    assert result.reason == reason


def test_title_is_checked_before_geography():
    result = evaluate_eligibility("Engineer", "Germany", RULES, email="a@acme.com")

    assert result.status is EligibilityStatus.INELIGIBLE_TITLE


def test_empty_rules_allow_any_titled_contact():
    result = evaluate_eligibility("Anything", "Mars", EligibilityRules(), email="a@acme.com")

    assert result.status is EligibilityStatus.ELIGIBLE


@pytest.mark.parametrize("raw, expected", [("3", 3), (2, 2), (0, None), ("-1", None), ("abc", None), ("", None)])
def test_lead_cap_parsing(raw, expected):
    assert EligibilityRules.from_config({"lead_cap_per_account": raw}).lead_cap_per_account == expected


def test_from_config_accepts_camel_case_keys():
    rules = EligibilityRules.from_config({"geoAllow": "UK", "titleKeywords": ["  CTO "], "leadCapPerAccount": 5})

    assert rules.geo_allow == ("uk",)
    assert rules.title_keywords == ("cto",)
    assert rules.lead_cap_per_account == 5


@pytest.mark.parametrize(
    "current, email_status, expected",
    [
        (EligibilityStatus.PENDING_EMAIL_VALIDATION, EmailStatus.OK, EligibilityStatus.ELIGIBLE),
        (EligibilityStatus.ELIGIBLE, EmailStatus.INVALID, EligibilityStatus.INELIGIBLE_EMAIL_INVALID),
        (EligibilityStatus.ELIGIBLE, EmailStatus.RISKY, EligibilityStatus.INELIGIBLE_EMAIL_RISKY),
        (EligibilityStatus.ELIGIBLE, EmailStatus.DISPOSABLE, EligibilityStatus.INELIGIBLE_EMAIL_DISPOSABLE),
        (EligibilityStatus.INELIGIBLE_EMAIL_INVALID, EmailStatus.OK, EligibilityStatus.ELIGIBLE),
        (EligibilityStatus.PENDING_EMAIL_VALIDATION, EmailStatus.ACCEPT_ALL, EligibilityStatus.PENDING_EMAIL_VALIDATION),
        (EligibilityStatus.ELIGIBLE, EmailStatus.UNKNOWN, EligibilityStatus.ELIGIBLE),
        (EligibilityStatus.INELIGIBLE_TITLE, EmailStatus.OK, EligibilityStatus.INELIGIBLE_TITLE),
        (EligibilityStatus.EXCLUDED, EmailStatus.OK, EligibilityStatus.EXCLUDED),
        (EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED, EmailStatus.OK, EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED),
        (None, EmailStatus.OK, EligibilityStatus.ELIGIBLE),
    ],
)
def test_eligibility_for_email_status(current, email_status, expected):
    assert eligibility_for_email_status(current, email_status).status is expected


def _submit(contact, days_ago):
    db.session.add(
        LeadSubmission(
            contact_id=contact.id,
            account_id=contact.account_id,
            dataset_id=contact.dataset_id,
            submitted_at=NOW - timedelta(days=days_ago),
        )
    )
    db.session.commit()


def test_exclusion_holds_only_recent_submissions(dataset, make_contact):
    recent = make_contact(dataset, email="recent@acme.com", eligibility_status=EligibilityStatus.ELIGIBLE)
    old = make_contact(dataset, email="old@acme.com", eligibility_status=EligibilityStatus.ELIGIBLE)
    untouched = make_contact(dataset, email="never@acme.com", eligibility_status=EligibilityStatus.ELIGIBLE)
    _submit(recent, 100)
    _submit(old, 800)

    stats = enforce_submission_exclusion(db.session, dataset.id, now=NOW)

    assert (stats.checked, stats.excluded, stats.reactivated) == (2, 1, 0)
    assert recent.eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED
    assert recent.eligibility_reason == "submitted_within_730_days"
    assert old.eligibility_status is EligibilityStatus.ELIGIBLE
    assert untouched.eligibility_status is EligibilityStatus.ELIGIBLE


def test_exclusion_is_idempotent(dataset, make_contact):
    contact = make_contact(dataset)
    _submit(contact, 10)

    enforce_submission_exclusion(db.session, dataset.id, now=NOW)
    again = enforce_submission_exclusion(db.session, dataset.id, now=NOW)

    assert (again.excluded, again.reactivated) == (0, 0)
    assert contact.eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED


def test_expired_hold_is_released(dataset, make_contact):
    contact = make_contact(dataset, eligibility_status=EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED)
    _submit(contact, 731)

    stats = enforce_submission_exclusion(db.session, dataset.id, now=NOW)

    assert stats.reactivated == 1
    assert contact.eligibility_status is EligibilityStatus.PENDING_EMAIL_VALIDATION
    assert contact.eligibility_reason == "submission_window_expired"


def test_release_skips_holds_without_an_expired_submission(dataset, make_contact):
    manual = make_contact(
        dataset,
        email="manual@acme.com",
        eligibility_status=EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED,
        eligibility_reason="held_by_ops",
    )
    deleted = make_contact(
        dataset,
        email="deleted@acme.com",
        eligibility_status=EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED,
        deleted_at=NOW - timedelta(days=1),
    )
    _submit(deleted, 900)

    stats = enforce_submission_exclusion(db.session, dataset.id, now=NOW)

    assert stats.reactivated == 0
    assert manual.eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED
    assert manual.eligibility_reason == "held_by_ops"
    assert deleted.eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED


def test_latest_submission_decides(dataset, make_contact):
    contact = make_contact(dataset)
    _submit(contact, 900)
    _submit(contact, 30)

    latest = latest_submissions(db.session, dataset.id)
    stats = enforce_submission_exclusion(db.session, dataset.id, now=NOW, window_days=60)

    assert latest[contact.id] == NOW - timedelta(days=30)
    assert stats.excluded == 1
    assert db.session.get(Contact, contact.id).eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED


def test_exclusion_ignores_other_datasets(make_dataset, make_contact):
    first = make_dataset("First")
    second = make_dataset("Second")
    contact = make_contact(second)
    _submit(contact, 5)

    stats = enforce_submission_exclusion(db.session, first.id, now=NOW)

    assert stats.checked == 0
    assert contact.eligibility_status is EligibilityStatus.PENDING_EMAIL_VALIDATION
