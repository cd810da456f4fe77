import pytest

from crm_app.ingestion.pipeline.suppression import (
    SuppressionMatcher,
    add_suppression,
    build_suppression_keys,
)
from crm_app.models import SuppressionEntry, db


def test_global_email_entry_matches_any_dataset(dataset):
    entry = add_suppression(db.session, email=" Jane@Acme.com ", reason="opt-out")

    match = SuppressionMatcher(db.session, dataset.id).match(build_suppression_keys(email="jane@acme.COM"))

    assert match.suppressed
    assert match.rule == "email"
    assert match.entry_id == entry.id
    assert entry.email_normalized == "jane@acme.com"


def test_dataset_scoped_entry_only_applies_to_its_dataset(make_dataset):
    first = make_dataset("First")
    second = make_dataset("Second")
    add_suppression(db.session, dataset_id=first.id, cav_id="CAV-1")
    keys = build_suppression_keys(cav_id="CAV-1")

    assert SuppressionMatcher(db.session, first.id).match(keys).rule == "cav_id"
    assert not SuppressionMatcher(db.session, second.id).is_suppressed(keys)
    assert not SuppressionMatcher(db.session).is_suppressed(keys)


def test_name_and_company_match_on_normalized_hash(dataset):
    add_suppression(db.session, full_name="Jane Doe", company="Acme, Inc.")
    matcher = SuppressionMatcher(db.session, dataset.id)

    assert matcher.match(build_suppression_keys(full_name="  JANE  doe", company="ACME")).rule == "name_company"
    assert not matcher.is_suppressed(build_suppression_keys(full_name="Jane Doe"))
    assert not matcher.is_suppressed(build_suppression_keys(company="Acme"))
    assert not matcher.is_suppressed(build_suppression_keys(full_name="John Roe", company="Acme"))


def test_first_matching_rule_is_reported(dataset):
    add_suppression(db.session, cav_user_id="U-9")
    add_suppression(db.session, email="jane@acme.com")

    match = SuppressionMatcher(db.session, dataset.id).match(
        build_suppression_keys(email="jane@acme.com", cav_user_id="U-9")
    )

    assert match.rule == "email"


def test_empty_keys_never_match(dataset):
    add_suppression(db.session, email="jane@acme.com")

    assert not SuppressionMatcher(db.session, dataset.id).is_suppressed(build_suppression_keys())


def test_add_suppression_requires_a_match_key():
    with pytest.raises(ValueError):
        add_suppression(db.session, full_name="Jane Doe", reason="name only")

    assert db.session.query(SuppressionEntry).count() == 0
