from datetime import datetime, timezone

import pytest

from crm_app.ingestion.errors import RowValidationError
from crm_app.ingestion.pipeline.job_service import create_job
from crm_app.ingestion.pipeline.processors import parse_submitted_at
from crm_app.ingestion.pipeline.runner import run_job
from crm_app.ingestion.pipeline.suppression import add_suppression
from crm_app.models import (
    Account,
    Contact,
    EligibilityStatus,
    EmailStatus,
    FieldChangeLog,
    IngestionJobStatus,
    LeadSubmission,
    SourceType,
    db,
)

HEADER = "first_name,last_name,email,title,company,country\n"
ACME_TEAM = (
    "first_name,last_name,email,title,company,country,industry\n"
    "Jane,Doe,jane@acme.com,VP Marketing,Acme,United States,Software\n"
    "John,Roe,john@acme.com,CMO,Acme,United States,SaaS\n"
)
NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


def _run(dataset, csv_text, *, job_type=None, update_mode=False, **runner_kwargs):
    job = create_job(dataset.id, csv_text, job_type=job_type, update_mode=update_mode, actor_id="tester")
    outcome = run_job(job.id, **runner_kwargs)
    return job, outcome


def test_contacts_import_shares_one_account_per_domain(dataset):
    job, outcome = _run(
        dataset,
        HEADER
        + "Jane,Doe,jane@acme.com,VP Marketing,Acme,United States\n"
        + "John,Roe,John@Acme.com,CMO,Acme Inc,United States\n",
    )

    assert outcome.status == "completed"
    assert (job.total_rows, job.processed_rows, job.success_count, job.error_count) == (2, 2, 2, 0)
    assert job.status is IngestionJobStatus.COMPLETED
    assert job.errors == []

    accounts = db.session.query(Account).all()
    assert len(accounts) == 1
    assert accounts[0].domain_normalized == "acme.com"
    contacts = db.session.query(Contact).order_by(Contact.id).all()
    assert [contact.account_id for contact in contacts] == [accounts[0].id, accounts[0].id]
    assert contacts[1].email_normalized == "john@acme.com"
    assert contacts[0].full_name == "Jane Doe"
    assert contacts[0].source_type is SourceType.NEW_SOURCED
    assert contacts[0].eligibility_status is EligibilityStatus.ELIGIBLE
    assert contacts[0].source_system == "csv_upload"


def test_rows_missing_required_fields_are_reported(dataset):
    job, _ = _run(
        dataset,
        HEADER
        + ",,nobody@acme.com,CMO,Acme,United States\n"
        + "Jane,Doe,jane@acme.com,CMO,Acme,\n"
        + "John,Roe,john@acme.com,CMO,Acme,Canada\n",
    )

    assert job.status is IngestionJobStatus.COMPLETED
    assert (job.success_count, job.error_count) == (1, 2)
    assert job.errors == [
        {"row": 1, "message": "Missing name information"},
        {"row": 2, "message": "Missing Contact Country - required field"},
    ]
    assert db.session.query(Contact).count() == 1


def test_personal_email_resolves_account_by_company(dataset):
    _run(dataset, HEADER + "Bob,Smith,bob@gmail.com,CTO,Globex Corporation,United States\n")

    account = db.session.query(Account).one()
    assert account.name == "Globex Corporation"
    assert account.domain is None
    assert db.session.query(Contact).one().account_id == account.id


def test_existing_contact_is_left_alone_without_update_mode(dataset, make_contact):
    contact = make_contact(dataset, email="jane@acme.com", title="Manager")

    job, _ = _run(dataset, HEADER + "Jane,Doe,jane@acme.com,VP Marketing,Acme,United States\n")

    assert job.success_count == 1
    assert db.session.get(Contact, contact.id).title == "Manager"
    assert db.session.query(FieldChangeLog).count() == 0


def test_update_mode_merges_and_logs_with_job_id(dataset, make_contact):
    contact = make_contact(dataset, email="jane@acme.com", title="Manager")

    job, _ = _run(
        dataset,
        HEADER + "Jane,Doe,jane@acme.com,VP Marketing,Acme,United States\n",
        update_mode=True,
    )

    assert db.session.get(Contact, contact.id).title == "VP Marketing"
    log = db.session.query(FieldChangeLog).filter_by(field_key="title").one()
    assert log.job_id == job.id
    assert log.entity_id == contact.id
    assert (log.old_value, log.new_value) == ("Manager", "VP Marketing")
    assert log.actor_id == "tester"
    assert db.session.query(Contact).count() == 1


def test_rerunning_a_file_in_update_mode_logs_no_changes(dataset):
    _run(dataset, ACME_TEAM, update_mode=True)
    logged = db.session.query(FieldChangeLog).count()

    _, outcome = _run(dataset, ACME_TEAM, update_mode=True)

    assert outcome.status == "completed"
    assert db.session.query(FieldChangeLog).count() == logged
    assert db.session.query(Account).one().industry == "Software"
    assert db.session.query(Contact).count() == 2


def test_first_row_decides_existing_account_columns(dataset, make_account):
    account = make_account(industry="Hardware")

    job, _ = _run(dataset, ACME_TEAM, update_mode=True)

    assert db.session.get(Account, account.id).industry == "Software"
    log = db.session.query(FieldChangeLog).filter_by(field_key="industry").one()
    assert (log.entity_id, log.old_value, log.new_value) == (account.id, "Hardware", "Software")
    assert log.job_id == job.id


def test_suppressed_contact_is_imported_as_excluded(dataset):
    add_suppression(db.session, email="jane@acme.com", reason="opt-out")
    db.session.commit()

    _run(dataset, HEADER + "Jane,Doe,JANE@acme.com,VP Marketing,Acme,United States\n")

    contact = db.session.query(Contact).one()
    assert contact.suppressed is True
    assert contact.suppression_rule == "email"
    assert contact.eligibility_status is EligibilityStatus.EXCLUDED
    assert contact.eligibility_reason == "suppressed_by_email"


def test_contact_inherits_hq_fields_from_same_country_account(dataset, make_account):
    make_account(
        hq_address_1="1 Main St",
        hq_city="Springfield",
        hq_postal_code="12345",
        hq_country="United States",
        main_phone="(415) 555-0100",
    )

    _run(dataset, HEADER + "Jane,Doe,jane@acme.com,VP Marketing,Acme,united states\n")

    contact = db.session.query(Contact).one()
    assert contact.contact_address_1 == "1 Main St"
    assert contact.contact_city == "Springfield"
    assert contact.contact_postal_code == "12345"
    assert contact.direct_phone_e164 == "+14155550100"


def test_lead_cap_blocks_new_contacts_on_full_account(make_dataset, make_account, make_contact):
    capped = make_dataset("Capped", lead_cap_per_account=1)
    account = make_account()
    make_contact(capped, email="first@acme.com", account_id=account.id)

    job, _ = _run(capped, HEADER + "Jane,Doe,jane@acme.com,VP Marketing,Acme,United States\n")

    assert job.errors == [{"row": 1, "message": "Lead cap reached for account Acme (1/1)"}]
    assert db.session.query(Contact).count() == 1


def test_cav_id_marks_contact_client_provided(dataset):
    _run(dataset, "full_name,email,country,cav_id\nJane Doe,jane@acme.com,US,CAV-77\n")

    contact = db.session.query(Contact).one()
    assert contact.source_type is SourceType.CLIENT_PROVIDED
    assert contact.cav_id == "CAV-77"


def test_ambiguous_email_is_a_row_error(dataset, make_contact):
    make_contact(dataset, email="shared@acme.com", full_name="One")
    make_contact(dataset, email="shared@acme.com", full_name="Two")

    job, _ = _run(dataset, HEADER + "Jane,Doe,shared@acme.com,CMO,Acme,United States\n")

    assert job.errors == [{"row": 1, "message": "Ambiguous email match: 2 contacts share shared@acme.com"}]


def test_update_mode_falls_back_to_name_match(dataset, make_account, make_contact):
    account = make_account()
    contact = make_contact(dataset, email=None, full_name="Jane Doe", account_id=account.id)

    _run(
        dataset,
        HEADER + "Jane,Doe,jane@acme.com,VP Marketing,Acme,United States\n",
        update_mode=True,
    )

    assert db.session.query(Contact).count() == 1
    refreshed = db.session.get(Contact, contact.id)
    assert refreshed.email_normalized == "jane@acme.com"
    assert refreshed.title == "VP Marketing"


def test_custom_field_mappings_land_in_custom_fields(dataset):
    job = create_job(
        dataset.id,
        "Name,Work Mail,Country,Favorite Color\nJane Doe,jane@acme.com,US,blue\n",
        field_mappings=[
            {"csvColumn": "Work Mail", "targetField": "email"},
            {"csvColumn": "Favorite Color", "targetField": "favorite_color"},
        ],
    )
    run_job(job.id)

    contact = db.session.query(Contact).one()
    assert contact.email == "jane@acme.com"
    assert contact.custom_fields == {"favorite_color": "blue"}


def test_validation_results_update_email_status(dataset, make_contact):
    contact = make_contact(dataset, email="jane@acme.com")

    job, _ = _run(
        dataset,
        "email,status\nJane@Acme.com,valid\nghost@acme.com,invalid\n,ok\n",
        job_type="validation_results",
    )

    refreshed = db.session.get(Contact, contact.id)
    assert refreshed.email_status is EmailStatus.OK
    assert refreshed.eligibility_status is EligibilityStatus.ELIGIBLE
    assert job.errors == [
        {"row": 2, "message": "No contact found for email ghost@acme.com"},
        {"row": 3, "message": "Missing email"},
    ]


def test_validation_results_never_unlock_title_ineligible(dataset, make_contact):
    contact = make_contact(dataset, email="jane@acme.com", eligibility_status=EligibilityStatus.INELIGIBLE_TITLE)

    _run(dataset, "email,status\njane@acme.com,valid\n", job_type="validation_results")

    refreshed = db.session.get(Contact, contact.id)
    assert refreshed.email_status is EmailStatus.OK
    assert refreshed.eligibility_status is EligibilityStatus.INELIGIBLE_TITLE


def test_submissions_dedupe_and_trigger_exclusion(dataset, make_contact):
    contact = make_contact(dataset, email="jane@acme.com", eligibility_status=EligibilityStatus.ELIGIBLE)

    job, outcome = _run(
        dataset,
        "contact_id,submitted_at\n"
        f"{contact.id},2026-09-01T10:00:00Z\n"
        f"{contact.id},2026-09-01T10:00:00Z\n"
        "999,2026-09-01\n",
        job_type="submissions",
        now_fn=lambda: NOW,
    )

    assert outcome.status == "completed"
    assert job.success_count == 2
    assert job.errors == [{"row": 3, "message": "Contact 999 not found in dataset"}]
    assert db.session.query(LeadSubmission).count() == 1
    db.session.expire_all()
    assert db.session.get(Contact, contact.id).eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED


def test_submissions_by_email_with_default_timestamp(dataset, make_contact):
    contact = make_contact(dataset, email="jane@acme.com")

    job, _ = _run(
        dataset,
        "email,submitted_at\njane@acme.com,\n,2026-01-01\njane@acme.com,yesterday\n",
        job_type="submissions",
        now_fn=lambda: NOW,
    )

    submission = db.session.query(LeadSubmission).one()
    assert submission.contact_id == contact.id
    assert submission.submitted_at.replace(tzinfo=timezone.utc) == NOW
    assert job.errors == [
        {"row": 2, "message": "Missing contact_id or email"},
        {"row": 3, "message": "Invalid submitted_at 'yesterday'"},
    ]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2026-09-01T10:00:00Z", datetime(2026, 9, 1, 10, tzinfo=timezone.utc)),
        ("2026-09-01T12:00:00+02:00", datetime(2026, 9, 1, 10, tzinfo=timezone.utc)),
        ("2026-09-01", datetime(2026, 9, 1, tzinfo=timezone.utc)),
        ("", NOW),
    ],
)
def test_parse_submitted_at(raw, expected):
    assert parse_submitted_at(raw, NOW) == expected


def test_parse_submitted_at_rejects_garbage():
    with pytest.raises(RowValidationError):
        parse_submitted_at("31/12/2026", NOW)
