import json

import pytest

from config.survivorship import (
    DEFAULT_PROFILE,
    PREFER_NEW_NORMALIZED,
    UNION,
    SurvivorshipConfigError,
    load_profile,
)
from crm_app.ingestion.errors import RowValidationError
from crm_app.ingestion.pipeline.upsert import (
    Provenance,
    coerce_source_type,
    derive_full_name,
    find_account,
    upsert,
    upsert_account,
    upsert_contact,
)
from crm_app.models import Account, Contact, FieldChangeLog, SourceType, db

PROVENANCE = Provenance(source_system="csv_upload", actor_id="tester")


def _contact_fields(**overrides):
    fields = {
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "Jane.Doe@Acme.com",
        "title": "VP Marketing",
        "direct_phone": "(415) 555-0101",
        "contact_country": "United States",
        "tags": "webinar; q3",
    }
    fields.update(overrides)
    return fields


def test_upsert_contact_creates_normalized_record(dataset):
    result = upsert_contact(db.session, _contact_fields(), PROVENANCE, dataset_id=dataset.id)

    contact = result.record
    assert result.action == "created"
    assert result.changed
    assert contact.full_name == "Jane Doe"
    assert contact.email_normalized == "jane.doe@acme.com"
    assert contact.direct_phone_e164 == "+14155550101"
    assert contact.tags == ["webinar", "q3"]
    assert contact.source_system == "csv_upload"
    assert db.session.query(FieldChangeLog).count() == 0


def test_upsert_contact_merges_and_logs_changes(dataset):
    upsert_contact(db.session, _contact_fields(), PROVENANCE, dataset_id=dataset.id)

    result = upsert_contact(
        db.session,
        _contact_fields(title="CMO", tags="q4", custom_fields={"tier": "gold"}),
        Provenance(source_system="csv_upload", actor_id="tester", job_id=42),
        dataset_id=dataset.id,
    )

    contact = result.record
    assert result.action == "updated"
    assert contact.title == "CMO"
    assert contact.tags == ["webinar", "q3", "q4"]
    assert contact.custom_fields == {"tier": "gold"}

    logs = {log.field_key: log for log in db.session.query(FieldChangeLog).all()}
    assert set(logs) == {"title", "tags", "custom_fields"}
    assert logs["title"].old_value == "VP Marketing"
    assert logs["title"].new_value == "CMO"
    assert logs["title"].survivorship_policy == "prefer_new_if_not_null"
    assert logs["tags"].survivorship_policy == UNION
    assert logs["title"].job_id == 42
    assert logs["title"].entity_type == "contact"
    assert logs["title"].entity_id == contact.id


def test_reapplying_the_same_payload_changes_nothing(dataset):
    upsert_contact(db.session, _contact_fields(), PROVENANCE, dataset_id=dataset.id)

    assert upsert_contact(db.session, _contact_fields(), PROVENANCE, dataset_id=dataset.id).changes == ()

    result = upsert_contact(
        db.session,
        _contact_fields(direct_phone="415.555.0101", tags="q3, webinar"),
        PROVENANCE,
        dataset_id=dataset.id,
    )

    # Reformatted phone: only the raw value changes, the E.164 form is stable.
    assert [change.field_name for change in result.changes] == ["direct_phone"]
    assert result.record.direct_phone_e164 == "+14155550101"
    assert result.record.tags == ["webinar", "q3"]


def test_blank_values_never_overwrite(dataset):
    upsert_contact(db.session, _contact_fields(), PROVENANCE, dataset_id=dataset.id)

    result = upsert_contact(
        db.session,
        _contact_fields(title="   ", direct_phone=None, tags=""),
        PROVENANCE,
        dataset_id=dataset.id,
    )

    assert result.changes == ()
    assert result.record.title == "VP Marketing"
    assert result.record.direct_phone == "(415) 555-0101"


def test_phone_change_updates_e164_form(dataset):
    upsert_contact(db.session, _contact_fields(), PROVENANCE, dataset_id=dataset.id)

    result = upsert_contact(db.session, _contact_fields(direct_phone="+44 20 7946 0958"), PROVENANCE, dataset_id=dataset.id)

    policies = {change.field_name: change.policy for change in result.changes}
    assert policies["direct_phone_e164"] == PREFER_NEW_NORMALIZED
    assert result.record.direct_phone_e164 == "+442079460958"


def test_ambiguous_email_is_a_row_error(dataset, make_contact):
    make_contact(dataset, email="shared@acme.com", full_name="One")
    make_contact(dataset, email="shared@acme.com", full_name="Two")

    with pytest.raises(RowValidationError) as excinfo:
        upsert_contact(db.session, {"email": "SHARED@acme.com"}, PROVENANCE, dataset_id=dataset.id)

    assert "Ambiguous email match: 2 contacts share shared@acme.com" in str(excinfo.value)


def test_upsert_account_creates_then_merges():
    created = upsert_account(
        db.session,
        {"name": "Acme Inc.", "domain": "https://www.acme.com", "tech_stack": "Salesforce; HubSpot"},
        PROVENANCE,
    )
    account = created.record
    assert created.action == "created"
    assert account.domain == "acme.com"
    assert account.name_normalized == "acme"

    merged = upsert_account(
        db.session,
        {"name": "Acme Inc.", "domain": "acme.com", "tech_stack": "HubSpot, Marketo", "industry": "Software"},
        PROVENANCE,
    )

    assert merged.action == "updated"
    assert merged.record.id == account.id
    assert merged.record.tech_stack == ["Salesforce", "HubSpot", "Marketo"]
    assert {change.field_name for change in merged.changes} == {"tech_stack", "industry"}
    assert db.session.query(Account).count() == 1


def test_find_account_without_domain_uses_name_and_hq(make_account):
    account = make_account(name="Globex", domain=None, hq_city="Springfield", hq_country="USA")
    make_account(name="Globex", domain=None, hq_city="Shelbyville", hq_country="USA")

    found = find_account(db.session, {"name": "Globex Corp", "hq_city": "springfield", "hq_country": "usa"})

    assert found.id == account.id
    assert find_account(db.session, {"name": "Globex", "hq_city": "Capital City", "hq_country": "USA"}) is None


def test_upsert_dispatches_by_entity_type(dataset):
    result = upsert(db.session, "contact", {"email": "a@acme.com"}, PROVENANCE, dataset_id=dataset.id)
    assert isinstance(result.record, Contact)

    with pytest.raises(ValueError):
        upsert(db.session, "opportunity", {}, PROVENANCE)


def test_derive_full_name_and_source_type():
    assert derive_full_name("Jane", "Doe") == "Jane Doe"
    assert derive_full_name(None, "Doe") == "Doe"
    assert derive_full_name(" ", None, "jane@acme.com") == "jane@acme.com"
    assert coerce_source_type("CAV-1", None) is SourceType.CLIENT_PROVIDED
    assert coerce_source_type(" ", None) is SourceType.NEW_SOURCED


def test_load_profile_defaults():
    assert load_profile({}) is DEFAULT_PROFILE
    rule = DEFAULT_PROFILE.find_rule("contact", "direct_phone_e164")
    assert rule.policy == PREFER_NEW_NORMALIZED
    assert rule.incoming_key == "direct_phone"


def test_load_profile_from_yaml_override(tmp_path):
    path = tmp_path / "survivorship.yaml"
    path.write_text(
        "key: strict\n"
        "field_groups:\n"
        "  - name: contact_core\n"
        "    entity_type: contact\n"
        "    fields:\n"
        "      - field_name: title\n"
        "      - field_name: tags\n"
        "        policy: union\n",
        encoding="utf-8",
    )

    profile = load_profile({"INGESTION_SURVIVORSHIP_PROFILE_PATH": str(path)})

    assert profile.key == "strict"
    assert [rule.field_name for rule in profile.rules_for("contact")] == ["title", "tags"]
    assert profile.rules_for("account") == ()


@pytest.mark.parametrize(
    "payload",
    [
        {"field_groups": [{"name": "g", "entity_type": "contact", "fields": [{"field_name": "title", "policy": "latest"}]}]},
        {"field_groups": [{"name": "g", "entity_type": "contact", "fields": [{"field_name": "x", "policy": "prefer_new_normalized"}]}]},
        {"field_groups": [{"name": "g", "entity_type": "opportunity", "fields": []}]},
        ["not", "a", "mapping"],
    ],
)
def test_load_profile_rejects_invalid_override(tmp_path, payload):
    path = tmp_path / "survivorship.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(SurvivorshipConfigError):
        load_profile({"INGESTION_SURVIVORSHIP_PROFILE_PATH": str(path)})


def test_load_profile_missing_file(tmp_path):
    with pytest.raises(SurvivorshipConfigError):
        load_profile({"INGESTION_SURVIVORSHIP_PROFILE_PATH": str(tmp_path / "missing.json")})
