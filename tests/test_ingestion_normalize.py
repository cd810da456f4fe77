import pytest

from crm_app.ingestion.pipeline.normalize import (
    company_name_from_domain,
    compute_name_company_hash,
    email_domain,
    is_personal_domain,
    normalize_company_key,
    normalize_country_key,
    normalize_domain,
    normalize_email,
    normalize_email_status,
    normalize_name,
    normalize_phone_e164,
    split_list,
)
from crm_app.models import EmailStatus


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://www.Acme.com/about?ref=1", "acme.com"),
        ("acme.com", "acme.com"),
        ("jane@sub.acme.co.uk", "acme.co.uk"),
        ("mail.globex.io:8080", "globex.io"),
        ("gmail.com", None),
        ("example.com", None),
        ("not a domain", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_domain(raw, expected):
    assert normalize_domain(raw) == expected


def test_normalize_domain_is_idempotent():
    once = normalize_domain("http://WWW.Initech.com/")
    assert normalize_domain(once) == once == "initech.com"


def test_email_helpers():
    assert normalize_email("  Jane.Doe@Acme.COM ") == "jane.doe@acme.com"
    assert normalize_email("   ") is None
    assert email_domain("Jane@Acme.com") == "acme.com"
    assert email_domain("no-at-sign") is None
    assert is_personal_domain("GMAIL.com")
    assert not is_personal_domain("acme.com")


def test_company_key_drops_legal_suffixes_and_articles():
    assert normalize_company_key("The Acme Corp., Inc.") == "acme"
    assert normalize_company_key("Acme") == "acme"
    assert normalize_company_key("Globex   Holdings Group") == "globex"
    # A lone suffix-like word is kept rather than producing an empty key.
    assert normalize_company_key("Company") == "company"
    assert normalize_company_key(None) is None


def test_name_and_country_keys():
    assert normalize_name("  Jane   DOE ") == "jane doe"
    assert normalize_country_key("U.S.A.") == "usa"
    assert normalize_country_key(" United  Kingdom ") == "united kingdom"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(415) 555-0101", "+14155550101"),
        ("1-415-555-0101", "+14155550101"),
        ("415-555-0101 ext. 22", "+14155550101"),
        ("+44 20 7946 0958", "+442079460958"),
        ("0044 20 7946 0958", "+442079460958"),
        ("+14155550101", "+14155550101"),
        ("555-0101", None),
        ("call me", None),
        (None, None),
    ],
)
def test_normalize_phone_e164(raw, expected):
    assert normalize_phone_e164(raw) == expected


def test_name_company_hash_requires_both_parts():
    expected = compute_name_company_hash("Jane Doe", "Acme Inc")
    assert expected is not None
    assert compute_name_company_hash("  jane   doe ", "ACME") == expected
    assert compute_name_company_hash("Jane Doe", None) is None
    assert compute_name_company_hash(None, "Acme") is None


def test_company_name_from_domain():
    assert company_name_from_domain("acme.co.uk") == "Acme"
    assert company_name_from_domain("https://www.initech.com") == "Initech"
    assert company_name_from_domain("gmail.com") is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Valid", EmailStatus.OK),
        ("ok", EmailStatus.OK),
        ("catch-all", EmailStatus.ACCEPT_ALL),
        ("Accept All", EmailStatus.ACCEPT_ALL),
        ("UNDELIVERABLE", EmailStatus.INVALID),
        ("disposable", EmailStatus.DISPOSABLE),
        ("something new", EmailStatus.UNKNOWN),
        (None, EmailStatus.UNKNOWN),
    ],
)
def test_normalize_email_status(raw, expected):
    assert normalize_email_status(raw) is expected


def test_split_list_dedupes_and_trims():
    assert split_list("a; b | c, a") == ["a", "b", "c"]
    assert split_list(["x", " x ", "", None, "y"]) == ["x", "y"]
    assert split_list(None) == []
