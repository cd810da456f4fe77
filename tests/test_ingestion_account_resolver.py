from crm_app.ingestion.pipeline.account_resolver import (
    AccountQuery,
    AccountResolutionCache,
    AccountResolver,
    score_account_match,
)
from crm_app.models import Account, db


def test_exact_domain_match(make_account):
    account = make_account()
    resolver = AccountResolver(db.session)

    resolution = resolver.resolve(AccountQuery(domain="https://www.acme.com"))

    assert resolution.account_id == account.id
    assert resolution.match_type == "exact"
    assert resolution.confidence == 1.0
    assert resolution.created is False


def test_cache_returns_same_account_within_a_job(make_account):
    account = make_account()
    cache = AccountResolutionCache()
    resolver = AccountResolver(db.session, cache)

    first = resolver.resolve(AccountQuery(domain="acme.com"))
    second = resolver.resolve(AccountQuery(domain="www.acme.com", company_name="Something Else"))

    assert first.account_id == second.account_id == account.id
    assert cache.hits == 1
    assert "domain:acme.com" in cache


def test_fuzzy_match_on_company_label(make_account):
    account = make_account(name="Initech", domain="initech.com")
    resolver = AccountResolver(db.session)

    resolution = resolver.resolve(AccountQuery(domain="initech.io"))

    assert resolution.account_id == account.id
    assert resolution.match_type == "fuzzy"
    assert resolution.confidence == 1.0


def test_unmatched_query_creates_account():
    resolver = AccountResolver(db.session)

    resolution = resolver.resolve(AccountQuery(domain="newco.com", company_name="NewCo", hq_city="Austin"))

    assert resolution.created is True
    assert resolution.match_type == "created"
    account = db.session.get(Account, resolution.account_id)
    assert account.name == "NewCo"
    assert account.domain_normalized == "newco.com"
    assert account.hq_city == "Austin"


def test_created_account_is_reused_for_following_rows():
    cache = AccountResolutionCache()
    resolver = AccountResolver(db.session, cache)

    first = resolver.resolve(AccountQuery(company_name="Globex Corp"))
    second = resolver.resolve(AccountQuery(company_name="Globex"))

    assert first.created is True
    assert second.created is False
    assert second.account_id == first.account_id
    assert db.session.query(Account).count() == 1


def test_query_without_signals_resolves_to_nothing():
    resolution = AccountResolver(db.session).resolve(AccountQuery())

    assert resolution.account_id is None
    assert resolution.match_type == "none"
    assert db.session.query(Account).count() == 0


def test_score_account_match(make_account):
    account = make_account(name="Acme Corporation", domain="acme.com")

    assert score_account_match("acme.com", None, account).match_type == "exact"
    assert score_account_match(None, "ACME Inc.", account).match_type == "exact"
    assert score_account_match("umbrella.com", "Umbrella", account).match_type == "none"
