# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from crm_app.ingestion.pipeline.survivorship import resolve_profile  # noqa: E402
from crm_app.models import Account, Contact, Dataset, db  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Flask app bound to the in-memory test database, rebuilt per test"""
    flask_app.config.update(
        {
            "TESTING": True,
            "INGESTION_ENABLED": True,
            "INGESTION_WORKER_ENABLED": False,
            "INGESTION_SURVIVORSHIP_PROFILE_PATH": None,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
        }
    )
    resolve_profile.cache_clear()

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def dataset():
    record = Dataset(name="Q3 Outbound")
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def make_dataset():
    def _make(name="Campaign", **eligibility_config):
        record = Dataset(name=name, eligibility_config=eligibility_config or None)
        db.session.add(record)
        db.session.commit()
        return record

    return _make


@pytest.fixture
def make_account():
    def _make(name="Acme", domain="acme.com", **fields):
        from crm_app.ingestion.pipeline.normalize import normalize_company_key, normalize_domain

        account = Account(
            name=name,
            name_normalized=normalize_company_key(name),
            domain=domain,
            domain_normalized=normalize_domain(domain),
            **fields,
        )
        db.session.add(account)
        db.session.commit()
        return account

    return _make


@pytest.fixture
def make_contact():
    def _make(dataset, email="jane@acme.com", full_name="Jane Doe", **fields):
        fields.setdefault("contact_country", "United States")
        contact = Contact(
            dataset_id=dataset.id,
            full_name=full_name,
            email=email,
            email_normalized=email.strip().lower() if email else None,
            **fields,
        )
        db.session.add(contact)
        db.session.commit()
        return contact

    return _make
