import copy
import os

# Point the app at an in-memory database before any ledgersync import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("XERO_CLIENT_ID", "test-client-id")
os.environ.setdefault("XERO_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("XERO_REDIRECT_URI", "http://localhost:8000/api/xero/callback")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledgersync.config_manager import DEFAULT_CONFIG, SyncConfig
from ledgersync.core.models import Base, Customer, Supplier
from tests.fakes import FakeXeroClient


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sync_config():
    data = copy.deepcopy(DEFAULT_CONFIG)
    data["global_settings"]["default_bank_account_code"] = "090"
    return SyncConfig(data)


@pytest.fixture
def xero():
    return FakeXeroClient()


@pytest.fixture
def customer(session):
    """A local customer that has not been linked to Xero yet."""
    record = Customer(
        name="Acme Construction",
        email="accounts@acme.sg",
        phone="6123 4567",
        city="Singapore",
        customer_number="CUST-00001",
    )
    session.add(record)
    session.commit()
    return record


@pytest.fixture
def supplier(session):
    record = Supplier(name="Steel Works", email="billing@steel.sg", supplier_number="SUP-00001")
    session.add(record)
    session.commit()
    return record
