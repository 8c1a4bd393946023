"""
Shared fixtures: a fresh SQLite database per test and small row factories.
"""
import os
import tempfile

# Must be set before shiptrack.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.gettempdir(), "shiptrack_test_app.db")
os.environ["ENABLE_BACKGROUND_WORKERS"] = "false"
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-shiptrack")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shiptrack.database import Base
from shiptrack.models import (
    Store, Shipment, StatusMapping, UtilitySetting, LifecycleClass, StoreStatus,
)
from shiptrack.services.credentials import encrypt_token


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tracking.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_store(db_session):
    def _make(account_code="STORE1", token="shipway-token", status=StoreStatus.ACTIVE.value):
        store = Store(
            account_code=account_code,
            name=f"Store {account_code}",
            status=status,
            auth_token_encrypted=encrypt_token(token) if token else None,
        )
        db_session.add(store)
        db_session.commit()
        return store

    return _make


@pytest.fixture
def make_shipment(db_session):
    def _make(
        order_id="ORD1",
        account_code="STORE1",
        awb="AWB1",
        status=None,
        lifecycle=LifecycleClass.ACTIVE.value,
        is_handover=False,
        handover_at=None,
        carrier_id="CARRIER1",
    ):
        shipment = Shipment(
            order_id=order_id,
            account_code=account_code,
            awb=awb,
            carrier_id=carrier_id,
            current_shipment_status=status,
            lifecycle=lifecycle,
            is_handover=is_handover,
            handover_at=handover_at,
        )
        db_session.add(shipment)
        db_session.commit()
        return shipment

    return _make


@pytest.fixture
def make_mapping(db_session):
    def _make(raw_status, renamed, is_handover=False, is_return=None):
        mapping = StatusMapping(raw_status=raw_status, renamed=renamed, is_handover=is_handover, is_return=is_return)
        db_session.add(mapping)
        db_session.commit()
        return mapping

    return _make


@pytest.fixture
def set_utility(db_session):
    def _set(key, value):
        db_session.add(UtilitySetting(key=key, value=value))
        db_session.commit()

    return _set


class RecordingSleep:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
