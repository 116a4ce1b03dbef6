import os
from unittest.mock import Mock

# Force the in-memory SQLite fallback before any application module builds its engine
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from farmers_service.db.models import Base
from farmers_service.services.bulk_farmer_service import BulkFarmerService, Requester
from farmers_service.utils.bulk_settings import BulkSettings, refresh_settings_cache
from farmers_service.workers.async_bulk_operations import AsyncBulkOperationsManager

from tests.fakes import FakeFarmerCreator, FakePermissionChecker


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    refresh_settings_cache()
    yield
    refresh_settings_cache()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def bulk_settings():
    return BulkSettings(
        max_concurrency=4,
        chunk_size=10,
        max_records=1000,
        max_sync_records=100,
        max_attempts=3,
        retry_backoff_seconds=0.0,
        record_timeout_seconds=2.0,
        status_url_prefix="/bulk/operations",
        lease_seconds=30.0,
        # check the stored cancel flag before every dispatch
        cancel_poll_seconds=0.0,
    )


@pytest.fixture
def permission_checker():
    return FakePermissionChecker()


@pytest.fixture
def farmer_creator():
    return FakeFarmerCreator()


@pytest.fixture
def manager():
    return AsyncBulkOperationsManager()


@pytest.fixture
def notifier():
    return Mock(return_value=True)


@pytest.fixture
def requester():
    return Requester(user_id="user-1", org_id="org-1")


@pytest.fixture
def make_service(db_session, session_factory, bulk_settings, manager, permission_checker, farmer_creator, notifier):
    def _make(**overrides) -> BulkFarmerService:
        kwargs = dict(
            permission_checker=permission_checker,
            farmer_creator=farmer_creator,
            session_factory=session_factory,
            settings=bulk_settings,
            manager=manager,
            notifier=notifier,
        )
        kwargs.update(overrides)
        return BulkFarmerService(db_session, **kwargs)
    return _make


@pytest.fixture
def service(make_service):
    return make_service()
