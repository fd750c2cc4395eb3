"""
Shared fixtures for all tests.

Each test gets its own SQLite file so API requests (their own sessions,
sometimes their own threads) and the test's session see the same data.
"""
import os

# Settings are read when rxflow.core.database is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ.pop("REDIS_URL", None)
os.environ.pop("PHARMACY_API_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rxflow.core.database import get_db, get_session_factory
from rxflow.main import app
from rxflow.models.base import Base
from rxflow.models import registry  # noqa: F401
from rxflow.models.user import RoleName
from tests.factories import (
    ALL_FACTORIES,
    ClinicFactory,
    PatientFactory,
    ProviderFactory,
    RoutingConfigFactory,
    UserFactory,
)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'rxflow-test.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    for factory_cls in ALL_FACTORIES:
        factory_cls._meta.sqlalchemy_session = session
    yield session
    for factory_cls in ALL_FACTORIES:
        factory_cls._meta.sqlalchemy_session = None
    session.close()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def client(session_factory, db):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Tenants and actors
# ---------------------------------------------------------------------------

@pytest.fixture
def clinic(db):
    return ClinicFactory()


@pytest.fixture
def other_clinic(db):
    return ClinicFactory()


@pytest.fixture
def admin(clinic):
    return UserFactory(clinic_id=clinic.id, role=RoleName.ADMIN)


@pytest.fixture
def staff(clinic):
    return UserFactory(clinic_id=clinic.id, role=RoleName.STAFF)


@pytest.fixture
def super_admin(db):
    return UserFactory(clinic_id=None, role=RoleName.SUPER_ADMIN)


@pytest.fixture
def other_admin(other_clinic):
    return UserFactory(clinic_id=other_clinic.id, role=RoleName.ADMIN)


@pytest.fixture
def provider(clinic):
    return ProviderFactory(clinic_id=clinic.id, license_states=["CA", "NV"])


@pytest.fixture
def provider_user(provider):
    return UserFactory(clinic_id=provider.clinic_id, role=RoleName.PROVIDER, provider_id=provider.id)


@pytest.fixture
def second_provider(clinic):
    return ProviderFactory(clinic_id=clinic.id, license_states=["CA"])


@pytest.fixture
def second_provider_user(second_provider):
    return UserFactory(clinic_id=second_provider.clinic_id, role=RoleName.PROVIDER, provider_id=second_provider.id)


@pytest.fixture
def patient(clinic):
    return PatientFactory(clinic_id=clinic.id, state="CA")


@pytest.fixture
def routing_enabled(clinic):
    return RoutingConfigFactory(clinic_id=clinic.id)
