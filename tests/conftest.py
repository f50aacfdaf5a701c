"""Shared test fixtures."""

import os

os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("METRICS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from service_integrity.auth.security import create_access_token, get_password_hash
from service_integrity.db import Base, get_db, make_engine
from service_integrity.main import create_app
from service_integrity.models.models import User
from service_integrity.schemas.services import ServiceCreate
from service_integrity.services.capabilities import Actor, parse_role
from service_integrity.services.container import build_components
from service_integrity.services.notifications import NotificationDispatcher
from service_integrity.services.security_audit import SecurityAuditService


PASSWORD = "Sup3r-secret!pass"


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.calls = []
        self.fail = False

    def on_status_change(self, service, old, new):
        if self.fail:
            raise ConnectionError("SMTP unreachable")
        self.calls.append((service.id, old, new))


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}", busy_timeout=1.0)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def components(dispatcher):
    return build_components(
        dispatcher=dispatcher,
        security_audit=SecurityAuditService(storage_uri="memory://"),
        integrity_secret="test-integrity-secret",
    )


@pytest.fixture
def users(db):
    """admin, two technicians (technician ids 5 and 7), a business partner and a customer."""
    password_hash = get_password_hash(PASSWORD)
    rows = {
        "admin": User(username="admin", full_name="Admin User", role="admin"),
        "tech5": User(username="tech5", full_name="Tech Five", role="technician", technician_id=5),
        "tech7": User(username="tech7", full_name="Tech Seven", role="technician", technician_id=7),
        "partner": User(username="partner", full_name="Partner Co", role="business_partner", company_name="Partner Co"),
        "customer": User(username="customer", full_name="Jane Customer", role="customer"),
    }
    for user in rows.values():
        user.password_hash = password_hash
        user.is_active = True
        db.add(user)
    db.commit()
    return rows


def actor_for(user: User, ip: str = "10.0.0.1") -> Actor:
    return Actor(
        user_id=user.id,
        username=user.username,
        role=parse_role(user.role),
        technician_id=user.technician_id,
        ip_address=ip,
        user_agent="pytest",
    )


@pytest.fixture
def actors(users):
    return {name: actor_for(user) for name, user in users.items()}


@pytest.fixture
def make_service(db, components, actors):
    """Create a service through the lifecycle; admin by default."""
    def _make(by="admin", **overrides):
        data = {
            "client_id": 1,
            "appliance_id": 1,
            "description": "Washing machine does not spin",
            "warranty_status": "u garanciji",
        }
        data.update(overrides)
        return components.lifecycle.create(db, actors[by], ServiceCreate(**data))

    return _make


@pytest.fixture
def client(session_factory, components):
    app = create_app(components)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}
