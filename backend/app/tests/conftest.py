import os

# Settings are read at import time
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BILLING_SCHEDULER_ENABLED"] = "false"
os.environ["ENCRYPTION_KEY"] = "test-encryption-passphrase"

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.core.billing_calendar import utcnow
from app.core.config import Settings
from app.core.container import build_container
from app.core.security import create_token
from app.main import create_app
from app.models import Base, TenantBase, TenantUser
from app.services.tenant_directory import ProjectInput


class FakeGateway:
    name = "fake"

    def __init__(self):
        self.approve = True
        self.calls = []

    def settle(self, invoice_id, method, amount, currency):
        self.calls.append((invoice_id, method, amount, currency))
        return self.approve


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        env="test",
        database_url=f"sqlite:///{tmp_path / 'control.db'}",
        encryption_key="test-encryption-passphrase",
        billing_scheduler_enabled=False,
        billing_workers=1,
        tenant_billing_timeout_seconds=5.0,
        backend_cors_origins="",
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FrozenClock(utcnow())


@pytest.fixture
def container(settings, gateway, clock):
    container = build_container(settings, gateway=gateway)
    Base.metadata.create_all(bind=container.engine)
    container.billing.clock = clock
    yield container
    container.shutdown()


@pytest.fixture
def tenant_db(tmp_path):
    """Create a tenant database file seeded with users and return its URL."""

    def make(name, active=3, inactive=0):
        url = f"sqlite:///{tmp_path / (name + '.db')}"
        if (tmp_path / (name + ".db")).exists():
            return url
        engine = create_engine(url)
        TenantBase.metadata.create_all(engine)
        with Session(engine) as session:
            for i in range(active):
                session.add(TenantUser(user_id=f"{name}-user-{i}", email=f"user{i}@{name}.test", is_active=True))
            for i in range(inactive):
                session.add(TenantUser(user_id=f"{name}-gone-{i}", is_active=False))
            session.commit()
        engine.dispose()
        return url

    return make


def project_input(slug, db_url, domain=None):
    return ProjectInput(
        name=slug.title(),
        slug=slug,
        domain=domain,
        db_connection_string=db_url,
        s3_bucket=f"{slug}-bucket",
        s3_endpoint="http://localhost:9000",
        s3_access_key=f"{slug}-access",
        s3_secret_key=f"{slug}-secret",
    )


@pytest.fixture
def onboard(container, tenant_db):
    """Onboard a project with its own tenant database; returns the Project."""

    def make(slug, users=3, inactive=0, domain=None, owner="owner-1", user_price=Decimal("10.00")):
        url = tenant_db(slug, active=users, inactive=inactive)
        project, _ = container.directory.onboard_project(
            project_input(slug, url, domain=domain), owner, user_price=user_price
        )
        return project

    return make


def auth_headers(user_id="owner-1", role=None, extra=None):
    token = create_token(user_id, expires_minutes=30, role=role)
    headers = {"Authorization": f"Bearer {token}"}
    headers.update(extra or {})
    return headers


@pytest.fixture
def client(container):
    return TestClient(create_app(container))


@pytest.fixture
def auth():
    return auth_headers


@pytest.fixture
def make_input(tenant_db):
    def make(slug, domain=None, users=3):
        return project_input(slug, tenant_db(slug, active=users), domain=domain)

    return make
