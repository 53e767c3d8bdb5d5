"""
Shared fixtures: an in-memory SQLite database per test, tenant/user/order
factories, signed webhook payloads and an API client wired to the test DB.
"""
import os

# Settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["BILLING_ALERT_EMAIL"] = "ops@perdexa.test"
os.environ.pop("BREVO_API_KEY", None)
os.environ.pop("PRICE_PLAN_MAP", None)

import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import perdexa.models  # noqa: F401
from perdexa.core.rate_limit import reset_rate_limits
from perdexa.core.security import create_access_token
from perdexa.db.session import Base, get_db
from perdexa.main import app
from perdexa.models import Order, Tenant, User
from perdexa.services.order_totals import OrderTotals

WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_tenant(db_session: Session):
    def _make(name: str = "Atelier Perde") -> Tenant:
        tenant = Tenant(name=name)
        db_session.add(tenant)
        db_session.commit()
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant) -> Tenant:
    return make_tenant()


@pytest.fixture
def other_tenant(make_tenant) -> Tenant:
    return make_tenant("Other Shop")


@pytest.fixture
def user(db_session: Session, tenant: Tenant) -> User:
    user = User(tenant_id=tenant.id, email="shop@perdexa.test", name="Shop Owner")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def admin_user(db_session: Session) -> User:
    admin = User(email="admin@perdexa.test", name="Billing Admin", is_admin=True)
    db_session.add(admin)
    db_session.commit()
    return admin


@pytest.fixture
def make_order(db_session: Session):
    """Order with a single line whose subtotal equals ``net_total``."""
    def _make(tenant: Tenant, net_total: str = "1000.00") -> Order:
        return OrderTotals(db_session).create_order(
            tenant.id,
            [{"qty": 1, "width": 100, "height": 250, "unit_price": Decimal(net_total), "file_density": 1}],
        )
    return _make


@pytest.fixture
def order(make_order, tenant) -> Order:
    return make_order(tenant)


# =============================================================================
# Auth / webhooks
# =============================================================================

def token_for(user: User, **claims) -> str:
    data = {"sub": user.email, "user_id": str(user.id), "is_admin": bool(user.is_admin)}
    if user.tenant_id:
        data["tenant_id"] = str(user.tenant_id)
    data.update(claims)
    return create_access_token(data, expires_delta=timedelta(minutes=30))


def auth_headers(user: User, **claims) -> dict:
    return {"Authorization": f"Bearer {token_for(user, **claims)}"}


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a ``stripe-signature`` header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    })


@pytest.fixture
def webhook_delivery():
    """(body, signature header) for a Stripe event carrying ``obj``."""
    def _deliver(event_type: str, obj: dict, event_id: str = "evt_test_1", secret: str = WEBHOOK_SECRET):
        payload = stripe_event(event_type, obj, event_id=event_id)
        return payload.encode("utf-8"), sign_payload(payload, secret=secret)
    return _deliver


@pytest.fixture
def admin_headers(admin_user) -> dict:
    return auth_headers(admin_user)


@pytest.fixture
def user_headers(user) -> dict:
    return auth_headers(user)


@pytest.fixture
def client(session_factory) -> Generator[TestClient, None, None]:
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
