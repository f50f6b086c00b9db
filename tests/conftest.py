from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from faker import Faker
from flask_jwt_extended import create_access_token

from entitlements import create_app
from entitlements.billing.gift_tokens import GiftTokenStore
from entitlements.billing.provider import StripeBillingProvider
from entitlements.billing.state_machine import EntitlementManager
from entitlements.extensions import db
from entitlements.models import User

fake = Faker()

NOW = datetime(2026, 3, 1, 12, 0, 0)


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: mark test as exercising HTTP routes and the database together"
    )
    config.addinivalue_line(
        "markers",
        "webhook: mark test as billing-provider webhook related"
    )


@pytest.fixture()
def app():
    """Fresh application and in-memory database per test"""
    app = create_app("testing")

    with app.app_context():
        db.create_all()

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def clock(now):
    return lambda: now


@pytest.fixture()
def provider():
    """Stripe boundary with an active subscription on every customer"""
    provider = MagicMock(spec=StripeBillingProvider)
    provider.find_active_subscription.return_value = {"id": "sub_paid_1", "status": "active"}
    provider.resume_subscription.return_value = NOW + timedelta(days=30)
    provider.list_customers_by_email.return_value = []
    provider.list_subscriptions.return_value = []
    return provider


@pytest.fixture()
def manager(app, provider, clock):
    return EntitlementManager(provider, clock=clock, max_retries=3)


@pytest.fixture()
def store(app, clock):
    return GiftTokenStore(clock=clock)


@pytest.fixture()
def patched_provider(provider):
    """Route-level tests: every manager built from app config gets the mock"""
    with patch("entitlements.billing.state_machine.get_billing_provider", return_value=provider):
        yield provider


@pytest.fixture()
def make_user(app):
    def _make_user(**fields):
        fields.setdefault("username", fake.unique.user_name())
        fields.setdefault("email", fake.unique.email())
        user = User(**fields)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture()
def admin_user(make_user):
    return make_user(role="admin")


@pytest.fixture()
def auth_headers(app):
    def _headers(user):
        token = create_access_token(identity=user.id)
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-Request-ID": fake.uuid4(),
        }

    return _headers
