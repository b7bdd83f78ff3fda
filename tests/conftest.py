"""
Shared pytest fixtures.

Stripe calls are patched per test with unittest.mock; the database is the
in-memory FakeSupabase from fakes.py.
"""

import pytest

from fakes import FakeSupabase
from marketplace_payments.config import Settings
from marketplace_payments.database.models import AuthenticatedUser


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        frontend_url="https://app.example.com",
        rate_limit_enabled=False,
    )


@pytest.fixture
def buyer():
    return AuthenticatedUser(id="user-buyer", email="buyer@example.com")


@pytest.fixture
def seller():
    return AuthenticatedUser(id="user-seller", email="seller@example.com")

