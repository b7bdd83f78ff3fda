from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from supabase import AuthError

from fakes import stripe_object
from marketplace_payments.database.models import (
    PaymentOption,
    SubscriptionData,
    PAYMENT_METHODS_TABLE,
    PLANS_TABLE,
    PROFILES_TABLE,
    TRANSACTIONS_TABLE,
    USER_SUBSCRIPTIONS_TABLE,
)
from marketplace_payments.payments.errors import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    PaymentValidationError,
)
from marketplace_payments.payments.subscriptions import SubscriptionCheckout, activate_one_time_purchase, is_current

PERIOD_START = 1704067200  # 2024-01-01
PERIOD_END = 1706745600    # 2024-02-01


@pytest.fixture
def plans(db):
    return db.seed(
        PLANS_TABLE,
        {"id": "plan-pro", "name": "Pro", "stripe_price_id": "price_pro", "price_amount": 2900,
         "price_currency": "usd", "billing_interval": "month", "is_active": True},
        {"id": "plan-max", "name": "Max", "stripe_price_id": "price_max", "price_amount": 9900,
         "price_currency": "usd", "billing_interval": "month", "is_active": True},
        {"id": "plan-day", "name": "Day pass", "stripe_price_id": "price_day", "price_amount": 500,
         "price_currency": "usd", "billing_interval": "one_time", "is_active": True},
        {"id": "plan-legacy", "name": "Legacy", "stripe_price_id": "price_old", "price_amount": 1000,
         "price_currency": "usd", "billing_interval": "month", "is_active": False},
    )


@pytest.fixture
def customer(db, buyer):
    db.seed(PROFILES_TABLE, {"id": buyer.id, "email": buyer.email, "stripe_customer_id": "cus_buyer"})


def recurring(status="incomplete", pi_status="requires_payment_method"):
    return stripe_object(
        id="sub_123",
        status=status,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        cancel_at_period_end=False,
        latest_invoice={"id": "in_1", "payment_intent": {"client_secret": "pi_sub_secret", "status": pi_status}},
    )


def profile(db, user_id):
    return next(r for r in db.rows(PROFILES_TABLE) if r["id"] == user_id)


@patch("stripe.Subscription.create")
@patch("stripe.Customer.create")
def test_recurring_without_card_is_default_incomplete(mock_customer, mock_sub, db, settings, buyer, plans):
    mock_customer.return_value = stripe_object(id="cus_new")
    mock_sub.return_value = recurring()

    result = SubscriptionCheckout(db, settings).create_subscription(buyer, SubscriptionData(plan_id="plan-pro"))

    params = mock_sub.call_args.kwargs
    assert params["customer"] == "cus_new"
    assert params["items"] == [{"price": "price_pro"}]
    assert params["payment_behavior"] == "default_incomplete"
    assert params["payment_settings"] == {"save_default_payment_method": "off"}
    assert "default_payment_method" not in params

    assert result["client_secret"] == "pi_sub_secret"
    assert result["requires_action"] is False

    row = db.rows(USER_SUBSCRIPTIONS_TABLE)[0]
    assert row["stripe_subscription_id"] == "sub_123"
    assert row["type"] == "recurring"
    assert row["current_period_start"].startswith("2024-01-01")
    assert profile(db, buyer.id)["merchant_status"] == "plan_pending"


@patch("stripe.Subscription.create")
def test_express_subscription_charges_default_card(mock_sub, db, settings, buyer, plans, customer):
    db.seed(PAYMENT_METHODS_TABLE, {"user_id": buyer.id, "stripe_payment_method_id": "pm_default", "is_default": True})
    mock_sub.return_value = recurring(status="active", pi_status="succeeded")

    data = SubscriptionData(plan_id="plan-pro", payment_option=PaymentOption.EXPRESS)
    result = SubscriptionCheckout(db, settings).create_subscription(buyer, data)

    params = mock_sub.call_args.kwargs
    assert params["default_payment_method"] == "pm_default"
    assert params["payment_behavior"] == "allow_incomplete"
    assert params["payment_settings"] == {"save_default_payment_method": "on_subscription"}
    assert result["status"] == "active"

    stored = profile(db, buyer.id)
    assert stored["merchant_status"] == "plan_purchased"
    assert stored["subscription_status"] == "active"
    assert stored["current_plan_id"] == "plan-pro"


@patch("stripe.Subscription.create")
def test_active_subscription_blocks_second_purchase(mock_sub, db, settings, buyer, plans, customer):
    db.seed(USER_SUBSCRIPTIONS_TABLE, {"user_id": buyer.id, "plan_id": "plan-pro", "status": "active", "type": "recurring"})

    with pytest.raises(ConflictError, match="already has an active subscription"):
        SubscriptionCheckout(db, settings).create_subscription(buyer, SubscriptionData(plan_id="plan-max"))

    mock_sub.assert_not_called()


@patch("stripe.Subscription.create")
def test_expired_one_time_grant_does_not_block(mock_sub, db, settings, buyer, plans, customer):
    expired = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": buyer.id, "plan_id": "plan-day", "status": "active", "type": "one_time", "expires_at": expired,
    })
    mock_sub.return_value = recurring()

    SubscriptionCheckout(db, settings).create_subscription(buyer, SubscriptionData(plan_id="plan-pro"))

    mock_sub.assert_called_once()


def test_plan_lookup_errors(db, settings, buyer, plans):
    checkout = SubscriptionCheckout(db, settings)

    with pytest.raises(PaymentValidationError, match='"plan-legacy" exists but is not active'):
        checkout.create_subscription(buyer, SubscriptionData(plan_id="plan-legacy"))
    with pytest.raises(NotFoundError, match='"plan-missing" not found'):
        checkout.create_subscription(buyer, SubscriptionData(plan_id="plan-missing"))


@patch("stripe.Subscription.cancel")
@patch("stripe.Subscription.create")
def test_failed_insert_cancels_stripe_subscription(mock_sub, mock_cancel, db, settings, buyer, plans, customer):
    mock_sub.return_value = recurring()
    db.fail(USER_SUBSCRIPTIONS_TABLE, "insert")

    with pytest.raises(DatabaseError):
        SubscriptionCheckout(db, settings).create_subscription(buyer, SubscriptionData(plan_id="plan-pro"))

    mock_cancel.assert_called_once_with("sub_123")


@patch("stripe.PaymentIntent.create")
def test_one_time_purchase_uses_payment_sheet(mock_intent, db, settings, buyer, plans, customer):
    db.seed(PAYMENT_METHODS_TABLE, {"user_id": buyer.id, "stripe_payment_method_id": "pm_default", "is_default": True})
    mock_intent.return_value = stripe_object(id="pi_day", client_secret="pi_day_secret", status="requires_payment_method")

    data = SubscriptionData(plan_id="plan-day", payment_option=PaymentOption.ONE_TIME)
    before = datetime.now(timezone.utc)
    result = SubscriptionCheckout(db, settings).create_subscription(buyer, data)

    params = mock_intent.call_args.kwargs
    assert params["amount"] == 500
    assert "payment_method" not in params
    assert "setup_future_usage" not in params
    assert result["client_secret"] == "pi_day_secret"
    assert result["type"] == "one_time"

    row = db.rows(USER_SUBSCRIPTIONS_TABLE)[0]
    assert row["status"] == "pending"
    expires_at = datetime.fromisoformat(row["expires_at"])
    assert timedelta(hours=23, minutes=59) < expires_at - before <= timedelta(hours=24, minutes=1)

    transaction = db.rows(TRANSACTIONS_TABLE)[0]
    assert transaction["transaction_type"] == "subscription"
    assert profile(db, buyer.id)["merchant_status"] == "plan_pending"


@patch("stripe.PaymentIntent.retrieve")
def test_status_activates_paid_one_time_purchase(mock_retrieve, db, settings, buyer, plans, customer):
    expires = (datetime.now(timezone.utc) + timedelta(hours=20)).isoformat()
    db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": buyer.id, "plan_id": "plan-day", "status": "pending", "type": "one_time",
        "stripe_payment_intent_id": "pi_day", "expires_at": expires,
    })
    mock_retrieve.return_value = stripe_object(id="pi_day", status="succeeded")

    result = SubscriptionCheckout(db, settings).get_subscription_status(buyer)

    assert result["has_subscription"] is True
    assert result["subscription"]["status"] == "active"
    assert result["subscription"]["plan"]["name"] == "Day pass"
    assert db.rows(USER_SUBSCRIPTIONS_TABLE)[0]["status"] == "active"
    assert profile(db, buyer.id)["merchant_status"] == "plan_purchased"
    assert db.auth.admin.updates[0][0] == buyer.id


def test_status_expires_lapsed_one_time_purchase(db, settings, buyer, plans, customer):
    lapsed = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
    db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": buyer.id, "plan_id": "plan-day", "status": "active", "type": "one_time", "expires_at": lapsed,
    })

    result = SubscriptionCheckout(db, settings).get_subscription_status(buyer)

    assert result["subscription"]["status"] == "expired"
    assert db.rows(USER_SUBSCRIPTIONS_TABLE)[0]["status"] == "expired"


@patch("stripe.Subscription.retrieve")
def test_status_reconciles_recurring_with_stripe(mock_retrieve, db, settings, buyer, plans, customer):
    db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": buyer.id, "plan_id": "plan-pro", "status": "incomplete", "type": "recurring",
        "stripe_subscription_id": "sub_123",
    })
    mock_retrieve.return_value = recurring(status="active")

    result = SubscriptionCheckout(db, settings).get_subscription_status(buyer)

    assert result["subscription"]["status"] == "active"
    assert db.rows(USER_SUBSCRIPTIONS_TABLE)[0]["status"] == "active"
    assert profile(db, buyer.id)["subscription_status"] == "active"


def test_status_without_subscription(db, settings, buyer):
    result = SubscriptionCheckout(db, settings).get_subscription_status(buyer)
    assert result == {"success": True, "has_subscription": False, "subscription": None}


@patch("stripe.Subscription.modify")
def test_cancel_at_period_end(mock_modify, db, settings, buyer, plans):
    db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": buyer.id, "plan_id": "plan-pro", "status": "active", "type": "recurring",
        "stripe_subscription_id": "sub_123",
    })
    mock_modify.return_value = recurring(status="active")

    result = SubscriptionCheckout(db, settings).cancel_subscription(buyer)

    mock_modify.assert_called_once_with("sub_123", cancel_at_period_end=True)
    assert result["period_end"].startswith("2024-02-01")
    assert db.rows(USER_SUBSCRIPTIONS_TABLE)[0]["cancel_at_period_end"] is True


def test_cancel_without_subscription(db, settings, buyer):
    with pytest.raises(NotFoundError):
        SubscriptionCheckout(db, settings).cancel_subscription(buyer)


@patch("stripe.Subscription.modify")
@patch("stripe.Subscription.retrieve")
def test_update_swaps_price_with_prorations(mock_retrieve, mock_modify, db, settings, buyer, plans, customer):
    db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": buyer.id, "plan_id": "plan-pro", "status": "active", "type": "recurring",
        "stripe_subscription_id": "sub_123",
    })
    mock_retrieve.return_value = stripe_object(id="sub_123", items={"data": [{"id": "si_1"}]})
    checkout = SubscriptionCheckout(db, settings)

    with pytest.raises(PaymentValidationError, match="Already subscribed"):
        checkout.update_subscription(buyer, SubscriptionData(new_plan_id="plan-pro"))

    result = checkout.update_subscription(buyer, SubscriptionData(new_plan_id="plan-max"))

    mock_modify.assert_called_once_with(
        "sub_123",
        items=[{"id": "si_1", "price": "price_max"}],
        proration_behavior="create_prorations",
    )
    assert result["new_plan"] == "Max"
    assert db.rows(USER_SUBSCRIPTIONS_TABLE)[0]["plan_id"] == "plan-max"
    assert profile(db, buyer.id)["current_plan_id"] == "plan-max"


@patch("stripe.Invoice.create_preview")
def test_preview_requires_customer(mock_preview, db, settings, buyer, plans):
    with pytest.raises(PaymentValidationError):
        SubscriptionCheckout(db, settings).preview_subscription(buyer, SubscriptionData(plan_id="plan-pro"))
    mock_preview.assert_not_called()


@patch("stripe.Invoice.create_preview")
def test_preview_amounts(mock_preview, db, settings, buyer, plans, customer):
    mock_preview.return_value = stripe_object(
        amount_due=2900, currency="usd", tax=0, total=2900, subtotal=2900,
        period_start=PERIOD_START, period_end=PERIOD_END,
    )

    result = SubscriptionCheckout(db, settings).preview_subscription(buyer, SubscriptionData(plan_id="plan-pro"))

    assert result["preview"]["amount_due"] == 2900
    assert mock_preview.call_args.kwargs["subscription_details"] == {"items": [{"price": "price_pro"}]}


def test_is_current():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert is_current({"status": "active"}, now)
    assert is_current({"status": "active", "expires_at": "2024-06-02T00:00:00+00:00"}, now)
    assert not is_current({"status": "active", "expires_at": "2024-05-31T00:00:00+00:00"}, now)
    assert not is_current({"status": "pending"}, now)


def pending_purchase(db, user_id):
    return db.seed(USER_SUBSCRIPTIONS_TABLE, {
        "user_id": user_id, "plan_id": "plan-day", "status": "pending", "type": "one_time",
        "stripe_payment_intent_id": "pi_day",
    })[0]


def test_activation_survives_auth_metadata_failure(db, buyer, customer):
    purchase = pending_purchase(db, buyer.id)
    db.auth.admin.error = AuthError("User not found", None)

    activated = activate_one_time_purchase(db, purchase)

    assert activated["status"] == "active"
    assert profile(db, buyer.id)["merchant_status"] == "plan_purchased"


def test_activation_propagates_unexpected_errors(db, buyer, customer):
    purchase = pending_purchase(db, buyer.id)
    db.auth.admin.error = TypeError("bad attributes")

    with pytest.raises(TypeError):
        activate_one_time_purchase(db, purchase)
