"""
Merchant plan checkout.

A plan can be bought two ways:

- recurring: a Stripe Subscription on the plan's price, optionally charged
  to a saved card straight away
- one-time: a single PaymentIntent that grants access until an expiry
  derived from the plan's billing interval

Both are recorded in pg_user_subscriptions and mirrored onto the profile.
Status reads reconcile the local row against Stripe.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import stripe
from postgrest.exceptions import APIError
from supabase import AuthError, Client

from .amounts import grant_expiry
from .customers import get_or_create_customer, get_profile, USER_ID_METADATA_KEY
from .errors import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    PaymentValidationError,
)
from .payment_methods import PaymentMethodResolver
from .transactions import cancel_intent_after_failure, record_transaction
from ..config import Settings
from ..database.client import first_row, rows
from ..database.models import (
    AuthenticatedUser,
    MerchantPlan,
    MerchantStatus,
    PaymentOption,
    SubscriptionData,
    SubscriptionStatus,
    SubscriptionType,
    Transaction,
    TransactionType,
    UserSubscription,
    PLANS_TABLE,
    PROFILES_TABLE,
    USER_SUBSCRIPTIONS_TABLE,
)

logger = logging.getLogger(__name__)

# Values allowed in pg_profiles.subscription_status
PROFILE_SUBSCRIPTION_STATUSES = {"active", "past_due", "canceled", "unpaid"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(value: Optional[int]) -> Optional[str]:
    """Stripe epoch seconds to an ISO-8601 string."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc).isoformat()


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def profile_subscription_status(stripe_status: str) -> str:
    if stripe_status == "trialing":
        return "active"
    return stripe_status if stripe_status in PROFILE_SUBSCRIPTION_STATUSES else "none"


def is_current(subscription: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """An active row counts unless its one-time grant has run out."""
    if subscription.get("status") != SubscriptionStatus.ACTIVE.value:
        return False
    expires_at = parse_datetime(subscription.get("expires_at"))
    return expires_at is None or expires_at > (now or utc_now())


def update_profile(supabase: Client, user_id: str, values: Dict[str, Any]) -> None:
    values = {**values, "updated_at": utc_now().isoformat()}
    supabase.table(PROFILES_TABLE).update(values).eq("id", user_id).execute()


def activate_one_time_purchase(supabase: Client, subscription: Dict[str, Any]) -> Dict[str, Any]:
    """Mark a paid one-time purchase active and grant merchant access on the profile."""
    now = utc_now()
    changes = {"status": SubscriptionStatus.ACTIVE.value, "updated_at": now.isoformat()}
    supabase.table(USER_SUBSCRIPTIONS_TABLE).update(changes).eq("id", subscription["id"]).execute()

    user_id = subscription["user_id"]
    profile_values = {
        "current_plan_id": subscription["plan_id"],
        "subscription_status": "active",
        "merchant_status": MerchantStatus.PLAN_PURCHASED.value,
    }
    update_profile(supabase, user_id, profile_values)

    # Auth metadata lets the client see the new status without a profile fetch
    try:
        supabase.auth.admin.update_user_by_id(user_id, {"user_metadata": profile_values})
    except AuthError as e:
        logger.error(f"User metadata update failed for {user_id}: {e}")

    logger.info(f"Activated one-time purchase {subscription['id']} for user {user_id}")
    return {**subscription, **changes}


def sync_recurring_subscription(
    supabase: Client, subscription: Dict[str, Any], stripe_subscription: Any
) -> Dict[str, Any]:
    """Copy Stripe's view of a recurring subscription onto its local row and the profile."""
    changes = {
        "status": stripe_subscription["status"],
        "current_period_start": from_timestamp(stripe_subscription.get("current_period_start")),
        "current_period_end": from_timestamp(stripe_subscription.get("current_period_end")),
        "cancel_at_period_end": bool(stripe_subscription.get("cancel_at_period_end")),
    }
    stale = {k: v for k, v in changes.items() if subscription.get(k) != v}
    if not stale:
        return subscription

    supabase.table(USER_SUBSCRIPTIONS_TABLE).update({
        **changes,
        "updated_at": utc_now().isoformat(),
    }).eq("stripe_subscription_id", stripe_subscription["id"]).execute()

    if "status" in stale:
        profile_values = {"subscription_status": profile_subscription_status(changes["status"])}
        if changes["status"] == "active":
            profile_values["merchant_status"] = MerchantStatus.PLAN_PURCHASED.value
        update_profile(supabase, subscription["user_id"], profile_values)
        logger.info(
            f"Subscription {stripe_subscription['id']} status {subscription.get('status')} -> {changes['status']}"
        )

    return {**subscription, **changes}


class SubscriptionCheckout:
    """Handles pg_subscription-checkout actions."""

    def __init__(self, supabase: Client, settings: Settings):
        self.supabase = supabase
        self.settings = settings
        self.resolver = PaymentMethodResolver(supabase)

    # Lookups

    def get_active_plan(self, plan_id: Optional[str]) -> MerchantPlan:
        if not plan_id:
            raise PaymentValidationError("Plan ID is required")

        plan = first_row(
            self.supabase.table(PLANS_TABLE).select("*").eq("id", plan_id).eq("is_active", True).limit(1).execute()
        )
        if plan:
            return MerchantPlan.model_validate(plan)

        any_plan = first_row(self.supabase.table(PLANS_TABLE).select("id").eq("id", plan_id).limit(1).execute())
        if any_plan:
            raise PaymentValidationError(f'Plan "{plan_id}" exists but is not active')
        raise NotFoundError(f'Plan "{plan_id}" not found')

    def get_active_recurring(self, user_id: str) -> Dict[str, Any]:
        subscription = first_row(
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .eq("type", SubscriptionType.RECURRING.value)
            .limit(1)
            .execute()
        )
        if not subscription:
            raise NotFoundError("No active subscription found")
        return subscription

    def active_subscriptions(self, user_id: str) -> List[Dict[str, Any]]:
        result = (
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .execute()
        )
        return [s for s in rows(result) if is_current(s)]

    # Actions

    def create_subscription(self, user: AuthenticatedUser, data: SubscriptionData) -> Dict[str, Any]:
        logger.info(f"create_subscription for user {user.id}: plan={data.plan_id} option={data.payment_option}")

        if self.active_subscriptions(user.id):
            raise ConflictError("User already has an active subscription")

        plan = self.get_active_plan(data.plan_id)
        customer_id = get_or_create_customer(self.supabase, user)

        # Routing is by payment option, not plan interval
        if data.payment_option == PaymentOption.ONE_TIME:
            return self._create_one_time_purchase(user, plan, customer_id)
        return self._create_recurring(user, plan, customer_id, data)

    def _create_recurring(
        self, user: AuthenticatedUser, plan: MerchantPlan, customer_id: str, data: SubscriptionData
    ) -> Dict[str, Any]:
        if not plan.stripe_price_id:
            raise PaymentValidationError(f'Plan "{plan.id}" has no Stripe price')

        resolution = self.resolver.resolve(user.id, data.payment_option, data.payment_method_id)
        save_method = "on_subscription" if data.payment_option == PaymentOption.EXPRESS else "off"

        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": plan.stripe_price_id}],
            "payment_settings": {"save_default_payment_method": save_method},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": {
                USER_ID_METADATA_KEY: user.id,
                "plan_id": plan.id,
                "plan_name": plan.name,
            },
        }
        if resolution.confirm_immediately:
            params["default_payment_method"] = resolution.stripe_payment_method_id
            params["payment_behavior"] = "allow_incomplete"
        else:
            params["payment_behavior"] = "default_incomplete"

        subscription = stripe.Subscription.create(**params)
        logger.info(f"Created subscription {subscription.id} ({subscription.status}) for user {user.id}")

        row = UserSubscription(
            user_id=user.id,
            plan_id=plan.id,
            stripe_subscription_id=subscription.id,
            status=subscription.status,
            type=SubscriptionType.RECURRING,
            current_period_start=subscription.get("current_period_start"),
            current_period_end=subscription.get("current_period_end"),
        )
        try:
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE).insert(
                row.model_dump(mode="json", exclude_none=True)
            ).execute()
        except APIError as e:
            logger.error(f"Failed to store subscription {subscription.id}: {e.message}")
            stripe.Subscription.cancel(subscription.id)
            raise DatabaseError(f"Database error: {e.message}")

        active = subscription.status == "active"
        update_profile(self.supabase, user.id, {
            "current_plan_id": plan.id,
            "subscription_status": "active" if active else "none",
            "merchant_status": (MerchantStatus.PLAN_PURCHASED if active else MerchantStatus.PLAN_PENDING).value,
        })

        result: Dict[str, Any] = {
            "success": True,
            "subscription_id": subscription.id,
            "status": subscription.status,
            "type": SubscriptionType.RECURRING.value,
        }

        latest_invoice = subscription.get("latest_invoice")
        payment_intent = latest_invoice.get("payment_intent") if latest_invoice else None
        if payment_intent:
            result["client_secret"] = payment_intent["client_secret"]
            result["requires_action"] = payment_intent["status"] == "requires_action"

        return result

    def _create_one_time_purchase(
        self, user: AuthenticatedUser, plan: MerchantPlan, customer_id: str
    ) -> Dict[str, Any]:
        """
        Single payment granting access until the plan interval elapses.

        No saved card is attached and no card is saved for reuse: the client
        always completes payment in the hosted payment sheet.
        """
        payment_intent = stripe.PaymentIntent.create(
            amount=plan.price_amount,
            currency=plan.price_currency,
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata={
                USER_ID_METADATA_KEY: user.id,
                "plan_id": plan.id,
                "plan_name": plan.name,
                "type": "one_time_merchant_access",
            },
        )

        now = utc_now()
        expires_at = grant_expiry(plan.billing_interval, now)
        row = UserSubscription(
            user_id=user.id,
            plan_id=plan.id,
            stripe_payment_intent_id=payment_intent.id,
            status=SubscriptionStatus.PENDING.value,
            type=SubscriptionType.ONE_TIME,
            expires_at=expires_at,
            purchased_at=now,
        )
        try:
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE).insert(
                row.model_dump(mode="json", exclude_none=True)
            ).execute()
        except APIError as e:
            logger.error(f"Failed to store one-time purchase {payment_intent.id}: {e.message}")
            cancel_intent_after_failure(payment_intent)
            raise DatabaseError(f"Database error: {e.message}")

        record_transaction(
            self.supabase,
            Transaction(
                buyer_id=user.id,
                stripe_payment_intent_id=payment_intent.id,
                amount=plan.price_amount,
                currency=plan.price_currency,
                status=payment_intent.status,
                transaction_type=TransactionType.SUBSCRIPTION,
                description=f"Plan purchase: {plan.name}",
                metadata={"plan_id": plan.id},
            ),
            payment_intent,
        )

        update_profile(self.supabase, user.id, {
            "current_plan_id": plan.id,
            "merchant_status": MerchantStatus.PLAN_PENDING.value,
        })

        logger.info(f"Created one-time purchase {payment_intent.id} for user {user.id}, expires {expires_at.isoformat()}")
        return {
            "success": True,
            "payment_intent_id": payment_intent.id,
            "status": payment_intent.status,
            "type": SubscriptionType.ONE_TIME.value,
            "expires_at": expires_at.isoformat(),
            "client_secret": payment_intent.client_secret,
            "requires_action": True,
        }

    def cancel_subscription(self, user: AuthenticatedUser) -> Dict[str, Any]:
        subscription = self.get_active_recurring(user.id)
        stripe_id = subscription["stripe_subscription_id"]

        stripe_subscription = stripe.Subscription.modify(stripe_id, cancel_at_period_end=True)

        self.supabase.table(USER_SUBSCRIPTIONS_TABLE).update({
            "cancel_at_period_end": True,
            "updated_at": utc_now().isoformat(),
        }).eq("stripe_subscription_id", stripe_id).execute()

        logger.info(f"Scheduled cancellation for subscription {stripe_id}")
        return {
            "success": True,
            "message": "Subscription will be canceled at the end of the current period",
            "period_end": from_timestamp(stripe_subscription.get("current_period_end")),
        }

    def update_subscription(self, user: AuthenticatedUser, data: SubscriptionData) -> Dict[str, Any]:
        if not data.new_plan_id:
            raise PaymentValidationError("New plan ID is required")

        current = self.get_active_recurring(user.id)
        new_plan = self.get_active_plan(data.new_plan_id)
        if new_plan.id == current["plan_id"]:
            raise PaymentValidationError("Already subscribed to this plan")
        if not new_plan.stripe_price_id:
            raise PaymentValidationError(f'Plan "{new_plan.id}" has no Stripe price')

        stripe_id = current["stripe_subscription_id"]
        stripe_subscription = stripe.Subscription.retrieve(stripe_id)
        stripe.Subscription.modify(
            stripe_id,
            items=[{
                "id": stripe_subscription["items"]["data"][0]["id"],
                "price": new_plan.stripe_price_id,
            }],
            proration_behavior="create_prorations",
        )

        self.supabase.table(USER_SUBSCRIPTIONS_TABLE).update({
            "plan_id": new_plan.id,
            "updated_at": utc_now().isoformat(),
        }).eq("stripe_subscription_id", stripe_id).execute()
        update_profile(self.supabase, user.id, {"current_plan_id": new_plan.id})

        logger.info(f"Moved subscription {stripe_id} to plan {new_plan.id}")
        return {
            "success": True,
            "message": "Subscription updated successfully",
            "new_plan": new_plan.name,
        }

    def get_subscription_status(self, user: AuthenticatedUser) -> Dict[str, Any]:
        subscription = first_row(
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("user_id", user.id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        if not subscription:
            return {"success": True, "has_subscription": False, "subscription": None}

        if subscription.get("type") == SubscriptionType.ONE_TIME.value:
            subscription = self._reconcile_one_time(subscription)
        elif subscription.get("stripe_subscription_id"):
            stripe_subscription = stripe.Subscription.retrieve(subscription["stripe_subscription_id"])
            subscription = sync_recurring_subscription(self.supabase, subscription, stripe_subscription)

        plan = first_row(
            self.supabase.table(PLANS_TABLE).select("*").eq("id", subscription["plan_id"]).limit(1).execute()
        )
        return {
            "success": True,
            "has_subscription": True,
            "subscription": {**subscription, "plan": plan},
        }

    def _reconcile_one_time(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        status = subscription.get("status")

        if status == SubscriptionStatus.PENDING.value and subscription.get("stripe_payment_intent_id"):
            payment_intent = stripe.PaymentIntent.retrieve(subscription["stripe_payment_intent_id"])
            if payment_intent.status == "succeeded":
                subscription = activate_one_time_purchase(self.supabase, subscription)
            elif payment_intent.status == "canceled":
                self._set_status(subscription, SubscriptionStatus.CANCELED)
                subscription = {**subscription, "status": SubscriptionStatus.CANCELED.value}

        if subscription.get("status") == SubscriptionStatus.ACTIVE.value and not is_current(subscription):
            self._set_status(subscription, SubscriptionStatus.EXPIRED)
            update_profile(self.supabase, subscription["user_id"], {"subscription_status": "none"})
            logger.info(f"One-time purchase {subscription['id']} expired")
            subscription = {**subscription, "status": SubscriptionStatus.EXPIRED.value}

        return subscription

    def _set_status(self, subscription: Dict[str, Any], status: SubscriptionStatus) -> None:
        self.supabase.table(USER_SUBSCRIPTIONS_TABLE).update({
            "status": status.value,
            "updated_at": utc_now().isoformat(),
        }).eq("id", subscription["id"]).execute()

    def preview_subscription(self, user: AuthenticatedUser, data: SubscriptionData) -> Dict[str, Any]:
        profile = get_profile(self.supabase, user.id)
        if not profile or not profile.stripe_customer_id:
            raise PaymentValidationError("User must have payment method before previewing subscription")

        plan = self.get_active_plan(data.plan_id)
        if not plan.stripe_price_id:
            raise PaymentValidationError(f'Plan "{plan.id}" has no Stripe price')

        # Preview only; no invoice is created on the customer
        invoice = stripe.Invoice.create_preview(
            customer=profile.stripe_customer_id,
            subscription_details={"items": [{"price": plan.stripe_price_id}]},
        )

        return {
            "success": True,
            "preview": {
                "amount_due": invoice.get("amount_due"),
                "currency": invoice.get("currency"),
                "tax": invoice.get("tax"),
                "total": invoice.get("total"),
                "subtotal": invoice.get("subtotal"),
                "period_start": from_timestamp(invoice.get("period_start")),
                "period_end": from_timestamp(invoice.get("period_end")),
            },
        }
