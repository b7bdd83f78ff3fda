"""
Stripe webhook handlers.

Webhooks own asynchronous provider state: saved payment instruments, final
payment status, Connect capability flags and the subscription lifecycle.
Events are signature-verified before they are dispatched.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional
import stripe
from supabase import Client

from .connect import merchant_status_for, sync_connect_account
from .customers import USER_ID_METADATA_KEY
from .errors import PaymentError, PaymentValidationError
from .marketplace import apply_inventory
from .subscriptions import activate_one_time_purchase, sync_recurring_subscription, update_profile
from .transactions import get_transaction, update_transaction_status
from ..config import Settings
from ..database.client import first_row
from ..database.models import (
    MerchantStatus,
    SubscriptionStatus,
    CONNECT_ACCOUNTS_TABLE,
    PAYMENT_METHODS_TABLE,
    USER_SUBSCRIPTIONS_TABLE,
)

logger = logging.getLogger(__name__)


class WebhookEventType(Enum):
    """Supported Stripe webhook event types."""
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    PAYMENT_METHOD_DETACHED = "payment_method.detached"
    PAYMENT_METHOD_UPDATED = "payment_method.updated"
    CUSTOMER_UPDATED = "customer.updated"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    ACCOUNT_UPDATED = "account.updated"
    CUSTOMER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    CUSTOMER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def user_id_from_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    metadata = metadata or {}
    # Older customers were tagged with "user_id"
    return metadata.get(USER_ID_METADATA_KEY) or metadata.get("user_id")


class StripeWebhookHandler:
    """Verifies Stripe events and applies them to the payment tables."""

    def __init__(self, supabase: Client, settings: Settings):
        self.supabase = supabase
        self.settings = settings

        self.event_handlers = {
            WebhookEventType.PAYMENT_METHOD_ATTACHED: self._handle_payment_method_attached,
            WebhookEventType.PAYMENT_METHOD_DETACHED: self._handle_payment_method_detached,
            WebhookEventType.PAYMENT_METHOD_UPDATED: self._handle_payment_method_updated,
            WebhookEventType.CUSTOMER_UPDATED: self._handle_customer_updated,
            WebhookEventType.PAYMENT_INTENT_SUCCEEDED: self._handle_payment_succeeded,
            WebhookEventType.PAYMENT_INTENT_PAYMENT_FAILED: self._handle_payment_failed,
            WebhookEventType.ACCOUNT_UPDATED: self._handle_account_updated,
            WebhookEventType.CUSTOMER_SUBSCRIPTION_UPDATED: self._handle_subscription_changed,
            WebhookEventType.CUSTOMER_SUBSCRIPTION_DELETED: self._handle_subscription_changed,
        }

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Any:
        if not self.settings.stripe_webhook_secret:
            raise PaymentError("Webhook secret not configured", status_code=500)
        if not sig_header:
            raise PaymentValidationError("Missing Stripe signature")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.settings.stripe_webhook_secret)
        except ValueError:
            raise PaymentValidationError("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise PaymentValidationError("Invalid signature")

    def handle_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify and process one webhook delivery.

        Args:
            payload: Raw request body
            sig_header: Value of the Stripe-Signature header

        Returns:
            Acknowledgement with the event type and processing status
        """
        event = self.construct_event(payload, sig_header)
        return self.dispatch(event)

    def dispatch(self, event: Any) -> Dict[str, Any]:
        logger.info(f"Received Stripe webhook: {event['type']} (ID: {event['id']})")

        try:
            event_type = WebhookEventType(event["type"])
        except ValueError:
            logger.info(f"Unhandled webhook event type: {event['type']}")
            return {"received": True, "event_type": event["type"], "status": "ignored"}

        handler = self.event_handlers[event_type]
        result = handler(event)
        logger.info(f"Processed webhook {event['id']}: {result}")
        return {"received": True, "event_type": event["type"], "status": "processed", "result": result}

    def _user_id_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        customer = stripe.Customer.retrieve(customer_id)
        if customer.get("deleted"):
            logger.warning(f"Customer {customer_id} was deleted")
            return None
        user_id = user_id_from_metadata(customer.get("metadata"))
        if not user_id:
            logger.error(f"No user ID found in metadata of customer {customer_id}")
        return user_id

    # Payment methods

    def _handle_payment_method_attached(self, event: Any) -> Dict[str, Any]:
        payment_method = event["data"]["object"]
        card = payment_method.get("card")
        if not card:
            return {"action": "skipped", "reason": "not a card"}

        user_id = self._user_id_for_customer(payment_method.get("customer"))
        if not user_id:
            return {"action": "skipped", "reason": "unknown customer"}

        existing = first_row(
            self.supabase.table(PAYMENT_METHODS_TABLE)
            .select("id")
            .eq("stripe_payment_method_id", payment_method["id"])
            .limit(1)
            .execute()
        )
        if existing:
            return {"action": "skipped", "reason": "already stored"}

        self.supabase.table(PAYMENT_METHODS_TABLE).insert({
            "user_id": user_id,
            "stripe_payment_method_id": payment_method["id"],
            "type": payment_method.get("type", "card"),
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
            "is_default": False,
        }).execute()
        logger.info(f"Saved payment method {payment_method['id']} for user {user_id}")
        return {"action": "inserted", "user_id": user_id}

    def _handle_payment_method_detached(self, event: Any) -> Dict[str, Any]:
        payment_method = event["data"]["object"]
        self.supabase.table(PAYMENT_METHODS_TABLE).delete().eq(
            "stripe_payment_method_id", payment_method["id"]
        ).execute()
        logger.info(f"Removed payment method {payment_method['id']}")
        return {"action": "deleted"}

    def _handle_payment_method_updated(self, event: Any) -> Dict[str, Any]:
        payment_method = event["data"]["object"]
        card = payment_method.get("card") or {}
        self.supabase.table(PAYMENT_METHODS_TABLE).update({
            "type": payment_method.get("type", "card"),
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
        }).eq("stripe_payment_method_id", payment_method["id"]).execute()
        return {"action": "updated"}

    def _handle_customer_updated(self, event: Any) -> Dict[str, Any]:
        """
        Re-sync the single default card from the customer's invoice settings.

        Only deliveries that changed invoice_settings touch the defaults, so
        edits to other customer fields leave a promoted card in place.
        """
        customer = event["data"]["object"]
        previous = event["data"].get("previous_attributes") or {}
        if "invoice_settings" not in previous:
            return {"action": "skipped", "reason": "default payment method unchanged"}

        user_id = user_id_from_metadata(customer.get("metadata"))
        if not user_id:
            return {"action": "skipped", "reason": "unknown customer"}

        invoice_settings = customer.get("invoice_settings") or {}
        default_method = invoice_settings.get("default_payment_method")
        if isinstance(default_method, dict):
            default_method = default_method.get("id")

        self.supabase.table(PAYMENT_METHODS_TABLE).update({"is_default": False}).eq("user_id", user_id).execute()
        if default_method:
            self.supabase.table(PAYMENT_METHODS_TABLE).update({"is_default": True}).eq(
                "user_id", user_id
            ).eq("stripe_payment_method_id", default_method).execute()

        logger.info(f"Default payment method for user {user_id} is now {default_method}")
        return {"action": "default_synced", "default_payment_method": default_method}

    # Payments

    def _handle_payment_succeeded(self, event: Any) -> Dict[str, Any]:
        payment_intent = event["data"]["object"]
        result: Dict[str, Any] = {"action": "succeeded"}

        transaction = get_transaction(self.supabase, payment_intent["id"])
        if transaction:
            update_transaction_status(self.supabase, payment_intent["id"], "succeeded")
            result["inventory_updated"] = apply_inventory(self.supabase, transaction)

        purchase = first_row(
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("stripe_payment_intent_id", payment_intent["id"])
            .eq("status", SubscriptionStatus.PENDING.value)
            .limit(1)
            .execute()
        )
        if purchase:
            activate_one_time_purchase(self.supabase, purchase)
            result["plan_activated"] = purchase["plan_id"]

        return result

    def _handle_payment_failed(self, event: Any) -> Dict[str, Any]:
        payment_intent = event["data"]["object"]
        update_transaction_status(self.supabase, payment_intent["id"], "failed")
        error = payment_intent.get("last_payment_error") or {}
        logger.warning(f"Payment {payment_intent['id']} failed: {error.get('message')}")
        return {"action": "failed"}

    # Connect

    def _handle_account_updated(self, event: Any) -> Dict[str, Any]:
        account = event["data"]["object"]
        values = sync_connect_account(self.supabase, account)

        row = first_row(
            self.supabase.table(CONNECT_ACCOUNTS_TABLE)
            .select("user_id")
            .eq("stripe_account_id", account["id"])
            .limit(1)
            .execute()
        )
        if row and merchant_status_for(account) == MerchantStatus.ACTIVE:
            update_profile(self.supabase, row["user_id"], {"merchant_status": MerchantStatus.ACTIVE.value})

        return {"action": "account_synced", "onboarding_status": values["onboarding_status"]}

    # Subscriptions

    def _handle_subscription_changed(self, event: Any) -> Dict[str, Any]:
        subscription = event["data"]["object"]
        row = first_row(
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("stripe_subscription_id", subscription["id"])
            .limit(1)
            .execute()
        )
        if not row:
            logger.warning(f"No local row for subscription {subscription['id']}")
            return {"action": "skipped", "reason": "unknown subscription"}

        sync_recurring_subscription(self.supabase, row, subscription)
        return {"action": "subscription_synced", "status": subscription["status"]}
