"""
Payment method resolution shared by every checkout flow.

Decides which saved card (if any) a charge should use:

- one-time checkout never uses a saved card; the client always collects
  payment through the hosted payment sheet
- an explicit saved method is resolved to its Stripe ID and confirmed
  immediately
- express checkout uses the default card, promoting the oldest card to
  default when none is set, and falls back to new-card collection when the
  user has no cards at all

Also holds the SetupIntent based card management used by the wallet screens.
"""

import logging
from typing import Any, Dict, Optional
import stripe
from pydantic import BaseModel
from supabase import Client

from .customers import get_or_create_customer, get_profile, USER_ID_METADATA_KEY
from .errors import NotFoundError, PaymentValidationError
from ..database.client import first_row
from ..database.models import AuthenticatedUser, PaymentMethod, PaymentOption, PAYMENT_METHODS_TABLE

logger = logging.getLogger(__name__)


class PaymentMethodResolution(BaseModel):
    """Outcome of resolving a payment method for one charge."""

    stripe_payment_method_id: Optional[str] = None
    requires_setup: bool = True
    promoted_default: bool = False

    @property
    def confirm_immediately(self) -> bool:
        return self.stripe_payment_method_id is not None


class PaymentMethodResolver:
    """Looks up saved payment methods for a user."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def resolve(
        self,
        user_id: str,
        payment_option: Optional[PaymentOption],
        payment_method_id: Optional[str] = None,
    ) -> PaymentMethodResolution:
        if payment_option == PaymentOption.ONE_TIME:
            return PaymentMethodResolution()

        if payment_method_id:
            method = self.get_owned(user_id, payment_method_id)
            logger.info(f"Resolved payment method {payment_method_id} -> {method.stripe_payment_method_id}")
            return PaymentMethodResolution(
                stripe_payment_method_id=method.stripe_payment_method_id,
                requires_setup=False,
            )

        if payment_option == PaymentOption.EXPRESS:
            return self.resolve_express(user_id)

        return PaymentMethodResolution()

    def get_owned(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        """Fetch a saved method by row ID, only if it belongs to the user."""
        result = (
            self.supabase.table(PAYMENT_METHODS_TABLE)
            .select("*")
            .eq("id", payment_method_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        row = first_row(result)
        if not row:
            raise NotFoundError(f"Payment method not found: {payment_method_id}")
        return PaymentMethod.model_validate(row)

    def resolve_express(self, user_id: str) -> PaymentMethodResolution:
        default = first_row(
            self.supabase.table(PAYMENT_METHODS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("is_default", True)
            .limit(1)
            .execute()
        )
        if default:
            logger.info(f"Express checkout using default payment method {default['stripe_payment_method_id']}")
            return PaymentMethodResolution(
                stripe_payment_method_id=default["stripe_payment_method_id"],
                requires_setup=False,
            )

        oldest = first_row(
            self.supabase.table(PAYMENT_METHODS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at")
            .limit(1)
            .execute()
        )
        if not oldest:
            logger.info(f"No payment methods for user {user_id}, express checkout needs the payment sheet")
            return PaymentMethodResolution()

        method = PaymentMethod.model_validate(oldest)
        # Only flips a row that is still not default
        claimed = self.supabase.table(PAYMENT_METHODS_TABLE).update({"is_default": True}).eq(
            "id", method.id
        ).eq("is_default", False).execute()
        if not claimed.data:
            logger.info(f"Payment method {method.stripe_payment_method_id} was promoted concurrently")
            return PaymentMethodResolution(
                stripe_payment_method_id=method.stripe_payment_method_id,
                requires_setup=False,
            )

        self._set_customer_default(user_id, method.stripe_payment_method_id)
        logger.info(f"Promoted payment method {method.stripe_payment_method_id} to default for user {user_id}")
        return PaymentMethodResolution(
            stripe_payment_method_id=method.stripe_payment_method_id,
            requires_setup=False,
            promoted_default=True,
        )

    def _set_customer_default(self, user_id: str, stripe_payment_method_id: str) -> None:
        """Record the promotion on the Stripe customer so customer.updated keeps it."""
        profile = get_profile(self.supabase, user_id)
        if not profile or not profile.stripe_customer_id:
            logger.warning(f"User {user_id} has saved cards but no Stripe customer")
            return
        stripe.Customer.modify(
            profile.stripe_customer_id,
            invoice_settings={"default_payment_method": stripe_payment_method_id},
        )


class PaymentMethodService:
    """
    Saved card management for the wallet screens.

    Cards are collected with a SetupIntent in the payment sheet. The local
    pg_payment_methods rows follow from the payment_method.* and
    customer.updated webhooks, so these actions only talk to Stripe.
    """

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_setup_intent(self, user: AuthenticatedUser) -> Dict[str, Any]:
        customer_id = get_or_create_customer(self.supabase, user)
        setup_intent = stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata={USER_ID_METADATA_KEY: user.id},
        )
        logger.info(f"Created setup intent {setup_intent.id} for user {user.id}")
        return {"client_secret": setup_intent.client_secret, "setup_intent_id": setup_intent.id}

    def get_payment_method(self, user: AuthenticatedUser, stripe_payment_method_id: Optional[str]) -> Dict[str, Any]:
        payment_method = self._retrieve_owned(user, stripe_payment_method_id)
        card = payment_method.get("card") or {}
        return {
            "paymentMethod": {
                "id": payment_method.id,
                "type": payment_method.type,
                "card": {
                    "brand": card.get("brand"),
                    "last4": card.get("last4"),
                    "exp_month": card.get("exp_month"),
                    "exp_year": card.get("exp_year"),
                },
            }
        }

    def detach_payment_method(self, user: AuthenticatedUser, stripe_payment_method_id: Optional[str]) -> Dict[str, Any]:
        payment_method = self._retrieve_owned(user, stripe_payment_method_id)
        stripe.PaymentMethod.detach(payment_method.id)
        logger.info(f"Detached payment method {payment_method.id} for user {user.id}")
        return {"success": True}

    def set_default_payment_method(self, user: AuthenticatedUser, stripe_payment_method_id: Optional[str]) -> Dict[str, Any]:
        payment_method = self._retrieve_owned(user, stripe_payment_method_id)
        stripe.Customer.modify(
            payment_method.customer,
            invoice_settings={"default_payment_method": payment_method.id},
        )
        logger.info(f"Set default payment method {payment_method.id} for user {user.id}")
        return {"success": True}

    def _retrieve_owned(self, user: AuthenticatedUser, stripe_payment_method_id: Optional[str]) -> Any:
        if not stripe_payment_method_id:
            raise PaymentValidationError("Payment method ID is required")

        profile = get_profile(self.supabase, user.id)
        payment_method = stripe.PaymentMethod.retrieve(stripe_payment_method_id)
        # Cards on other customers look the same as missing ones
        if not profile or not profile.stripe_customer_id or payment_method.get("customer") != profile.stripe_customer_id:
            raise NotFoundError(f"Payment method not found: {stripe_payment_method_id}")
        return payment_method
