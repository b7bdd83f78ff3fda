"""
Direct (non-marketplace) charges.

Creates a PaymentIntent for an arbitrary amount on the caller's Stripe
customer. A saved payment method is confirmed immediately; otherwise the
client secret is returned for collection in the payment sheet.
"""

import logging
from typing import Any, Dict
import stripe
from supabase import Client

from .amounts import to_minor_units
from .customers import get_or_create_customer, USER_ID_METADATA_KEY
from .payment_methods import PaymentMethodResolver
from .transactions import record_transaction
from ..config import Settings
from ..database.models import (
    AuthenticatedUser,
    CreatePaymentIntentRequest,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)


class PaymentIntentService:
    """Handles pg_create-payment-intent."""

    def __init__(self, supabase: Client, settings: Settings):
        self.supabase = supabase
        self.settings = settings
        self.resolver = PaymentMethodResolver(supabase)

    def create_payment_intent(self, user: AuthenticatedUser, request: CreatePaymentIntentRequest) -> Dict[str, Any]:
        currency = (request.currency or self.settings.default_currency).lower()
        amount = to_minor_units(request.amount, currency)

        resolution = self.resolver.resolve(user.id, request.payment_option, request.payment_method_id)
        customer_id = get_or_create_customer(self.supabase, user)

        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "customer": customer_id,
            "metadata": {USER_ID_METADATA_KEY: user.id},
        }
        if request.description:
            params["description"] = request.description

        if resolution.confirm_immediately:
            params["payment_method"] = resolution.stripe_payment_method_id
            params["payment_method_types"] = ["card"]
            params["confirm"] = True
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        payment_intent = stripe.PaymentIntent.create(**params)
        logger.info(f"Created payment intent {payment_intent.id} for user {user.id} ({amount} {currency})")

        record_transaction(
            self.supabase,
            Transaction(
                buyer_id=user.id,
                stripe_payment_intent_id=payment_intent.id,
                amount=amount,
                currency=currency,
                status=payment_intent.status,
                transaction_type=TransactionType.PAYMENT,
                description=request.description,
            ),
            payment_intent,
        )

        return {
            "clientSecret": payment_intent.client_secret,
            "paymentIntentId": payment_intent.id,
            "status": payment_intent.status,
            "requiresAction": payment_intent.status == "requires_action",
        }
