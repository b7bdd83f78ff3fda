"""Transaction rows and compensation for Stripe objects whose local write failed."""

import logging
from typing import Any, Dict, Optional
import stripe
from postgrest.exceptions import APIError
from supabase import Client

from .errors import DatabaseError
from ..database.client import first_row
from ..database.models import Transaction, TRANSACTIONS_TABLE

logger = logging.getLogger(__name__)

# PaymentIntent states in which Stripe still allows cancellation
CANCELABLE_INTENT_STATUSES = frozenset({
    "requires_payment_method",
    "requires_capture",
    "requires_confirmation",
    "requires_action",
    "processing",
})


def cancel_intent_after_failure(payment_intent: Any) -> None:
    """Cancel a PaymentIntent created for a request that is about to fail."""
    if payment_intent.status not in CANCELABLE_INTENT_STATUSES:
        logger.error(
            f"Payment intent {payment_intent.id} is {payment_intent.status} and cannot be canceled; "
            "manual reconciliation required"
        )
        return
    try:
        stripe.PaymentIntent.cancel(payment_intent.id)
        logger.info(f"Canceled payment intent {payment_intent.id} after failed database write")
    except stripe.StripeError as e:
        logger.error(f"Failed to cancel payment intent {payment_intent.id}: {e}")


def record_transaction(supabase: Client, transaction: Transaction, payment_intent: Any) -> Dict[str, Any]:
    """Insert the transaction row for a new PaymentIntent, canceling the intent on failure."""
    payload = transaction.model_dump(mode="json", exclude_none=True)
    try:
        result = supabase.table(TRANSACTIONS_TABLE).insert(payload).execute()
    except APIError as e:
        logger.error(f"Transaction record error for {payment_intent.id}: {e.message}")
        cancel_intent_after_failure(payment_intent)
        raise DatabaseError(f"Database error: {e.message}")

    return first_row(result) or payload


def get_transaction(supabase: Client, payment_intent_id: str) -> Optional[Dict[str, Any]]:
    result = (
        supabase.table(TRANSACTIONS_TABLE)
        .select("*")
        .eq("stripe_payment_intent_id", payment_intent_id)
        .limit(1)
        .execute()
    )
    return first_row(result)


def update_transaction_status(supabase: Client, payment_intent_id: str, status: str) -> None:
    supabase.table(TRANSACTIONS_TABLE).update({"status": status}).eq(
        "stripe_payment_intent_id", payment_intent_id
    ).execute()
