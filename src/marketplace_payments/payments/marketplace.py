"""
Marketplace purchases paid out to sellers through Stripe Connect.

Each purchase is a destination charge: the buyer pays the full amount, the
platform keeps an application fee and the rest is transferred to the seller's
connected account.
"""

import logging
from typing import Any, Dict, Optional
import stripe
from supabase import Client

from .amounts import line_total, platform_fee
from .errors import NotFoundError, PaymentValidationError
from .transactions import get_transaction, record_transaction, update_transaction_status
from ..config import Settings
from ..database.client import first_row
from ..database.models import (
    AuthenticatedUser,
    ConnectAccount,
    Transaction,
    TransactionType,
    CONNECT_ACCOUNTS_TABLE,
    PRODUCTS_TABLE,
    TRANSACTIONS_TABLE,
)

logger = logging.getLogger(__name__)


def apply_inventory(supabase: Client, transaction: Dict[str, Any]) -> bool:
    """
    Decrement product inventory for a succeeded purchase, once per transaction.

    Returns True when inventory was changed by this call.
    """
    metadata = dict(transaction.get("metadata") or {})
    product_id = metadata.get("product_id")
    if not product_id or metadata.get("inventory_applied"):
        return False

    # Claim the transaction first; a caller holding a stale row gets nothing back
    metadata["inventory_applied"] = True
    claimed = (
        supabase.table(TRANSACTIONS_TABLE)
        .update({"metadata": metadata})
        .eq("stripe_payment_intent_id", transaction["stripe_payment_intent_id"])
        .is_("metadata->>inventory_applied", "null")
        .execute()
    )
    if not claimed.data:
        logger.info(f"Inventory for {transaction['stripe_payment_intent_id']} already applied")
        return False

    product = first_row(
        supabase.table(PRODUCTS_TABLE).select("id, inventory_count").eq("id", product_id).limit(1).execute()
    )
    changed = False
    if product and product.get("inventory_count") is not None:
        quantity = int(metadata.get("quantity", 1))
        remaining = max(0, product["inventory_count"] - quantity)
        supabase.table(PRODUCTS_TABLE).update({
            "inventory_count": remaining,
            "is_available": remaining > 0,
        }).eq("id", product_id).execute()
        logger.info(f"Product {product_id} inventory {product['inventory_count']} -> {remaining}")
        changed = True

    return changed


class MarketplacePayments:
    """Handles pg_marketplace-payments actions."""

    def __init__(self, supabase: Client, settings: Settings):
        self.supabase = supabase
        self.settings = settings

    def create_payment_intent(self, user: AuthenticatedUser, product_id: Optional[str], quantity: int = 1) -> Dict[str, Any]:
        if not product_id:
            raise PaymentValidationError("Product ID is required")

        product = first_row(
            self.supabase.table(PRODUCTS_TABLE)
            .select("*")
            .eq("id", product_id)
            .eq("is_available", True)
            .limit(1)
            .execute()
        )
        if not product:
            raise NotFoundError("Product not found or unavailable")

        # Must stay ahead of every Stripe call
        if product["seller_id"] == user.id:
            raise PaymentValidationError("Cannot purchase your own product")

        inventory = product.get("inventory_count")
        if inventory is not None and inventory < quantity:
            raise PaymentValidationError("Insufficient inventory for requested quantity")

        seller_account = self._get_payable_account(product["seller_id"])

        currency = (product.get("currency") or self.settings.default_currency).lower()
        amount = line_total(product["price"], quantity, currency)
        fee = platform_fee(amount, self.settings.platform_fee_rate)

        payment_intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            application_fee_amount=fee,
            transfer_data={"destination": seller_account.stripe_account_id},
            metadata={
                "product_id": product_id,
                "seller_id": product["seller_id"],
                "buyer_id": user.id,
                "quantity": str(quantity),
                "platform_fee": str(fee),
            },
        )
        logger.info(
            f"Created destination charge {payment_intent.id}: {amount} {currency}, fee {fee}, "
            f"seller account {seller_account.stripe_account_id}"
        )

        record_transaction(
            self.supabase,
            Transaction(
                buyer_id=user.id,
                seller_id=product["seller_id"],
                stripe_payment_intent_id=payment_intent.id,
                stripe_connect_account_id=seller_account.stripe_account_id,
                amount=amount,
                currency=currency,
                status="pending",
                transaction_type=TransactionType.PAYMENT,
                description=f"Purchase: {product['title']}",
                metadata={
                    "product_id": product_id,
                    "product_title": product["title"],
                    "product_price": str(product["price"]),
                    "quantity": quantity,
                    "platform_fee": fee,
                },
            ),
            payment_intent,
        )

        return {
            "paymentIntent": {
                "id": payment_intent.id,
                "client_secret": payment_intent.client_secret,
                "amount": amount,
                "platform_fee": fee,
            },
            "product": {
                "id": product["id"],
                "title": product["title"],
                "price": product["price"],
                "quantity": quantity,
            },
        }

    def confirm_payment(self, user: AuthenticatedUser, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        """Mirror the PaymentIntent's status onto the buyer's transaction."""
        transaction = self._get_visible_transaction(user, payment_intent_id, buyer_only=True)

        payment_intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        if payment_intent.status != transaction.get("status"):
            update_transaction_status(self.supabase, payment_intent_id, payment_intent.status)

        if payment_intent.status == "succeeded":
            apply_inventory(self.supabase, transaction)

        return {
            "status": payment_intent.status,
            "paymentIntent": {
                "id": payment_intent.id,
                "status": payment_intent.status,
                "amount": payment_intent.amount,
            },
        }

    def get_payment_status(self, user: AuthenticatedUser, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        transaction = self._get_visible_transaction(user, payment_intent_id)
        return {"transaction": transaction}

    def _get_payable_account(self, seller_id: str) -> ConnectAccount:
        row = first_row(
            self.supabase.table(CONNECT_ACCOUNTS_TABLE)
            .select("*")
            .eq("user_id", seller_id)
            .eq("charges_enabled", True)
            .limit(1)
            .execute()
        )
        if not row:
            raise PaymentValidationError("Seller account not available for payments")
        return ConnectAccount.model_validate(row)

    def _get_visible_transaction(
        self, user: AuthenticatedUser, payment_intent_id: Optional[str], buyer_only: bool = False
    ) -> Dict[str, Any]:
        if not payment_intent_id:
            raise PaymentValidationError("Payment Intent ID is required")

        transaction = get_transaction(self.supabase, payment_intent_id)
        allowed = {transaction.get("buyer_id")} if transaction else set()
        if transaction and not buyer_only:
            allowed.add(transaction.get("seller_id"))

        # Other users' transactions look the same as missing ones
        if not transaction or user.id not in allowed:
            raise NotFoundError("Transaction not found")
        return transaction
