"""Database module for the marketplace payment service."""

from .client import create_supabase_client, get_client, first_row, rows
from .models import (
    Profile,
    PaymentMethod,
    Transaction,
    MerchantPlan,
    UserSubscription,
    ConnectAccount,
    PaymentOption,
    BillingInterval,
    SubscriptionType,
)

__all__ = [
    "create_supabase_client",
    "get_client",
    "first_row",
    "rows",
    "Profile",
    "PaymentMethod",
    "Transaction",
    "MerchantPlan",
    "UserSubscription",
    "ConnectAccount",
    "PaymentOption",
    "BillingInterval",
    "SubscriptionType",
]
