"""
Database models for the marketplace payment system.

This module defines Pydantic models that correspond to the `pg_`-prefixed
Supabase tables for profiles, payment methods, transactions, plans,
subscriptions and Stripe Connect accounts, plus the request bodies accepted
by the payment endpoints.
"""

from typing import Dict, Any, Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

# Table names
PROFILES_TABLE = "pg_profiles"
PAYMENT_METHODS_TABLE = "pg_payment_methods"
TRANSACTIONS_TABLE = "pg_transactions"
PRODUCTS_TABLE = "pg_products"
PLANS_TABLE = "pg_merchant_plans"
USER_SUBSCRIPTIONS_TABLE = "pg_user_subscriptions"
CONNECT_ACCOUNTS_TABLE = "pg_stripe_connect_accounts"
ONBOARDING_LOGS_TABLE = "pg_merchant_onboarding_logs"


class PaymentOption(str, Enum):
    """How the caller wants to pay at checkout."""
    EXPRESS = "express"
    ONE_TIME = "one_time"
    SAVED = "saved"


class BillingInterval(str, Enum):
    """Validity period of a plan purchase."""
    ONE_TIME = "one_time"  # 24 hour grant
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SubscriptionType(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class SubscriptionStatus(str, Enum):
    """Local subscription status. Recurring rows mirror Stripe's values."""
    ACTIVE = "active"
    PENDING = "pending"
    EXPIRED = "expired"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    UNPAID = "unpaid"


class MerchantStatus(str, Enum):
    NONE = "none"
    PLAN_PENDING = "plan_pending"
    PLAN_PURCHASED = "plan_purchased"
    ONBOARDING_STARTED = "onboarding_started"
    ONBOARDING_COMPLETED = "onboarding_completed"
    ACTIVE = "active"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    PAYOUT = "payout"


class OnboardingStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    RESTRICTED = "restricted"


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from the bearer token."""

    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class Profile(BaseModel):
    """User profile row, created lazily on the first payment attempt."""

    id: str = Field(..., description="Supabase auth user ID")
    email: Optional[str] = Field(None, description="User email address")
    stripe_customer_id: Optional[str] = Field(None, description="Stripe customer ID")
    stripe_connect_account_id: Optional[str] = Field(None, description="Stripe Connect account ID")
    merchant_status: MerchantStatus = Field(default=MerchantStatus.NONE)
    subscription_status: str = Field(default="none")
    current_plan_id: Optional[str] = Field(None)
    onboarding_url: Optional[str] = Field(None)
    user_type: Optional[str] = Field(None, description="'admin' for plan administrators")


class PaymentMethod(BaseModel):
    """Saved card reference. At most one row per user has is_default set."""

    id: str = Field(..., description="Row UUID")
    user_id: str = Field(..., description="Owner user ID")
    stripe_payment_method_id: str = Field(..., description="Stripe payment method ID")
    type: str = Field(default="card")
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False
    created_at: Optional[datetime] = None


class Transaction(BaseModel):
    """One row per payment attempt."""

    id: Optional[str] = None
    buyer_id: str
    seller_id: Optional[str] = None
    stripe_payment_intent_id: str
    stripe_connect_account_id: Optional[str] = None
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str = "usd"
    status: str = "pending"
    transaction_type: TransactionType = TransactionType.PAYMENT
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MerchantPlan(BaseModel):
    """Purchasable merchant plan mirrored from a Stripe price."""

    id: str
    name: str
    description: Optional[str] = None
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    price_amount: int = Field(..., description="Price in minor currency units")
    price_currency: str = "usd"
    billing_interval: BillingInterval = BillingInterval.MONTH
    features: Optional[List[str]] = None
    is_active: bool = True


class UserSubscription(BaseModel):
    """Recurring subscription or one-time plan purchase."""

    id: Optional[str] = None
    user_id: str
    plan_id: str
    stripe_subscription_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    status: str
    type: SubscriptionType
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    expires_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None


class ConnectAccount(BaseModel):
    """Seller payout account mirrored from Stripe Connect."""

    id: Optional[str] = None
    user_id: str
    stripe_account_id: str
    onboarding_status: OnboardingStatus = OnboardingStatus.PENDING
    charges_enabled: bool = False
    payouts_enabled: bool = False
    requirements: Dict[str, Any] = Field(default_factory=dict)


# Request models for the payment endpoints.
# Client payloads mix camelCase and snake_case keys, so both are accepted.

class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreatePaymentIntentRequest(_RequestModel):
    """Body of pg_create-payment-intent."""

    amount: Decimal = Field(..., gt=0, description="Amount in major currency units")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    description: Optional[str] = None
    payment_method_id: Optional[str] = Field(None, alias="paymentMethodId")
    payment_option: Optional[PaymentOption] = Field(None, alias="paymentOption")


class SubscriptionData(_RequestModel):
    plan_id: Optional[str] = None
    new_plan_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_option: Optional[PaymentOption] = None


class SubscriptionCheckoutRequest(_RequestModel):
    """Body of pg_subscription-checkout."""

    action: str
    subscription_data: SubscriptionData = Field(default_factory=SubscriptionData, alias="subscriptionData")


class AccountData(_RequestModel):
    return_url: Optional[str] = None
    refresh_url: Optional[str] = None


class ConnectOnboardingRequest(_RequestModel):
    """Body of pg_stripe-connect-onboarding."""

    action: str
    account_data: AccountData = Field(default_factory=AccountData, alias="accountData")


class MarketplacePaymentRequest(_RequestModel):
    """Body of pg_marketplace-payments."""

    action: str
    product_id: Optional[str] = Field(None, alias="productId")
    quantity: int = Field(default=1, ge=1)
    payment_intent_id: Optional[str] = Field(None, alias="paymentIntentId")


class PaymentMethodRequest(_RequestModel):
    """Body of the saved card endpoints."""

    payment_method_id: Optional[str] = Field(None, alias="paymentMethodId", description="Stripe payment method ID")


class PlanData(_RequestModel):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price_amount: Optional[int] = Field(None, ge=0, description="Price in minor currency units")
    price_currency: Optional[str] = None
    billing_interval: Optional[BillingInterval] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None


class ManagePlansRequest(_RequestModel):
    """Body of pg_manage-subscription-plans."""

    action: str
    plan_data: PlanData = Field(default_factory=PlanData, alias="planData")
