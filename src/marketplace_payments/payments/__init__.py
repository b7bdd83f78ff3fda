"""
Payments module for Stripe checkout, Connect onboarding and marketplace charges.

Each service wraps one group of endpoint actions and takes a Supabase client
plus the service settings.
"""

from .connect import ConnectOnboarding
from .errors import PaymentError
from .marketplace import MarketplacePayments
from .payment_intents import PaymentIntentService
from .payment_methods import PaymentMethodService
from .plans import PlanAdministration
from .subscriptions import SubscriptionCheckout
from .webhooks import StripeWebhookHandler

__all__ = [
    'ConnectOnboarding',
    'PaymentError',
    'MarketplacePayments',
    'PaymentIntentService',
    'PaymentMethodService',
    'PlanAdministration',
    'SubscriptionCheckout',
    'StripeWebhookHandler'
]
