"""
Payment API Endpoints for the Marketplace Payments service

Each endpoint mirrors one Supabase edge function under /functions/v1 and
dispatches on the `action` field of its JSON body. The Stripe and Supabase
SDKs are blocking, so every action runs in a worker thread.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict
from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from supabase import Client

from ..config import Settings, get_settings
from ..database.models import (
    AuthenticatedUser,
    ConnectOnboardingRequest,
    CreatePaymentIntentRequest,
    ManagePlansRequest,
    MarketplacePaymentRequest,
    PaymentMethodRequest,
    SubscriptionCheckoutRequest,
)
from ..payments.connect import ConnectOnboarding
from ..payments.errors import PaymentValidationError
from ..payments.marketplace import MarketplacePayments
from ..payments.payment_intents import PaymentIntentService
from ..payments.payment_methods import PaymentMethodService
from ..payments.plans import PlanAdministration
from ..payments.subscriptions import SubscriptionCheckout
from ..payments.webhooks import StripeWebhookHandler
from ..security.auth import get_current_user, get_supabase_client

logger = logging.getLogger(__name__)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=get_settings().rate_limit_enabled)

# Create router for the edge function endpoints
payments_router = APIRouter(prefix="/functions/v1", tags=["payments"])


async def run_action(action: str, actions: Dict[str, Callable[[], Dict[str, Any]]]) -> Dict[str, Any]:
    """Run the handler registered for `action` off the event loop."""
    handler = actions.get(action)
    if handler is None:
        logger.warning(f"Invalid action: {action}")
        raise PaymentValidationError("Invalid action")
    return await asyncio.to_thread(handler)


@payments_router.post("/pg_create-payment-intent")
@limiter.limit("30/minute")
async def create_payment_intent(
    request: Request,
    body: CreatePaymentIntentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    service = PaymentIntentService(supabase, settings)
    return await asyncio.to_thread(service.create_payment_intent, user, body)


@payments_router.post("/pg_subscription-checkout")
@limiter.limit("30/minute")
async def subscription_checkout(
    request: Request,
    body: SubscriptionCheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    service = SubscriptionCheckout(supabase, settings)
    data = body.subscription_data
    return await run_action(body.action, {
        "create_subscription": partial(service.create_subscription, user, data),
        "cancel_subscription": partial(service.cancel_subscription, user),
        "update_subscription": partial(service.update_subscription, user, data),
        "get_subscription_status": partial(service.get_subscription_status, user),
        "preview_subscription": partial(service.preview_subscription, user, data),
    })


@payments_router.post("/pg_stripe-connect-onboarding")
@limiter.limit("30/minute")
async def stripe_connect_onboarding(
    request: Request,
    body: ConnectOnboardingRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    service = ConnectOnboarding(supabase, settings)
    return await run_action(body.action, {
        "create_connect_account": partial(service.create_connect_account, user),
        "create_onboarding_link": partial(service.create_onboarding_link, user, body.account_data),
        "get_account_status": partial(service.get_account_status, user),
        "refresh_onboarding_link": partial(service.refresh_onboarding_link, user),
        "handle_onboarding_return": partial(service.handle_onboarding_return, user),
    })


@payments_router.post("/pg_marketplace-payments")
@limiter.limit("30/minute")
async def marketplace_payments(
    request: Request,
    body: MarketplacePaymentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    service = MarketplacePayments(supabase, settings)
    return await run_action(body.action, {
        "create_payment_intent": partial(service.create_payment_intent, user, body.product_id, body.quantity),
        "confirm_payment": partial(service.confirm_payment, user, body.payment_intent_id),
        "get_payment_status": partial(service.get_payment_status, user, body.payment_intent_id),
    })


@payments_router.post("/pg_create-setup-intent")
@limiter.limit("30/minute")
async def create_setup_intent(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
) -> Dict[str, Any]:
    service = PaymentMethodService(supabase)
    return await asyncio.to_thread(service.create_setup_intent, user)


@payments_router.post("/pg_get-payment-method")
@limiter.limit("30/minute")
async def get_payment_method(
    request: Request,
    body: PaymentMethodRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
) -> Dict[str, Any]:
    service = PaymentMethodService(supabase)
    return await asyncio.to_thread(service.get_payment_method, user, body.payment_method_id)


@payments_router.post("/pg_detach-payment-method")
@limiter.limit("30/minute")
async def detach_payment_method(
    request: Request,
    body: PaymentMethodRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
) -> Dict[str, Any]:
    service = PaymentMethodService(supabase)
    return await asyncio.to_thread(service.detach_payment_method, user, body.payment_method_id)


@payments_router.post("/pg_set-default-payment-method")
@limiter.limit("30/minute")
async def set_default_payment_method(
    request: Request,
    body: PaymentMethodRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
) -> Dict[str, Any]:
    service = PaymentMethodService(supabase)
    return await asyncio.to_thread(service.set_default_payment_method, user, body.payment_method_id)


@payments_router.post("/pg_manage-subscription-plans", tags=["admin"])
@limiter.limit("10/minute")
async def manage_subscription_plans(
    request: Request,
    body: ManagePlansRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    service = PlanAdministration(supabase, settings)
    await asyncio.to_thread(service.require_admin, user)
    data = body.plan_data
    return await run_action(body.action, {
        "create_plan": partial(service.create_plan, data),
        "update_plan": partial(service.update_plan, data),
        "deactivate_plan": partial(service.deactivate_plan, data.id),
        "sync_from_stripe": service.sync_from_stripe,
        "list_plans": service.list_plans,
    })


@payments_router.post("/pg_sync-stripe-products", tags=["admin"])
@limiter.limit("5/minute")
async def sync_stripe_products(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Pull the active Stripe catalog into pg_merchant_plans."""
    service = PlanAdministration(supabase, settings)
    await asyncio.to_thread(service.require_admin, user)
    return await asyncio.to_thread(service.sync_from_stripe)


@payments_router.post("/pg_stripe-webhook", tags=["webhooks"])
async def stripe_webhook(
    request: Request,
    supabase: Client = Depends(get_supabase_client),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    The raw body is needed for signature verification, so it is read
    directly instead of being parsed into a model.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    handler = StripeWebhookHandler(supabase, settings)
    return await asyncio.to_thread(handler.handle_webhook, payload, signature)
