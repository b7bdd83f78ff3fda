"""
Stripe Connect onboarding for merchants.

A merchant with an active plan gets one Express account. Its capability
flags are mirrored into pg_stripe_connect_accounts, and every onboarding
step is appended to pg_merchant_onboarding_logs.
"""

import logging
from typing import Any, Dict, Optional
import stripe
from postgrest.exceptions import APIError
from supabase import Client

from .customers import get_profile
from .errors import ConflictError, DatabaseError, NotFoundError, PermissionDeniedError
from .subscriptions import is_current, update_profile, utc_now
from ..config import Settings
from ..database.client import first_row, rows
from ..database.models import (
    AccountData,
    AuthenticatedUser,
    MerchantStatus,
    OnboardingStatus,
    SubscriptionStatus,
    CONNECT_ACCOUNTS_TABLE,
    ONBOARDING_LOGS_TABLE,
    USER_SUBSCRIPTIONS_TABLE,
)

logger = logging.getLogger(__name__)


def onboarding_status(account: Any) -> OnboardingStatus:
    if account.get("charges_enabled") and account.get("payouts_enabled"):
        return OnboardingStatus.COMPLETED
    if account.get("details_submitted"):
        requirements = account.get("requirements") or {}
        if requirements.get("disabled_reason"):
            return OnboardingStatus.RESTRICTED
        return OnboardingStatus.IN_PROGRESS
    return OnboardingStatus.PENDING


def merchant_status_for(account: Any) -> MerchantStatus:
    if not account.get("details_submitted"):
        return MerchantStatus.ONBOARDING_STARTED
    if account.get("charges_enabled") and account.get("payouts_enabled"):
        return MerchantStatus.ACTIVE
    return MerchantStatus.ONBOARDING_COMPLETED


def sync_connect_account(supabase: Client, account: Any) -> Dict[str, Any]:
    """Mirror a Stripe account's capability flags onto its local row."""
    values = {
        "onboarding_status": onboarding_status(account).value,
        "charges_enabled": bool(account.get("charges_enabled")),
        "payouts_enabled": bool(account.get("payouts_enabled")),
        "requirements": dict(account.get("requirements") or {}),
        "updated_at": utc_now().isoformat(),
    }
    supabase.table(CONNECT_ACCOUNTS_TABLE).update(values).eq("stripe_account_id", account["id"]).execute()
    logger.info(
        f"Connect account {account['id']}: charges={values['charges_enabled']} "
        f"payouts={values['payouts_enabled']} status={values['onboarding_status']}"
    )
    return values


def log_onboarding_event(supabase: Client, user_id: str, event_type: str, event_data: Dict[str, Any]) -> None:
    try:
        supabase.table(ONBOARDING_LOGS_TABLE).insert({
            "user_id": user_id,
            "event_type": event_type,
            "event_data": event_data,
        }).execute()
    except APIError as e:
        # The audit trail never blocks onboarding itself
        logger.error(f"Failed to log onboarding event {event_type} for {user_id}: {e.message}")


class ConnectOnboarding:
    """Handles pg_stripe-connect-onboarding actions."""

    def __init__(self, supabase: Client, settings: Settings):
        self.supabase = supabase
        self.settings = settings

    def _require_account_id(self, user_id: str) -> str:
        profile = get_profile(self.supabase, user_id)
        if not profile or not profile.stripe_connect_account_id:
            raise NotFoundError("Connect account not found")
        return profile.stripe_connect_account_id

    def _has_active_subscription(self, user_id: str) -> bool:
        result = (
            self.supabase.table(USER_SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .execute()
        )
        return any(is_current(s) for s in rows(result))

    def create_connect_account(self, user: AuthenticatedUser) -> Dict[str, Any]:
        logger.info(f"Creating Connect account for user {user.id}")

        profile = get_profile(self.supabase, user.id)
        if not profile:
            raise NotFoundError("User profile not found")

        if not self._has_active_subscription(user.id):
            raise PermissionDeniedError("Active subscription required for merchant onboarding")

        existing = first_row(
            self.supabase.table(CONNECT_ACCOUNTS_TABLE).select("id").eq("user_id", user.id).limit(1).execute()
        )
        if profile.stripe_connect_account_id or existing:
            raise ConflictError("Connect account already exists")

        account = stripe.Account.create(
            type="express",
            country=self.settings.connect_country,
            email=user.email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            business_type="individual",
            metadata={"user_id": user.id, "email": user.email or ""},
        )

        try:
            update_profile(self.supabase, user.id, {
                "stripe_connect_account_id": account.id,
                "merchant_status": MerchantStatus.ONBOARDING_STARTED.value,
            })
            self.supabase.table(CONNECT_ACCOUNTS_TABLE).upsert({
                "user_id": user.id,
                "stripe_account_id": account.id,
                "onboarding_status": OnboardingStatus.PENDING.value,
                "charges_enabled": bool(account.get("charges_enabled")),
                "payouts_enabled": bool(account.get("payouts_enabled")),
            }, on_conflict="user_id").execute()
        except APIError as e:
            logger.error(f"Failed to store Connect account {account.id}: {e.message}")
            stripe.Account.delete(account.id)
            raise DatabaseError(f"Database error: {e.message}")

        log_onboarding_event(self.supabase, user.id, "connect_account_created", {
            "stripe_account_id": account.id,
            "account_type": account.get("type"),
        })

        return {
            "success": True,
            "account_id": account.id,
            "next_step": "create_onboarding_link",
        }

    def create_onboarding_link(self, user: AuthenticatedUser, account_data: Optional[AccountData] = None) -> Dict[str, Any]:
        account_id = self._require_account_id(user.id)
        account_data = account_data or AccountData()

        link = self._create_link(
            user.id,
            account_id,
            refresh_url=account_data.refresh_url or self.settings.onboarding_refresh_url,
            return_url=account_data.return_url or self.settings.onboarding_return_url,
        )
        log_onboarding_event(self.supabase, user.id, "onboarding_link_created", {
            "stripe_account_id": account_id,
            "expires_at": link["expires_at"],
        })
        return link

    def refresh_onboarding_link(self, user: AuthenticatedUser) -> Dict[str, Any]:
        """Issue a fresh link after the previous one expired or was visited."""
        account_id = self._require_account_id(user.id)
        link = self._create_link(
            user.id,
            account_id,
            refresh_url=self.settings.onboarding_refresh_url,
            return_url=self.settings.onboarding_return_url,
        )
        log_onboarding_event(self.supabase, user.id, "onboarding_link_refreshed", {
            "stripe_account_id": account_id,
            "expires_at": link["expires_at"],
        })
        return link

    def _create_link(self, user_id: str, account_id: str, refresh_url: str, return_url: str) -> Dict[str, Any]:
        account_link = stripe.AccountLink.create(
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        try:
            update_profile(self.supabase, user_id, {"onboarding_url": account_link.url})
        except APIError as e:
            raise DatabaseError(f"Database error: {e.message}")

        return {
            "success": True,
            "onboarding_url": account_link.url,
            "expires_at": account_link.expires_at,
        }

    def get_account_status(self, user: AuthenticatedUser) -> Dict[str, Any]:
        profile = get_profile(self.supabase, user.id)
        if not profile or not profile.stripe_connect_account_id:
            return {
                "success": True,
                "account_status": "not_created",
                "merchant_status": profile.merchant_status.value if profile else MerchantStatus.NONE.value,
            }

        account = stripe.Account.retrieve(profile.stripe_connect_account_id)
        sync_connect_account(self.supabase, account)

        complete = bool(
            account.get("details_submitted") and account.get("charges_enabled") and account.get("payouts_enabled")
        )
        merchant_status = profile.merchant_status
        if complete and merchant_status != MerchantStatus.ACTIVE:
            merchant_status = MerchantStatus.ACTIVE
            update_profile(self.supabase, user.id, {"merchant_status": merchant_status.value})
            log_onboarding_event(self.supabase, user.id, "onboarding_completed", {
                "stripe_account_id": account.id,
                "charges_enabled": account.get("charges_enabled"),
                "payouts_enabled": account.get("payouts_enabled"),
            })

        return {
            "success": True,
            "account_status": {
                "id": account.id,
                "charges_enabled": account.get("charges_enabled"),
                "payouts_enabled": account.get("payouts_enabled"),
                "details_submitted": account.get("details_submitted"),
                "requirements": account.get("requirements"),
                "business_type": account.get("business_type"),
                "country": account.get("country"),
            },
            "merchant_status": merchant_status.value,
            "onboarding_complete": complete,
        }

    def handle_onboarding_return(self, user: AuthenticatedUser) -> Dict[str, Any]:
        account_id = self._require_account_id(user.id)
        account = stripe.Account.retrieve(account_id)
        sync_connect_account(self.supabase, account)

        new_status = merchant_status_for(account)
        update_profile(self.supabase, user.id, {
            "merchant_status": new_status.value,
            "onboarding_url": None,
        })
        log_onboarding_event(self.supabase, user.id, "onboarding_return", {
            "stripe_account_id": account.id,
            "details_submitted": account.get("details_submitted"),
            "charges_enabled": account.get("charges_enabled"),
            "payouts_enabled": account.get("payouts_enabled"),
            "new_status": new_status.value,
        })

        ready = new_status == MerchantStatus.ACTIVE
        return {
            "success": True,
            "merchant_status": new_status.value,
            "account_ready": ready,
            "message": (
                "Congratulations! Your merchant account is now active."
                if ready else
                "Onboarding submitted. We'll notify you when your account is approved."
            ),
        }
