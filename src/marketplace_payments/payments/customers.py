"""Lazy Stripe customer creation for marketplace users."""

import logging
from datetime import datetime, timezone
from typing import Optional
import stripe
from postgrest.exceptions import APIError
from supabase import Client

from .errors import DatabaseError
from ..database.client import first_row
from ..database.models import AuthenticatedUser, Profile, PROFILES_TABLE

logger = logging.getLogger(__name__)

# Customer metadata key the webhook uses to map Stripe objects back to users
USER_ID_METADATA_KEY = "supabase_user_id"


def get_profile(supabase: Client, user_id: str) -> Optional[Profile]:
    result = supabase.table(PROFILES_TABLE).select("*").eq("id", user_id).limit(1).execute()
    row = first_row(result)
    return Profile.model_validate(row) if row else None


def get_or_create_customer(supabase: Client, user: AuthenticatedUser) -> str:
    """
    Return the caller's Stripe customer ID, creating the customer (and the
    profile row, if missing) on first use.
    """
    profile = get_profile(supabase, user.id)
    if profile and profile.stripe_customer_id:
        return profile.stripe_customer_id

    customer = stripe.Customer.create(
        email=user.email,
        metadata={USER_ID_METADATA_KEY: user.id},
    )

    try:
        supabase.table(PROFILES_TABLE).upsert({
            "id": user.id,
            "email": user.email,
            "stripe_customer_id": customer.id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }).execute()
    except APIError as e:
        logger.error(f"Failed to store customer {customer.id} for user {user.id}: {e.message}")
        stripe.Customer.delete(customer.id)
        raise DatabaseError(f"Database error: {e.message}")

    logger.info(f"Created Stripe customer {customer.id} for user {user.id}")
    return customer.id
