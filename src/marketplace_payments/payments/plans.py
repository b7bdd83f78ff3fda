"""
Merchant plan administration and the Stripe catalog sync.

Plans live in pg_merchant_plans, one row per Stripe price. Admins can create
plans (product + price in Stripe), edit or deactivate them, and pull the
whole active catalog from Stripe.
"""

import json
import logging
from typing import Any, Dict, List, Optional
import stripe
from postgrest.exceptions import APIError
from supabase import Client

from .customers import get_profile
from .errors import DatabaseError, NotFoundError, PaymentValidationError, PermissionDeniedError
from .subscriptions import utc_now
from ..config import Settings
from ..database.client import first_row, rows
from ..database.models import AuthenticatedUser, BillingInterval, PlanData, PLANS_TABLE

logger = logging.getLogger(__name__)

ADMIN_USER_TYPE = "admin"


def features_from_metadata(metadata: Optional[Dict[str, Any]]) -> List[str]:
    raw = (metadata or {}).get("features")
    if not raw:
        return []
    try:
        features = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed features metadata: {raw!r}")
        return []
    return [str(f) for f in features] if isinstance(features, list) else []


def plan_row_from_price(product: Any, price: Any) -> Dict[str, Any]:
    recurring = price.get("recurring")
    now = utc_now().isoformat()
    return {
        "stripe_product_id": product["id"],
        "stripe_price_id": price["id"],
        "name": product["name"],
        "description": product.get("description") or "",
        "price_amount": price.get("unit_amount") or 0,
        "price_currency": price["currency"],
        "billing_interval": recurring["interval"] if recurring else BillingInterval.ONE_TIME.value,
        "features": features_from_metadata(product.get("metadata")),
        "is_active": bool(product.get("active") and price.get("active")),
        "updated_at": now,
    }


class PlanAdministration:
    """Handles pg_manage-subscription-plans and pg_sync-stripe-products."""

    def __init__(self, supabase: Client, settings: Settings):
        self.supabase = supabase
        self.settings = settings

    def require_admin(self, user: AuthenticatedUser) -> None:
        profile = get_profile(self.supabase, user.id)
        if not profile or profile.user_type != ADMIN_USER_TYPE:
            raise PermissionDeniedError("Admin access required")

    def _get_plan(self, plan_id: Optional[str]) -> Dict[str, Any]:
        if not plan_id:
            raise PaymentValidationError("Plan ID is required")
        plan = first_row(self.supabase.table(PLANS_TABLE).select("*").eq("id", plan_id).limit(1).execute())
        if not plan:
            raise NotFoundError("Plan not found")
        return plan

    def create_plan(self, data: PlanData) -> Dict[str, Any]:
        if not data.name or data.price_amount is None:
            raise PaymentValidationError("Plan name and price_amount are required")

        currency = (data.price_currency or self.settings.default_currency).lower()
        interval = data.billing_interval or BillingInterval.MONTH
        features = data.features or []

        product = stripe.Product.create(
            name=data.name,
            description=data.description or None,
            metadata={"features": json.dumps(features)},
        )

        price_params: Dict[str, Any] = {
            "product": product.id,
            "unit_amount": data.price_amount,
            "currency": currency,
        }
        # One-time plans are a plain price; the 24 hour grant is applied locally
        if interval != BillingInterval.ONE_TIME:
            price_params["recurring"] = {"interval": interval.value}
        price = stripe.Price.create(**price_params)

        try:
            result = self.supabase.table(PLANS_TABLE).insert({
                "name": data.name,
                "description": data.description,
                "stripe_product_id": product.id,
                "stripe_price_id": price.id,
                "price_amount": data.price_amount,
                "price_currency": currency,
                "billing_interval": interval.value,
                "features": features,
                "is_active": True,
            }).execute()
        except APIError as e:
            logger.error(f"Failed to store plan for product {product.id}: {e.message}")
            # Products with prices cannot be deleted, only archived
            stripe.Product.modify(product.id, active=False)
            raise DatabaseError(f"Database error: {e.message}")

        logger.info(f"Created plan {data.name} ({product.id} / {price.id})")
        return {"success": True, "plan": first_row(result)}

    def update_plan(self, data: PlanData) -> Dict[str, Any]:
        existing = self._get_plan(data.id)

        product_changes: Dict[str, Any] = {}
        if data.name:
            product_changes["name"] = data.name
        if data.description:
            product_changes["description"] = data.description
        if data.features is not None:
            product_changes["metadata"] = {"features": json.dumps(data.features)}
        if product_changes and existing.get("stripe_product_id"):
            stripe.Product.modify(existing["stripe_product_id"], **product_changes)

        changes = {k: v for k, v in product_changes.items() if k != "metadata"}
        if data.features is not None:
            changes["features"] = data.features
        if data.is_active is not None:
            changes["is_active"] = data.is_active
        changes["updated_at"] = utc_now().isoformat()

        result = self.supabase.table(PLANS_TABLE).update(changes).eq("id", existing["id"]).execute()
        logger.info(f"Updated plan {existing['id']}: {sorted(changes)}")
        return {"success": True, "plan": first_row(result) or {**existing, **changes}}

    def deactivate_plan(self, plan_id: Optional[str]) -> Dict[str, Any]:
        existing = self._get_plan(plan_id)
        changes = {"is_active": False, "updated_at": utc_now().isoformat()}
        result = self.supabase.table(PLANS_TABLE).update(changes).eq("id", existing["id"]).execute()
        logger.info(f"Deactivated plan {existing['id']}")
        return {"success": True, "plan": first_row(result) or {**existing, **changes}}

    def list_plans(self) -> Dict[str, Any]:
        result = self.supabase.table(PLANS_TABLE).select("*").order("price_amount").execute()
        return {"success": True, "plans": rows(result)}

    def sync_from_stripe(self) -> Dict[str, Any]:
        """
        Upsert every active Stripe price as a plan, keyed on stripe_price_id,
        then deactivate plans whose product is no longer active.

        A failure on one price is reported and does not stop the sync.
        """
        logger.info("Starting Stripe product sync")
        products = list(stripe.Product.list(active=True, limit=100).auto_paging_iter())
        logger.info(f"Found {len(products)} active products in Stripe")

        if not products:
            return {"success": True, "message": "No active products found in Stripe", "synced": 0}

        synced = 0
        errors: List[Dict[str, Any]] = []
        for product in products:
            prices = stripe.Price.list(product=product["id"], active=True, limit=100).auto_paging_iter()
            for price in prices:
                try:
                    self.supabase.table(PLANS_TABLE).upsert(
                        plan_row_from_price(product, price), on_conflict="stripe_price_id"
                    ).execute()
                    synced += 1
                except APIError as e:
                    logger.error(f"Database error for price {price['id']}: {e.message}")
                    errors.append({"product_id": product["id"], "price_id": price["id"], "error": e.message})

        active_ids = [p["id"] for p in products]
        try:
            self.supabase.table(PLANS_TABLE).update({
                "is_active": False,
                "updated_at": utc_now().isoformat(),
            }).not_.in_("stripe_product_id", active_ids).execute()
        except APIError as e:
            logger.error(f"Error deactivating old products: {e.message}")
            errors.append({"operation": "deactivate_old_products", "error": e.message})

        logger.info(f"Sync completed: {synced} plans synced, {len(errors)} errors")
        response: Dict[str, Any] = {
            "success": not errors,
            "message": f"Sync completed. {synced} plans synced.",
            "synced": synced,
            "total_products": len(products),
        }
        if errors:
            response["errors"] = errors
        return response
