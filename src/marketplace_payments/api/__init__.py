"""API module for Marketplace Payments."""

from .payment_endpoints import payments_router
from .main import app

__all__ = ["payments_router", "app"]
