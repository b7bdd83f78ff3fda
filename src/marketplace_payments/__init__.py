"""Marketplace Payments: Stripe payment orchestration for a Supabase-backed marketplace."""

__version__ = "0.1.0"
