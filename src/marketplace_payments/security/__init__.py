"""Authentication helpers for the payment endpoints."""
