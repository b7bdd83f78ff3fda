"""Supabase client construction and small query helpers."""

import logging
from typing import Any, Dict, List, Optional
from supabase import Client, create_client

from ..config import Settings

logger = logging.getLogger(__name__)

_client: Optional[Client] = None


def create_supabase_client(settings: Settings) -> Optional[Client]:
    """Create a service-role Supabase client, or None when unconfigured."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        logger.warning("Supabase credentials not found. Payment endpoints may not work properly.")
        return None
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def get_client(settings: Settings) -> Optional[Client]:
    """Return the process-wide client, creating it on first use."""
    global _client
    if _client is None:
        _client = create_supabase_client(settings)
    return _client


def first_row(result: Any) -> Optional[Dict[str, Any]]:
    """First row of a PostgREST response, or None."""
    return result.data[0] if result.data else None


def rows(result: Any) -> List[Dict[str, Any]]:
    return result.data or []
