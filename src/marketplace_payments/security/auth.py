"""
Request authentication for the payment endpoints.

Callers send their Supabase access token as a bearer token; it is verified
with the Supabase auth API using the service-role client.
"""

import asyncio
import logging
from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from supabase import AuthError, Client

from ..config import Settings, get_settings
from ..database.client import get_client
from ..database.models import AuthenticatedUser
from ..payments.errors import AuthenticationError

logger = logging.getLogger(__name__)

# Security scheme; missing headers are reported by get_current_user
security = HTTPBearer(auto_error=False)


def get_supabase_client(settings: Settings = Depends(get_settings)) -> Client:
    """Dependency to get the Supabase client."""
    client = get_client(settings)
    if not client:
        raise HTTPException(status_code=500, detail="Database service unavailable")
    return client


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    supabase: Client = Depends(get_supabase_client),
) -> AuthenticatedUser:
    """Get current authenticated user from the Supabase JWT."""
    if not credentials or not credentials.credentials:
        raise AuthenticationError("Missing authorization header")

    try:
        response = await asyncio.to_thread(supabase.auth.get_user, credentials.credentials)
    except AuthError as e:
        logger.error(f"Authentication error: {e}")
        raise AuthenticationError("Unauthorized")

    if not response or not response.user:
        raise AuthenticationError("Unauthorized")

    return AuthenticatedUser(
        id=response.user.id,
        email=response.user.email,
        user_metadata=response.user.user_metadata or {},
    )
