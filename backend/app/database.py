"""Supabase client construction."""

from supabase import Client, create_client

from .config import Settings


def create_supabase_client(settings: Settings) -> Client:
    """Build a Supabase client with the backend's privileged key."""
    # Prefer new secret key, fall back to legacy service_role_key
    api_key = settings.supabase_secret_key or settings.supabase_service_role_key
    if not api_key:
        raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(settings.supabase_url, api_key)
