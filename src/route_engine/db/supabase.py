"""Supabase client for the Python backend."""

import logging
from functools import lru_cache

from supabase import Client, create_client

from ..config import settings

logger = logging.getLogger(__name__)


@lru_cache()
def get_supabase_client() -> Client | None:
    """Get cached Supabase client instance.

    Returns:
        Supabase Client instance if configured, None otherwise.
        Note: This does not test the connection - actual queries may fail with network errors.
    """
    if not settings.supabase_url or not settings.supabase_key:
        logger.warning("Supabase credentials not configured (missing URL or key)")
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        return None


# Aggregate reads and writes go through the stored procedures in
# sql/route_engine_schema.sql so each call is a single snapshot/transaction:
#
# client.rpc("load_driver_route", {"p_route_id": route_id}).execute()
# client.rpc("save_driver_route", {"p_route": record, "p_expected_version": 3}).execute()
