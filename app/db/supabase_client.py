"""Service-role Supabase client and the job store built on it."""

import logging
from typing import Optional, Tuple

from supabase import Client, create_client

from app.config import Settings, settings
from app.jobs.supabase_store import SupabaseJobStore, SupabaseProjectDirectory

logger = logging.getLogger(__name__)

_client: Optional[Client] = None


def get_supabase(config: Settings = settings) -> Client:
    """Service-role client, created on first use and shared afterwards."""
    global _client
    if _client is not None:
        return _client
    missing = [
        name
        for name, value in (
            ("SUPABASE_URL", config.supabase_url),
            ("SUPABASE_SERVICE_ROLE_KEY", config.supabase_service_role_key),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(
            f"{' and '.join(missing)} must be set to run the pipeline service"
        )
    _client = create_client(config.supabase_url, config.supabase_service_role_key)
    logger.info("Supabase client created for %s", config.supabase_url)
    return _client


def create_supabase_store(config: Settings = settings) -> Tuple[SupabaseJobStore, SupabaseProjectDirectory]:
    """Job store and project directory sharing the service-role client."""
    client = get_supabase(config)
    directory = SupabaseProjectDirectory(client)
    return SupabaseJobStore(client, directory), directory
