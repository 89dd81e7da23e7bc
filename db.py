import logging
from supabase import create_async_client, AsyncClient
from postgrest.exceptions import APIError

import config
from errors import CollaboratorFailure, Conflict

logger = logging.getLogger(__name__)

__all__ = ["AsyncClient", "get_supabase", "execute"]

UNIQUE_VIOLATION = "23505"


async def get_supabase() -> AsyncClient:
    return await create_async_client(config.SUPABASE_URL, config.SUPABASE_KEY)


async def execute(query):
    """Run a PostgREST query, translating store errors into domain errors."""
    try:
        return await query.execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise Conflict(e.message or "Duplicate record") from e
        logger.error("Supabase query failed: %s (code=%s)", e.message, e.code)
        raise CollaboratorFailure("Storage request failed, please retry") from e
