"""Bearer-token authentication against Supabase Auth.

Resolves the ``Authorization: Bearer <jwt>`` header to a Requester. Access to
individual projects and jobs is checked later by the job store.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException
from supabase import Client, create_client

from app.config import settings
from app.jobs.models import Requester

logger = logging.getLogger(__name__)

_auth_client: Optional[Client] = None


def _get_auth_client() -> Client:
    """Anon-key client used only to resolve user tokens."""
    global _auth_client
    if _auth_client is None:
        _auth_client = create_client(settings.supabase_url, settings.supabase_anon_key)
    return _auth_client


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing or invalid token")
    return token.strip()


async def verify_jwt(authorization: Optional[str] = Header(None)) -> Requester:
    """FastAPI dependency: the requester behind the bearer token, or 401."""
    token = _bearer_token(authorization)
    try:
        user = _get_auth_client().auth.get_user(token).user
    except Exception:
        logger.info("Rejected bearer token", exc_info=True)
        raise HTTPException(status_code=401, detail="Invalid token")
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Requester(user_id=str(user.id), email=user.email)
