import logging
from typing import Optional

import httpx
from fastapi import Header, HTTPException, Depends
from supabase import AuthError, AuthRetryableError

from db import get_supabase, AsyncClient, execute
from errors import CollaboratorFailure
from models import AuthUser, Profile, Role

logger = logging.getLogger(__name__)


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization Header")
    return authorization.replace("Bearer ", "")


async def get_current_user(
    authorization: Optional[str] = Header(None),
    sbase: AsyncClient = Depends(get_supabase)
) -> AuthUser:
    """
    Resolves the caller from the Supabase Auth token.
    This is the only identity the booking core trusts; ids in request bodies are ignored.
    """
    token = _bearer(authorization)

    try:
        user_res = await sbase.auth.get_user(token)
    except (AuthRetryableError, httpx.HTTPError, ConnectionError, TimeoutError) as e:
        logger.error("Auth service unreachable: %s", e)
        raise CollaboratorFailure("Authentication service unavailable, please retry") from e
    except AuthError as e:
        logger.info("Auth Error: %s", e)
        raise HTTPException(status_code=401, detail="Authentication Failed")

    if not user_res or not user_res.user:
        raise HTTPException(status_code=401, detail="Invalid Token")

    return AuthUser(id=user_res.user.id, email=user_res.user.email)


async def get_current_profile(
    user: AuthUser = Depends(get_current_user),
    sbase: AsyncClient = Depends(get_supabase)
) -> Profile:
    """
    Loads the caller's profile fresh from the store, so role and
    subscription_plan reflect the current row rather than anything cached client-side.
    """
    profile_res = await execute(sbase.table("profiles").select("*").eq("id", str(user.id)))
    if not profile_res.data:
        raise HTTPException(status_code=403, detail="Profile not found. Please choose a role first.")
    return Profile(**profile_res.data[0])


async def verify_customer(profile: Profile = Depends(get_current_profile)) -> Profile:
    if profile.role != Role.CUSTOMER:
        raise HTTPException(status_code=403, detail="Only customers can do this")
    return profile


async def verify_provider(profile: Profile = Depends(get_current_profile)) -> Profile:
    if profile.role != Role.SERVICE_PROVIDER:
        raise HTTPException(status_code=403, detail="Only service providers can do this")
    return profile


async def get_optional_profile(
    authorization: Optional[str] = Header(None),
    sbase: AsyncClient = Depends(get_supabase)
) -> Optional[Profile]:
    """Same as get_current_profile, but anonymous callers get None instead of a 401."""
    if not authorization:
        return None
    try:
        user = await get_current_user(authorization, sbase)
        return await get_current_profile(user, sbase)
    except HTTPException:
        return None
