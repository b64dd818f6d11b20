"""
Session Serialization Module
============================

Only the user's oid is written to the session; the full profile is looked
up in the user directory on every request that needs it.
"""

import logging
from typing import Optional

from fastapi import Request

from ..models import UserProfile
from ..users import UserRepository, find_user
from .exceptions import LoginRequired

logger = logging.getLogger("aad_signin.auth")

SESSION_USER_KEY = "user"


# =============================================================================
# Serializer
# =============================================================================

def serialize_user(user: UserProfile) -> str:
    return user.oid


def deserialize_user(oid: Optional[str], repository: UserRepository) -> Optional[UserProfile]:
    """
    Re-hydrate a user from the value stored in the session.

    Returns:
        The stored profile, or None when the oid is unknown (for example
        after a restart emptied the directory)
    """
    if not oid:
        return None
    return find_user(repository, oid)


def log_in(request: Request, user: UserProfile) -> None:
    request.session[SESSION_USER_KEY] = serialize_user(user)


def log_out(request: Request) -> None:
    request.session.pop(SESSION_USER_KEY, None)


# =============================================================================
# FastAPI Dependencies
# =============================================================================

def get_user_repository(request: Request) -> UserRepository:
    return request.app.state.users


async def get_optional_user(request: Request) -> Optional[UserProfile]:
    """
    FastAPI dependency returning the signed-in user, or None.

    A session that names an oid the directory does not know is treated as
    anonymous and its user entry is dropped.
    """
    oid = request.session.get(SESSION_USER_KEY)
    if oid is None:
        return None

    user = deserialize_user(oid, get_user_repository(request))
    if user is None:
        logger.info("Session references unknown user, clearing it", extra={"oid": oid})
        log_out(request)
    return user


async def ensure_authenticated(request: Request) -> UserProfile:
    """
    Route guard for protected endpoints.

    Usage:
        @router.get("/protected")
        async def protected(user: UserProfile = Depends(ensure_authenticated)):
            ...

    Raises:
        LoginRequired: handled by the app, which redirects to /login
    """
    user = await get_optional_user(request)
    if user is None:
        raise LoginRequired("/login")
    return user
