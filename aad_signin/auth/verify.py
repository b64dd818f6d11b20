"""
Verify callback for the OIDC strategy.

The strategy calls the verify function once the provider response and its
tokens passed validation. The callback checks the identity claim, resolves
the local user and auto-registers first-time users.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from fastapi import Request

from ..models import UserProfile
from ..users import UserRepository
from .exceptions import IdentityClaimMissing

logger = logging.getLogger("aad_signin.auth")


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a verification: either a user or the reason it failed."""

    user: Optional[UserProfile] = None
    error: Optional[Exception] = None
    created: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.user is not None

    @classmethod
    def success(cls, user: UserProfile, created: bool = False) -> "AuthResult":
        return cls(user=user, created=created)

    @classmethod
    def failure(cls, error: Exception) -> "AuthResult":
        return cls(error=error)


def verify_user(
    repository: UserRepository,
    issuer: str,
    subject: str,
    profile: Mapping[str, Any],
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    claims: Optional[Dict[str, Any]] = None,
) -> AuthResult:
    """
    Resolve the signed-in user, registering them on first sign-in.

    Args:
        repository: User directory
        issuer: Validated ``iss`` of the id_token
        subject: Validated ``sub`` of the id_token
        profile: Profile mapping built by the strategy; must carry ``oid``
        access_token: Access token from the token endpoint, if any
        refresh_token: Refresh token from the token endpoint, if any
        claims: Raw id_token claim set

    Returns:
        AuthResult with the stored user, or IdentityClaimMissing when the
        profile has no oid (the directory is left untouched)
    """
    oid = profile.get("oid")
    if not oid or not isinstance(oid, str):
        logger.warning(
            "Rejected sign-in without oid claim",
            extra={"issuer": issuer, "sub": subject},
        )
        return AuthResult.failure(IdentityClaimMissing())

    if claims is not None and "_json" not in profile:
        profile = {**profile, "_json": claims}

    user, created = repository.find_or_insert(UserProfile.from_profile(profile))
    if created:
        logger.info(f"Auto-registered user {oid}", extra={"oid": oid, "issuer": issuer})
    else:
        logger.debug(f"Returning user {oid}", extra={"oid": oid})

    return AuthResult.success(user, created=created)


def build_verify_callback(repository: UserRepository, pass_request: bool = False) -> Callable[..., AuthResult]:
    """
    Bind ``verify_user`` to a repository in the shape the strategy expects.

    With ``pass_request`` the callback takes the request as its first
    positional argument.
    """
    if pass_request:
        def verify_with_request(
            request: Request,
            issuer: str,
            subject: str,
            profile: Mapping[str, Any],
            access_token: Optional[str] = None,
            refresh_token: Optional[str] = None,
            claims: Optional[Dict[str, Any]] = None,
        ) -> AuthResult:
            return verify_user(repository, issuer, subject, profile, access_token, refresh_token, claims)

        return verify_with_request

    def verify(
        issuer: str,
        subject: str,
        profile: Mapping[str, Any],
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        claims: Optional[Dict[str, Any]] = None,
    ) -> AuthResult:
        return verify_user(repository, issuer, subject, profile, access_token, refresh_token, claims)

    return verify
