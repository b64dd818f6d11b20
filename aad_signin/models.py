"""
Data Models Module

Pydantic models shared by the authentication layer and the pages:
- UserProfile: the local user record created on first sign-in
- AuthenticationRequestContext: per-attempt state correlating the
  authorization request with the return callback
"""

import time
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# User Models
# ============================================================================

class UserProfile(BaseModel):
    """
    User profile built from validated id_token claims.

    The record is frozen: the directory hands out the stored instance
    itself, so nothing may change it after registration.
    """

    model_config = ConfigDict(frozen=True)

    oid: str = Field(..., min_length=1, description="Stable object identifier of the user")
    sub: Optional[str] = Field(None, description="Subject claim (pairwise per application)")
    upn: Optional[str] = Field(None, description="User principal name")
    display_name: Optional[str] = Field(None, description="User display name")
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    email: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict, description="Raw id_token claim set")

    @classmethod
    def from_profile(cls, profile: Mapping[str, Any]) -> "UserProfile":
        """
        Build a record from the profile mapping produced by the OIDC strategy.

        A raw claim set is accepted too: there ``name`` is the display name
        string rather than the ``{givenName, familyName}`` mapping.
        """
        name = profile.get("name")
        display_name = profile.get("displayName")
        if not isinstance(name, Mapping):
            if display_name is None and isinstance(name, str):
                display_name = name
            name = {}
        return cls(
            oid=profile["oid"],
            sub=profile.get("sub"),
            upn=profile.get("upn") or profile.get("preferred_username"),
            display_name=display_name,
            given_name=name.get("givenName") or profile.get("given_name"),
            family_name=name.get("familyName") or profile.get("family_name"),
            email=profile.get("email"),
            claims=dict(profile.get("_json") or {}),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"claims"}, exclude_none=True)


# ============================================================================
# Authentication Request Models
# ============================================================================

class AuthenticationRequestContext(BaseModel):
    """State kept between the authorization redirect and the return callback."""

    state: str
    nonce: str
    custom_state: Optional[str] = None
    resource_url: Optional[str] = None
    failure_redirect: str = "/"
    created_at: float = Field(default_factory=time.time)

    def is_expired(self, lifetime: int, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.created_at + lifetime < now
