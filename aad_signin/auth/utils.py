"""
Authentication utilities for OIDC discovery and token verification.

This module handles:
- Fetching and caching the provider's discovery document and JWKS
- Redeeming authorization codes at the token endpoint
- Verifying id_tokens (signature, audience, lifetime, issuer, nonce, hashes)
- Mapping id_token claims onto the profile passed to the verify callback
"""

import hashlib
import time
from typing import Any, Dict, List, Optional

import httpx
from jose import jwk, jwt, JWTError
from jose.utils import calculate_at_hash


HASH_ALGORITHMS = {
    "RS256": hashlib.sha256,
    "RS384": hashlib.sha384,
    "RS512": hashlib.sha512,
}


# =============================================================================
# Provider Client (discovery, JWKS, token endpoint)
# =============================================================================

class ProviderClient:
    """
    HTTP access to the identity provider with cached metadata and keys.

    Args:
        metadata_url: OpenID Connect discovery document URL
        cache_seconds: How long metadata and JWKS stay cached
        transport: Optional httpx transport (used by tests)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        metadata_url: str,
        cache_seconds: int = 3600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.metadata_url = metadata_url
        self.cache_seconds = cache_seconds
        self.transport = transport
        self.timeout = timeout

        self._metadata: Optional[Dict[str, Any]] = None
        self._metadata_time: float = 0.0
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_time: float = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    def _is_fresh(self, fetched_at: float) -> bool:
        return (time.time() - fetched_at) < self.cache_seconds

    async def fetch_metadata(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the discovery document with caching.

        Raises:
            httpx.HTTPError: If the metadata endpoint is unreachable
            ValueError: If required endpoints are missing
        """
        if not force_refresh and self._metadata and self._is_fresh(self._metadata_time):
            return self._metadata

        async with self._client() as client:
            response = await client.get(self.metadata_url)
            response.raise_for_status()
            metadata = response.json()

        for field in ("issuer", "authorization_endpoint", "jwks_uri"):
            if not metadata.get(field):
                raise ValueError(f"Invalid metadata response: missing '{field}' field")

        self._metadata = metadata
        self._metadata_time = time.time()
        return metadata

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the JWKS advertised by the metadata with caching.

        Raises:
            httpx.HTTPError: If the JWKS endpoint is unreachable
            ValueError: If response is invalid
        """
        if not force_refresh and self._jwks and self._is_fresh(self._jwks_time):
            return self._jwks

        metadata = await self.fetch_metadata()
        async with self._client() as client:
            response = await client.get(metadata["jwks_uri"])
            response.raise_for_status()
            jwks_data = response.json()

        if "keys" not in jwks_data:
            raise ValueError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks_data
        self._jwks_time = time.time()
        return jwks_data

    async def exchange_code(self, payload: Dict[str, str]) -> Dict[str, Any]:
        """
        Redeem an authorization code at the token endpoint.

        Raises:
            httpx.HTTPError: If the request fails or the endpoint returns an error
            ValueError: If the metadata has no token endpoint
        """
        metadata = await self.fetch_metadata()
        token_endpoint = metadata.get("token_endpoint")
        if not token_endpoint:
            raise ValueError("Provider metadata has no token_endpoint")

        async with self._client() as client:
            response = await client.post(
                token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

        if not response.is_success:
            error_data = {}
            if response.headers.get("content-type", "").startswith("application/json"):
                error_data = response.json()
            error_msg = error_data.get("error_description") or error_data.get("error") or "Token exchange failed"
            raise httpx.HTTPError(f"Token exchange failed: {error_msg}")

        return response.json()


# =============================================================================
# Token Verification
# =============================================================================

def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Find the JWKS entry matching the token's kid.

    Raises:
        JWTError: If token header is malformed or has no kid
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    kid = unverified_header.get("kid")
    if not kid:
        raise JWTError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    return None


def expand_issuers(issuers: List[str], claims: Dict[str, Any]) -> List[str]:
    """Fill the ``{tenantid}`` placeholder multi-tenant metadata uses."""
    tenant_id = claims.get("tid")
    expanded = []
    for issuer in issuers:
        if "{tenantid}" in issuer:
            if tenant_id:
                expanded.append(issuer.replace("{tenantid}", tenant_id))
        else:
            expanded.append(issuer)
    return expanded


def validate_code_hash(id_token: str, code: str, claims: Dict[str, Any]) -> None:
    """
    Check the c_hash claim binding a hybrid-flow id_token to its code.

    Raises:
        JWTError: If c_hash is missing or does not match
    """
    c_hash = claims.get("c_hash")
    if not c_hash:
        raise JWTError("id_token is missing the c_hash claim")

    algorithm = jwt.get_unverified_header(id_token).get("alg")
    hash_alg = HASH_ALGORITHMS.get(algorithm)
    if hash_alg is None:
        raise JWTError(f"Unsupported id_token algorithm: {algorithm}")

    if calculate_at_hash(code, hash_alg) != c_hash:
        raise JWTError("c_hash does not match the authorization code")


async def verify_id_token(
    id_token: str,
    provider: ProviderClient,
    client_id: str,
    issuers: Optional[List[str]] = None,
    nonce: Optional[str] = None,
    leeway: int = 300,
    access_token: Optional[str] = None,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify and decode an id_token.

    1. Finds the signing key in the JWKS (refreshing once on a kid miss)
    2. Verifies signature, audience and lifetime claims
    3. Checks the issuer against ``issuers`` when given
    4. Checks nonce, at_hash (with ``access_token``) and c_hash (with ``code``)

    Raises:
        JWTError: If the token is invalid, expired or does not match
        httpx.HTTPError: If the JWKS endpoint is unreachable
    """
    jwks = await provider.fetch_jwks()

    signing_key = get_signing_key(id_token, jwks)
    if not signing_key:
        # Keys may have rotated since the cache was filled
        jwks = await provider.fetch_jwks(force_refresh=True)
        signing_key = get_signing_key(id_token, jwks)

        if not signing_key:
            raise JWTError(
                "Unable to find matching signing key in JWKS. "
                "Token may be from a different tenant or keys may have rotated."
            )

    algorithm = jwt.get_unverified_header(id_token).get("alg")
    if algorithm not in HASH_ALGORITHMS:
        raise JWTError(f"Unsupported id_token algorithm: {algorithm}")

    try:
        public_key = jwk.construct(signing_key, algorithm)
    except Exception as e:
        raise JWTError(f"Failed to construct public key from JWK: {e}")

    try:
        claims = jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=[algorithm],
            audience=client_id,
            access_token=access_token,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iat": True,
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iss": False,
                "verify_sub": True,
                "verify_jti": False,
                "verify_at_hash": access_token is not None,
                "leeway": leeway,
            },
        )
    except jwt.ExpiredSignatureError:
        raise JWTError("id_token has expired")
    except jwt.JWTClaimsError as e:
        raise JWTError(f"Invalid token claims: {e}")
    except JWTError as e:
        raise JWTError(f"Token verification failed: {e}")

    if issuers:
        accepted = expand_issuers(issuers, claims)
        if claims.get("iss") not in accepted:
            raise JWTError(f"Invalid issuer: {claims.get('iss')}")

    if nonce is not None and claims.get("nonce") != nonce:
        raise JWTError("Nonce mismatch")

    if code is not None:
        validate_code_hash(id_token, code, claims)

    return claims


# =============================================================================
# Profile Helpers
# =============================================================================

def extract_email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    """
    Extract an email address from id_token claims.

    Azure AD may use different claim names depending on configuration:
    email, preferred_username, upn or unique_name.
    """
    for claim_name in ["email", "preferred_username", "upn", "unique_name"]:
        email = claims.get(claim_name)
        if email and "@" in email:
            return email.lower().strip()

    return None


def get_user_display_name(claims: Dict[str, Any]) -> Optional[str]:
    name = claims.get("name")
    if name:
        return name

    given, family = claims.get("given_name"), claims.get("family_name")
    if given or family:
        return " ".join(part for part in (given, family) if part)

    return None


def build_profile(claims: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map validated id_token claims onto the profile handed to the verify callback.

    ``oid`` is copied as-is and may be missing; the verify callback decides
    what to do about that.
    """
    return {
        "sub": claims.get("sub"),
        "oid": claims.get("oid"),
        "upn": claims.get("upn") or claims.get("preferred_username"),
        "displayName": get_user_display_name(claims),
        "name": {
            "familyName": claims.get("family_name"),
            "givenName": claims.get("given_name"),
            "middleName": claims.get("middle_name"),
        },
        "email": extract_email_from_claims(claims),
        "_json": claims,
    }
