"""
Tests for provider access and id_token verification helpers.
"""

import httpx
import pytest
from jose import JWTError

from aad_signin.auth.utils import (
    ProviderClient,
    build_profile,
    expand_issuers,
    extract_email_from_claims,
    verify_id_token,
)
from aad_signin.tests.idp import (
    CLIENT_ID,
    ISSUER,
    METADATA_URL,
    FakeIdentityProvider,
    generate_private_key,
    mint_id_token,
    public_jwk,
)


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def client(provider):
    return ProviderClient(METADATA_URL, cache_seconds=3600, transport=provider.transport)


class TestProviderClient:
    """Test suite for discovery and key retrieval"""

    @pytest.mark.asyncio
    async def test_jwks_is_cached(self, provider, client):
        first = await client.fetch_jwks()
        second = await client.fetch_jwks()

        assert first == second
        assert provider.jwks_fetches == 1

    @pytest.mark.asyncio
    async def test_force_refresh(self, provider, client):
        await client.fetch_jwks()
        await client.fetch_jwks(force_refresh=True)

        assert provider.jwks_fetches == 2

    @pytest.mark.asyncio
    async def test_metadata_unavailable(self, provider, client):
        provider.metadata_available = False

        with pytest.raises(httpx.HTTPError):
            await client.fetch_metadata()

    @pytest.mark.asyncio
    async def test_token_endpoint_error_is_raised(self, client):
        with pytest.raises(httpx.HTTPError, match="Authorization code expired"):
            await client.exchange_code({"grant_type": "authorization_code", "code": "unknown"})


class TestVerifyIdToken:
    """Test suite for id_token verification"""

    @pytest.mark.asyncio
    async def test_valid_token(self, client):
        token = mint_id_token(nonce="n-1")

        claims = await verify_id_token(token, client, CLIENT_ID, issuers=[ISSUER], nonce="n-1")

        assert claims["aud"] == CLIENT_ID
        assert claims["nonce"] == "n-1"

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, client):
        with pytest.raises(JWTError, match="Nonce"):
            await verify_id_token(mint_id_token(nonce="n-1"), client, CLIENT_ID, nonce="n-2")

    @pytest.mark.asyncio
    async def test_wrong_audience(self, client):
        token = mint_id_token(nonce="n-1", audience="someone-else")

        with pytest.raises(JWTError):
            await verify_id_token(token, client, CLIENT_ID, nonce="n-1")

    @pytest.mark.asyncio
    async def test_rotated_key_triggers_one_refresh(self, provider, client):
        await client.fetch_jwks()
        rotated = generate_private_key()
        provider.keys.append(public_jwk(rotated, "rotated-kid"))
        token = mint_id_token(nonce="n-1", private_key=rotated, kid="rotated-kid")

        claims = await verify_id_token(token, client, CLIENT_ID, nonce="n-1")

        assert claims["nonce"] == "n-1"
        assert provider.jwks_fetches == 2

    @pytest.mark.asyncio
    async def test_code_hash(self, client):
        token = mint_id_token(nonce="n-1", code="code-1")

        await verify_id_token(token, client, CLIENT_ID, nonce="n-1", code="code-1")
        with pytest.raises(JWTError, match="c_hash"):
            await verify_id_token(token, client, CLIENT_ID, nonce="n-1", code="code-2")

    @pytest.mark.asyncio
    async def test_tenant_placeholder_issuer(self, client):
        token = mint_id_token(nonce="n-1", tid="test-tenant-id")
        template = "https://login.microsoftonline.com/{tenantid}/v2.0"

        claims = await verify_id_token(token, client, CLIENT_ID, issuers=[template], nonce="n-1")

        assert claims["iss"] == ISSUER


def test_expand_issuers():
    issuers = ["https://sts.windows.net/{tenantid}/", "https://fixed/"]

    assert expand_issuers(issuers, {"tid": "t1"}) == ["https://sts.windows.net/t1/", "https://fixed/"]
    assert expand_issuers(issuers, {}) == ["https://fixed/"]


def test_build_profile():
    claims = {
        "sub": "sub-1",
        "oid": "oid-1",
        "name": "Test User",
        "given_name": "Test",
        "family_name": "User",
        "preferred_username": "Test.User@Contoso.com",
    }

    profile = build_profile(claims)

    assert profile["oid"] == "oid-1"
    assert profile["displayName"] == "Test User"
    assert profile["name"] == {"familyName": "User", "givenName": "Test", "middleName": None}
    assert profile["upn"] == "Test.User@Contoso.com"
    assert profile["email"] == "test.user@contoso.com"
    assert profile["_json"] is claims


def test_profile_without_oid():
    assert build_profile({"sub": "sub-1"})["oid"] is None


def test_email_requires_at_sign():
    assert extract_email_from_claims({"upn": "not-an-email"}) is None
