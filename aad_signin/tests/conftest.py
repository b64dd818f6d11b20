"""
Shared fixtures for the sign-in sample tests.
"""

from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from aad_signin.main import create_app
from aad_signin.tests.idp import (
    BASE_URL,
    FakeIdentityProvider,
    authorization_params,
    make_settings,
    mint_id_token,
)
from aad_signin.users import InMemoryUserRepository


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def users():
    return InMemoryUserRepository()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def app(settings, users, provider):
    return create_app(settings, users=users, transport=provider.transport)


@pytest.fixture
def client(app):
    return TestClient(app, base_url=BASE_URL)


@pytest.fixture
def sign_in(client, provider):
    """
    Drive a complete hybrid (code id_token, form_post) sign-in.

    Returns the response of the return callback.
    """
    def _sign_in(**claims: Any) -> httpx.Response:
        login = client.get("/login", follow_redirects=False)
        params = authorization_params(login)
        code = "auth-code-" + params["state"][:8]
        provider.issue_code(code, nonce=params["nonce"], **claims)
        return client.post(
            "/auth/openid/return",
            data={
                "code": code,
                "id_token": mint_id_token(nonce=params["nonce"], code=code, **claims),
                "state": params["state"],
            },
            follow_redirects=False,
        )

    return _sign_in
