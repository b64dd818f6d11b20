"""
Authentication Package

This package signs users in with Microsoft Entra ID (Azure AD) using
OpenID Connect and keeps them signed in through the session.

Modules:
- routes: /login, /auth/openid/return and /logout
- strategy: OIDC authorization request and return-callback validation
- utils: discovery/JWKS fetching, code redemption, id_token verification
- state: storage of pending authentication requests (session or cookie)
- verify: verify callback with auto-registration of first-time users
- session: session (de)serialization and the route guard

The authentication flow:
1. Browser hits /login, which redirects to the identity provider
2. User authenticates with Entra ID
3. Provider posts the response to /auth/openid/return
4. The strategy validates it and calls the verify callback
5. The user's oid is stored in the session; later requests look it up
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
