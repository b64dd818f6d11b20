"""Errors raised by the authentication layer."""


class AuthError(Exception):
    """Base exception for authentication errors"""
    pass


class IdentityClaimMissing(AuthError):
    """The validated profile carries no usable oid claim."""

    def __init__(self, message: str = "No oid found"):
        super().__init__(message)


class AuthenticationFailed(AuthError):
    """The provider response, its tokens or the request context were rejected."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SessionDestroyFailed(AuthError):
    """Local session cleanup failed during logout."""
    pass


class LoginRequired(Exception):
    """Raised by the route guard when the request carries no signed-in user."""

    def __init__(self, login_url: str = "/login"):
        super().__init__(login_url)
        self.login_url = login_url
