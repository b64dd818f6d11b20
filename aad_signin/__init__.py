"""
Azure AD OpenID Connect sign-in sample.

A FastAPI application that signs users in through Microsoft Entra ID /
Azure AD and keeps them signed in with a session cookie.
"""

__version__ = "1.0.0"
