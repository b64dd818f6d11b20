"""
Pages Package

The home page and the protected API endpoint.
"""

from .routes import router as pages_router

__all__ = [
    "pages_router",
]
