"""
FastAPI Application Factory
===========================

Entry point for the Azure AD OpenID Connect sign-in sample.

Routes:
    - /                     : Home page (shows the signed-in user)
    - /api                  : Protected API (redirects to /login when anonymous)
    - /login                : Starts sign-in with the identity provider
    - /auth/openid/return   : Reply URL (GET for query, POST for form_post)
    - /logout               : Ends the local and the provider session
    - /health               : Health check endpoint

Running the Service:
    Development:
        uvicorn --factory aad_signin.main:get_application --reload --port 3000

    Direct:
        python -m aad_signin.main

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn --factory aad_signin.main:get_application --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from . import __version__
from .auth import auth_router
from .auth.exceptions import LoginRequired
from .auth.strategy import OIDCStrategy
from .auth.verify import build_verify_callback
from .config import Settings, get_settings, validate_configuration
from .pages import pages_router
from .users import InMemoryUserRepository, UserRepository


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: configure logging and report configuration warnings.
    Shutdown: log the number of users registered during this run (the
    directory is not persisted).
    """
    settings: Settings = app.state.settings

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("aad_signin.main")

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    for error in status["errors"]:
        logger.error(f"Configuration error: {error}")

    logger.info(
        "Starting sign-in sample",
        extra={
            "identity_metadata": settings.identity_metadata_url,
            "response_type": settings.RESPONSE_TYPE,
            "response_mode": settings.RESPONSE_MODE,
        }
    )

    yield

    logger.info(
        "Shutting down sign-in sample",
        extra={"registered_users": len(app.state.users)}
    )


def create_app(
    settings: Optional[Settings] = None,
    users: Optional[UserRepository] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (loaded from the environment when omitted)
        users: User directory (a fresh in-memory one when omitted)
        transport: Optional httpx transport for identity provider calls

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    users = users if users is not None else InMemoryUserRepository()

    app = FastAPI(
        title="Azure AD OpenID Connect Sample",
        description="Sign-in with Microsoft Entra ID using OpenID Connect",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.users = users
    app.state.strategy = OIDCStrategy(
        settings,
        build_verify_callback(users, pass_request=settings.PASS_REQ_TO_CALLBACK),
        transport=transport,
    )

    # Pending request contexts in the session must survive the form_post return
    session_crosses_sites = settings.needs_cross_site_cookies and not settings.USE_COOKIE_INSTEAD_OF_SESSION
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        same_site="none" if session_crosses_sites else "lax",
        https_only=session_crosses_sites or settings.redirect_url.startswith("https://"),
    )

    app.include_router(pages_router)
    app.include_router(auth_router)

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "version": __version__,
        }

    @app.exception_handler(LoginRequired)
    async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
        return RedirectResponse(url=exc.login_url, status_code=302)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Log unhandled errors and return a standardized 500 response.

        Only the failing request is affected.
        """
        logger = logging.getLogger("aad_signin.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL.upper() == "DEBUG" else None
            }
        )

    return app


def get_application() -> FastAPI:
    """Factory used by ``uvicorn --factory aad_signin.main:get_application``."""
    return create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        create_app(settings),
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
