"""
Authentication routes: login, the OIDC return URL and logout.

``/login`` and ``/auth/openid/return`` hand the protocol work to the
OIDCStrategy; both end in a redirect, never in an error page.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import RedirectResponse

from ..config import Settings
from .exceptions import SessionDestroyFailed
from .session import log_in
from .strategy import AuthenticateOptions, OIDCStrategy

logger = logging.getLogger("aad_signin.auth")

CUSTOM_STATE = "my_state"
FAILURE_REDIRECT = "/"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["authentication"])


def get_strategy(request: Request) -> OIDCStrategy:
    return request.app.state.strategy


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    login_hint: Optional[str] = Query(None, description="Pre-fill the username on the sign-in page"),
    domain_hint: Optional[str] = Query(None, description="Skip home realm discovery"),
    prompt: Optional[str] = Query(None, description="e.g. 'login' or 'select_account'"),
):
    """
    Start sign-in by redirecting to the identity provider.

    Returns:
        302 to the authorization endpoint, or to '/' if the request could
        not be built
    """
    settings = get_app_settings(request)
    options = AuthenticateOptions(
        resource_url=settings.RESOURCE_URL,
        custom_state=CUSTOM_STATE,
        failure_redirect=FAILURE_REDIRECT,
        prompt=prompt,
        login_hint=login_hint,
        domain_hint=domain_hint,
    )
    return await get_strategy(request).authorize(request, options)


# =============================================================================
# Return URL
# =============================================================================

@auth_router.api_route("/auth/openid/return", methods=["GET", "POST"], response_class=RedirectResponse)
async def openid_return(request: Request):
    """
    Handle the provider's response (query string for GET, form body for POST).

    On success the user's oid is stored in the session. Either way the
    browser is redirected to '/'.
    """
    options = AuthenticateOptions(failure_redirect=FAILURE_REDIRECT, success_redirect="/")
    result, response = await get_strategy(request).verify_return(request, options)

    if result.ok:
        log_in(request, result.user)

    return response


# =============================================================================
# Logout Endpoint
# =============================================================================

def destroy_session(request: Request) -> None:
    request.session.clear()


@auth_router.get("/logout", response_class=RedirectResponse)
async def logout(request: Request) -> Response:
    """
    Clear the local session, then end the provider session.

    Local cleanup is best effort: the redirect to the provider's logout
    endpoint happens even if it fails.
    """
    settings = get_app_settings(request)
    strategy = get_strategy(request)
    response = RedirectResponse(url=settings.destroy_session_url, status_code=302)

    try:
        destroy_session(request)
        strategy.state_store.clear(request)
        strategy.state_store.apply(request, response)
    except Exception as e:
        error = SessionDestroyFailed(str(e))
        logger.warning(f"Failed to destroy session: {error}", exc_info=True)
    else:
        logger.info("User logged out")

    return response
