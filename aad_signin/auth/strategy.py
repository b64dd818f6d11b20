"""
OpenID Connect strategy for Azure AD / Entra ID.

Sequences the two halves of a sign-in:

- ``authorize``: builds the authorization request, remembers its state and
  nonce, and redirects the browser to the provider.
- ``verify_return``: validates what the provider sent back to the reply URL
  (for the configured response type), then hands the identity to the verify
  callback.

Signature and claim validation is done by python-jose; provider HTTP calls
go through httpx (see ``utils``).
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
from fastapi import Request, Response
from fastapi.responses import RedirectResponse
from jose import JWTError

from ..config import Settings
from ..models import AuthenticationRequestContext
from .exceptions import AuthenticationFailed
from .state import StateStore, build_state_store
from .utils import ProviderClient, build_profile, verify_id_token
from .verify import AuthResult

logger = logging.getLogger("aad_signin.auth")

LOGGING_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
}


@dataclass
class AuthenticateOptions:
    """Per-route options for ``authorize`` and ``verify_return``."""

    resource_url: Optional[str] = None
    custom_state: Optional[str] = None
    failure_redirect: str = "/"
    success_redirect: str = "/"
    prompt: Optional[str] = None
    login_hint: Optional[str] = None
    domain_hint: Optional[str] = None


class OIDCStrategy:
    """
    Authorization-code / hybrid / implicit OIDC sign-in.

    Args:
        settings: Application settings (strategy options)
        verify: Verify callback; receives ``(issuer, subject, profile,
            access_token, refresh_token, claims)``, prefixed with the
            request when PASS_REQ_TO_CALLBACK is set, and returns an AuthResult
        state_store: Where request contexts are kept (derived from settings
            when omitted)
        transport: Optional httpx transport for provider calls
    """

    def __init__(
        self,
        settings: Settings,
        verify: Callable[..., AuthResult],
        state_store: Optional[StateStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.verify = verify
        self.state_store = state_store or build_state_store(settings)
        self.provider = ProviderClient(
            settings.identity_metadata_url,
            cache_seconds=settings.METADATA_CACHE_SECONDS,
            transport=transport,
        )
        self.response_type = settings.RESPONSE_TYPE.split()
        logger.setLevel(LOGGING_LEVELS[settings.LOGGING_LEVEL])

    # =========================================================================
    # Authorization Request
    # =========================================================================

    async def authorize(self, request: Request, options: AuthenticateOptions) -> Response:
        """
        Redirect the browser to the provider's authorization endpoint.

        On failure to build the request (metadata unreachable or invalid)
        the browser is sent to ``options.failure_redirect`` instead.
        """
        try:
            metadata = await self.provider.fetch_metadata()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Unable to load identity provider metadata: {e}")
            return RedirectResponse(url=options.failure_redirect, status_code=302)

        state = secrets.token_urlsafe(24) + (options.custom_state or "")
        nonce = secrets.token_urlsafe(24)
        resource_url = options.resource_url or self.settings.RESOURCE_URL

        context = AuthenticationRequestContext(
            state=state,
            nonce=nonce,
            custom_state=options.custom_state,
            resource_url=resource_url,
            failure_redirect=options.failure_redirect,
        )

        params = {
            "client_id": self.settings.CLIENT_ID,
            "response_type": self.settings.RESPONSE_TYPE,
            "response_mode": self.settings.RESPONSE_MODE,
            "redirect_uri": self.settings.redirect_url,
            "scope": " ".join(self.settings.scope_list),
            "state": state,
            "nonce": nonce,
        }
        if resource_url:
            params["resource"] = resource_url
        for name in ("prompt", "login_hint", "domain_hint"):
            value = getattr(options, name)
            if value:
                params[name] = value

        authorization_url = f"{metadata['authorization_endpoint']}?{urlencode(params)}"

        response = RedirectResponse(url=authorization_url, status_code=302)
        self.state_store.save(request, context)
        self.state_store.apply(request, response)

        logger.info("Redirecting to identity provider", extra={"state_prefix": state[:8]})
        return response

    # =========================================================================
    # Return Callback
    # =========================================================================

    async def verify_return(
        self, request: Request, options: AuthenticateOptions
    ) -> Tuple[AuthResult, Response]:
        """
        Validate the provider's response and run the verify callback.

        Never raises for authentication problems: the returned AuthResult
        carries the error and the response redirects to the failure page.
        """
        params = await self._read_params(request)

        context = None
        state = params.get("state")
        if state:
            context = self.state_store.pop(request, state)

        try:
            result = await self._authenticate(request, params, context)
        except AuthenticationFailed as e:
            result = AuthResult.failure(e)

        if result.ok:
            redirect_to = options.success_redirect
            logger.info("Authentication succeeded", extra={"oid": result.user.oid})
        else:
            redirect_to = context.failure_redirect if context else options.failure_redirect
            logger.warning(f"Authentication failed: {result.error}")

        response = RedirectResponse(url=redirect_to, status_code=302)
        self.state_store.apply(request, response)
        return result, response

    async def _read_params(self, request: Request) -> Dict[str, str]:
        if request.method == "POST":
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
        return dict(request.query_params)

    async def _authenticate(
        self,
        request: Request,
        params: Dict[str, str],
        context: Optional[AuthenticationRequestContext],
    ) -> AuthResult:
        if params.get("error"):
            raise AuthenticationFailed(
                f"Identity provider returned an error: {params.get('error_description') or params['error']}"
            )

        if not params.get("state"):
            raise AuthenticationFailed("Missing state parameter")

        if context is None:
            raise AuthenticationFailed("No pending authentication request matches the returned state")

        code = params.get("code") if "code" in self.response_type else None
        id_token = params.get("id_token") if "id_token" in self.response_type else None

        if "code" in self.response_type and not code:
            raise AuthenticationFailed("Missing authorization code")
        if "id_token" in self.response_type and not id_token:
            raise AuthenticationFailed("Missing id_token")

        claims: Dict[str, Any] = {}
        access_token = None
        refresh_token = None

        try:
            metadata = await self.provider.fetch_metadata()
            issuers = self._accepted_issuers(metadata)

            if id_token:
                # Front-channel token: bound to the code via c_hash in hybrid flows
                claims = await verify_id_token(
                    id_token,
                    self.provider,
                    client_id=self.settings.CLIENT_ID,
                    issuers=issuers,
                    nonce=context.nonce,
                    leeway=self.settings.clock_skew,
                    code=code,
                )

            if code:
                tokens = await self.provider.exchange_code(self._token_request(code, context))
                if "id_token" not in tokens:
                    raise AuthenticationFailed("Token response missing id_token")

                access_token = tokens.get("access_token")
                refresh_token = tokens.get("refresh_token")
                back_channel_claims = await verify_id_token(
                    tokens["id_token"],
                    self.provider,
                    client_id=self.settings.CLIENT_ID,
                    issuers=issuers,
                    nonce=context.nonce,
                    leeway=self.settings.clock_skew,
                    access_token=access_token,
                )

                if id_token and back_channel_claims.get("sub") != claims.get("sub"):
                    raise AuthenticationFailed("Subject mismatch between id_tokens")
                claims = back_channel_claims
        except JWTError as e:
            raise AuthenticationFailed(f"id_token validation failed: {e}")
        except httpx.HTTPError as e:
            raise AuthenticationFailed(f"Unable to communicate with identity provider: {e}")
        except ValueError as e:
            raise AuthenticationFailed(f"Invalid identity provider response: {e}")

        return self._call_verify(request, claims, access_token, refresh_token)

    def _accepted_issuers(self, metadata: Dict[str, Any]) -> Optional[list]:
        if not self.settings.VALIDATE_ISSUER:
            return None
        return self.settings.issuer_list or [metadata["issuer"]]

    def _token_request(self, code: str, context: AuthenticationRequestContext) -> Dict[str, str]:
        payload = {
            "grant_type": "authorization_code",
            "client_id": self.settings.CLIENT_ID,
            "code": code,
            "redirect_uri": self.settings.redirect_url,
        }
        if self.settings.CLIENT_SECRET:
            payload["client_secret"] = self.settings.CLIENT_SECRET
        if context.resource_url:
            payload["resource"] = context.resource_url
        return payload

    def _call_verify(
        self,
        request: Request,
        claims: Dict[str, Any],
        access_token: Optional[str],
        refresh_token: Optional[str],
    ) -> AuthResult:
        args = (claims.get("iss"), claims.get("sub"), build_profile(claims), access_token, refresh_token, claims)
        if self.settings.PASS_REQ_TO_CALLBACK:
            return self.verify(request, *args)
        return self.verify(*args)
