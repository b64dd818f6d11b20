"""
Storage for pending authentication requests.

Every login attempt leaves an AuthenticationRequestContext (state, nonce,
custom state) behind; the return callback must find and consume it. The
contexts live either in the server session or, when
USE_COOKIE_INSTEAD_OF_SESSION is set, in an encrypted cookie so the sign-in
round trip does not depend on session state.

Stores stage their changes on the request; ``apply`` copies them onto the
outgoing response.
"""

import base64
import json
import logging
import os
import time
from typing import List, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from fastapi import Request, Response
from pydantic import ValidationError

from ..config import CookieEncryptionKey, Settings
from ..models import AuthenticationRequestContext

logger = logging.getLogger("aad_signin.auth")

SESSION_STATE_KEY = "oidc_requests"
STATE_COOKIE_NAME = "oidc-request-state"

GCM_NONCE_SIZE = 12

_UNSET = object()


def _prune(
    contexts: List[AuthenticationRequestContext],
    lifetime: int,
    max_amount: int,
) -> List[AuthenticationRequestContext]:
    """Drop expired contexts and keep the newest ``max_amount``."""
    now = time.time()
    live = [context for context in contexts if not context.is_expired(lifetime, now)]
    live.sort(key=lambda context: context.created_at)
    return live[-max_amount:]


def _load_contexts(raw: object) -> List[AuthenticationRequestContext]:
    contexts = []
    if not isinstance(raw, list):
        return contexts
    for item in raw:
        try:
            contexts.append(AuthenticationRequestContext.model_validate(item))
        except ValidationError:
            logger.warning("Discarding malformed authentication request context")
    return contexts


class StateStore:
    """
    Base class for request context stores.

    Subclasses implement ``_read`` and ``_write``; expiry and the
    per-browser limit are applied here.
    """

    def __init__(self, lifetime: int, max_amount: int):
        self.lifetime = lifetime
        self.max_amount = max_amount

    def save(self, request: Request, context: AuthenticationRequestContext) -> None:
        contexts = self._read(request)
        contexts.append(context)
        self._write(request, _prune(contexts, self.lifetime, self.max_amount))

    def pop(self, request: Request, state: str) -> Optional[AuthenticationRequestContext]:
        """
        Remove and return the live context matching ``state``.

        The context is consumed even if the caller later rejects the
        response, so each state value can be redeemed only once.
        """
        contexts = _prune(self._read(request), self.lifetime, self.max_amount)
        match = None
        remaining = []
        for context in contexts:
            if match is None and context.state == state:
                match = context
            else:
                remaining.append(context)
        self._write(request, remaining)
        return match

    def clear(self, request: Request) -> None:
        self._write(request, [])

    def apply(self, request: Request, response: Response) -> None:
        """Copy staged changes onto the response (no-op for session storage)."""
        pass

    def _read(self, request: Request) -> List[AuthenticationRequestContext]:
        raise NotImplementedError

    def _write(self, request: Request, contexts: List[AuthenticationRequestContext]) -> None:
        raise NotImplementedError


class SessionStateStore(StateStore):
    """Keeps pending contexts in the Starlette session."""

    def _read(self, request: Request) -> List[AuthenticationRequestContext]:
        return _load_contexts(request.session.get(SESSION_STATE_KEY))

    def _write(self, request: Request, contexts: List[AuthenticationRequestContext]) -> None:
        if contexts:
            request.session[SESSION_STATE_KEY] = [context.model_dump() for context in contexts]
        else:
            request.session.pop(SESSION_STATE_KEY, None)


class CookieStateStore(StateStore):
    """
    Keeps pending contexts in an AES-256-GCM encrypted cookie.

    The first key/iv pair encrypts; every pair is tried on decryption so keys
    can be rotated without breaking sign-ins that are in flight. Each cookie
    uses a fresh random GCM nonce and binds the pair's iv as associated data.
    """

    def __init__(
        self,
        keys: Sequence[CookieEncryptionKey],
        lifetime: int,
        max_amount: int,
        secure: bool = False,
    ):
        super().__init__(lifetime, max_amount)
        if not keys:
            raise ValueError("At least one cookie encryption key is required")
        self.keys = list(keys)
        self.secure = secure

    def encrypt(self, payload: bytes) -> str:
        pair = self.keys[0]
        nonce = os.urandom(GCM_NONCE_SIZE)
        sealed = AESGCM(pair.key.encode("utf-8")).encrypt(nonce, payload, pair.iv.encode("utf-8"))
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii").rstrip("=")

    def decrypt(self, token: str) -> Optional[bytes]:
        try:
            blob = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        except (ValueError, UnicodeEncodeError):
            return None
        nonce, sealed = blob[:GCM_NONCE_SIZE], blob[GCM_NONCE_SIZE:]
        for pair in self.keys:
            try:
                return AESGCM(pair.key.encode("utf-8")).decrypt(nonce, sealed, pair.iv.encode("utf-8"))
            except (InvalidTag, ValueError):
                continue
        return None

    def _read(self, request: Request) -> List[AuthenticationRequestContext]:
        staged = getattr(request.state, "oidc_state_cookie", _UNSET)
        token = request.cookies.get(STATE_COOKIE_NAME) if staged is _UNSET else staged
        if not token:
            return []

        payload = self.decrypt(token)
        if payload is None:
            logger.warning("Unable to decrypt authentication state cookie with any configured key")
            return []

        try:
            return _load_contexts(json.loads(payload))
        except ValueError:
            logger.warning("Authentication state cookie is not valid JSON")
            return []

    def _write(self, request: Request, contexts: List[AuthenticationRequestContext]) -> None:
        if not contexts:
            request.state.oidc_state_cookie = None
            return
        payload = json.dumps([context.model_dump() for context in contexts]).encode("utf-8")
        request.state.oidc_state_cookie = self.encrypt(payload)

    def apply(self, request: Request, response: Response) -> None:
        staged = getattr(request.state, "oidc_state_cookie", _UNSET)
        if staged is _UNSET:
            return
        if staged is None:
            response.delete_cookie(STATE_COOKIE_NAME, path="/")
            return
        # form_post returns are cross-site POSTs: SameSite=None, which requires Secure
        response.set_cookie(
            STATE_COOKIE_NAME,
            staged,
            max_age=self.lifetime,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="none" if self.secure else "lax",
        )


def build_state_store(settings: Settings) -> StateStore:
    if settings.USE_COOKIE_INSTEAD_OF_SESSION:
        return CookieStateStore(
            settings.COOKIE_ENCRYPTION_KEYS,
            lifetime=settings.nonce_lifetime,
            max_amount=settings.nonce_max_amount,
            secure=settings.needs_cross_site_cookies or settings.redirect_url.startswith("https://"),
        )
    return SessionStateStore(settings.nonce_lifetime, settings.nonce_max_amount)
