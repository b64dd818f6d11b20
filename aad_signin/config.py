"""
Configuration module for the Azure AD sign-in sample.

This module uses Pydantic Settings to load and validate environment variables
for the OpenID Connect strategy, the session middleware and the HTTP server.

Environment variables are loaded from .env file or system environment.
"""

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


RESPONSE_TYPES = ("code", "code id_token", "id_token code", "id_token")
RESPONSE_MODES = ("form_post", "query")
LOGGING_LEVELS = ("error", "warn", "info")

DEFAULT_NONCE_LIFETIME = 3600
DEFAULT_NONCE_MAX_AMOUNT = 10
DEFAULT_CLOCK_SKEW = 300

# Endpoints that serve several tenants publish a templated issuer
MULTI_TENANT_SEGMENTS = ("/common/", "/organizations/", "/consumers/")

SAMPLE_COOKIE_ENCRYPTION_KEYS = [
    {"key": "12345678901234567890123456789012", "iv": "123456789012"},
    {"key": "abcdefghijklmnopqrstuvwxyzabcdef", "iv": "abcdefghijkl"},
]
SAMPLE_SESSION_SECRET = "keyboard cat"


class CookieEncryptionKey(BaseModel):
    """One key/iv pair used to encrypt the request-state cookie."""

    key: str = Field(..., min_length=32, max_length=32)
    iv: str = Field(..., min_length=12, max_length=12)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Option names mirror the ones the OIDC strategy recognises
    (identityMetadata, clientID, responseType, ...) in upper snake case.
    """

    # =========================================================================
    # Identity Provider (OIDC)
    # =========================================================================

    TENANT_NAME: str = Field(
        default="YOUR_TENANT_NAME",
        description="Azure AD tenant name, used to derive IDENTITY_METADATA when it is not set",
    )

    IDENTITY_METADATA: Optional[str] = Field(
        None,
        description="OpenID Connect discovery document URL",
    )

    CLIENT_ID: str = Field(
        ...,
        description="Application (client) ID registered with the identity provider",
        min_length=1,
    )

    CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret, required whenever RESPONSE_TYPE requests a code",
    )

    RESPONSE_TYPE: str = Field(default="code id_token")

    RESPONSE_MODE: str = Field(default="form_post")

    REDIRECT_URL: Optional[str] = Field(
        None,
        description="Reply URL registered for the app (defaults to the local return route)",
    )

    ALLOW_HTTP_FOR_REDIRECT_URL: bool = Field(default=True)

    VALIDATE_ISSUER: bool = Field(default=True)

    ISSUER: Optional[str] = Field(
        None,
        description="Comma-separated issuers to accept instead of the metadata issuer",
    )

    PASS_REQ_TO_CALLBACK: bool = Field(default=False)

    SCOPE: Optional[str] = Field(
        None,
        description="Extra scopes requested besides 'openid profile' (comma or space separated)",
    )

    LOGGING_LEVEL: str = Field(default="info")

    NONCE_LIFETIME: Optional[int] = Field(default=None, ge=1)

    NONCE_MAX_AMOUNT: Optional[int] = Field(default=5, ge=1)

    CLOCK_SKEW: Optional[int] = Field(default=None, ge=0)

    RESOURCE_URL: Optional[str] = Field(
        default="https://graph.windows.net",
        description="Resource an access token should be requested for",
    )

    METADATA_CACHE_SECONDS: int = Field(default=3600, ge=0)

    # =========================================================================
    # Request State Storage
    # =========================================================================

    USE_COOKIE_INSTEAD_OF_SESSION: bool = Field(default=True)

    COOKIE_ENCRYPTION_KEYS: List[CookieEncryptionKey] = Field(
        default_factory=lambda: [CookieEncryptionKey(**pair) for pair in SAMPLE_COOKIE_ENCRYPTION_KEYS],
    )

    # =========================================================================
    # Session & Logout
    # =========================================================================

    SESSION_SECRET: str = Field(default=SAMPLE_SESSION_SECRET, min_length=1)

    SESSION_MAX_AGE_SECONDS: int = Field(default=86400, ge=60)

    LOGOUT_ENDPOINT: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/logout",
    )

    POST_LOGOUT_REDIRECT_URI: Optional[str] = Field(None)

    # =========================================================================
    # Server
    # =========================================================================

    SERVER_HOST: str = Field(default="0.0.0.0")

    SERVER_PORT: int = Field(default=3000, ge=1, le=65535)

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def identity_metadata_url(self) -> str:
        if self.IDENTITY_METADATA:
            return self.IDENTITY_METADATA
        return (
            f"https://login.microsoftonline.com/{self.TENANT_NAME}.onmicrosoft.com"
            "/.well-known/openid-configuration"
        )

    @property
    def redirect_url(self) -> str:
        return self.REDIRECT_URL or f"http://localhost:{self.SERVER_PORT}/auth/openid/return"

    @property
    def post_logout_redirect_uri(self) -> str:
        return self.POST_LOGOUT_REDIRECT_URI or f"http://localhost:{self.SERVER_PORT}"

    @property
    def destroy_session_url(self) -> str:
        """URL the browser is sent to in order to end the provider session."""
        return f"{self.LOGOUT_ENDPOINT}?post_logout_redirect_uri={self.post_logout_redirect_uri}"

    @property
    def needs_cross_site_cookies(self) -> bool:
        """
        form_post replies reach the return URL as cross-site POSTs, which
        only carry cookies marked SameSite=None (and therefore Secure).
        Browsers accept Secure cookies from http://localhost.
        """
        return self.RESPONSE_MODE == "form_post"

    @property
    def issuer_list(self) -> List[str]:
        if not self.ISSUER:
            return []
        return [item.strip() for item in self.ISSUER.split(",") if item.strip()]

    @property
    def scope_list(self) -> List[str]:
        """
        Scopes sent with the authorization request.

        'openid' and 'profile' are always present; 'offline_access' is added
        when a code is requested so that a refresh token comes back.
        """
        scopes = ["openid", "profile"]
        if "code" in self.RESPONSE_TYPE.split():
            scopes.append("offline_access")
        if self.SCOPE:
            for scope in self.SCOPE.replace(",", " ").split():
                if scope not in scopes:
                    scopes.append(scope)
        return scopes

    @property
    def nonce_lifetime(self) -> int:
        return self.NONCE_LIFETIME or DEFAULT_NONCE_LIFETIME

    @property
    def nonce_max_amount(self) -> int:
        return self.NONCE_MAX_AMOUNT or DEFAULT_NONCE_MAX_AMOUNT

    @property
    def clock_skew(self) -> int:
        return DEFAULT_CLOCK_SKEW if self.CLOCK_SKEW is None else self.CLOCK_SKEW

    @property
    def is_multi_tenant_metadata(self) -> bool:
        return any(segment in self.identity_metadata_url for segment in MULTI_TENANT_SEGMENTS)

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("RESPONSE_TYPE")
    @classmethod
    def validate_response_type(cls, v: str) -> str:
        normalized = " ".join(v.split())
        if normalized not in RESPONSE_TYPES:
            raise ValueError(
                f"RESPONSE_TYPE must be one of {list(RESPONSE_TYPES)}, got: {v}"
            )
        return normalized

    @field_validator("RESPONSE_MODE")
    @classmethod
    def validate_response_mode(cls, v: str) -> str:
        if v not in RESPONSE_MODES:
            raise ValueError(
                f"RESPONSE_MODE must be one of {list(RESPONSE_MODES)}, got: {v}"
            )
        return v

    @field_validator("LOGGING_LEVEL")
    @classmethod
    def validate_logging_level(cls, v: str) -> str:
        v = v.lower()
        if v not in LOGGING_LEVELS:
            raise ValueError(
                f"LOGGING_LEVEL must be one of {list(LOGGING_LEVELS)}, got: {v}"
            )
        return v

    @field_validator("COOKIE_ENCRYPTION_KEYS", mode="before")
    @classmethod
    def parse_cookie_encryption_keys(cls, v: Any) -> Any:
        """
        Accept the keys as a JSON string as well as a list.

        Example:
            COOKIE_ENCRYPTION_KEYS='[{"key": "<32 chars>", "iv": "<12 chars>"}]'
        """
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v

    @model_validator(mode="after")
    def validate_strategy_options(self) -> "Settings":
        """Cross-field rules the OIDC strategy would otherwise reject at runtime."""
        if not self.identity_metadata_url.startswith("https://"):
            raise ValueError("IDENTITY_METADATA must use https")

        if "code" in self.RESPONSE_TYPE.split() and not self.CLIENT_SECRET:
            raise ValueError(
                f"CLIENT_SECRET is required when RESPONSE_TYPE is '{self.RESPONSE_TYPE}'"
            )

        if "id_token" in self.RESPONSE_TYPE.split() and self.RESPONSE_MODE == "query":
            raise ValueError(
                "RESPONSE_MODE 'query' cannot carry an id_token; use 'form_post'"
            )

        if self.redirect_url.startswith("http://"):
            if not self.ALLOW_HTTP_FOR_REDIRECT_URL:
                raise ValueError(
                    "REDIRECT_URL uses http; set ALLOW_HTTP_FOR_REDIRECT_URL to allow it"
                )
        elif not self.redirect_url.startswith("https://"):
            raise ValueError(f"Invalid REDIRECT_URL: {self.redirect_url}")

        if self.VALIDATE_ISSUER and self.is_multi_tenant_metadata and not self.issuer_list:
            raise ValueError(
                "ISSUER is required when VALIDATE_ISSUER is true and IDENTITY_METADATA "
                "is a multi-tenant endpoint"
            )

        if self.USE_COOKIE_INSTEAD_OF_SESSION and not self.COOKIE_ENCRYPTION_KEYS:
            raise ValueError(
                "COOKIE_ENCRYPTION_KEYS is required when USE_COOKIE_INSTEAD_OF_SESSION is true"
            )

        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                         or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> Dict[str, Any]:
    """
    Review loaded settings and return a status report.

    Settings that parse are already valid; this flags the sample defaults
    that must not reach a real deployment.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if settings.SESSION_SECRET == SAMPLE_SESSION_SECRET:
        warnings.append("SESSION_SECRET is the sample value")
    elif len(settings.SESSION_SECRET) < 32:
        warnings.append("SESSION_SECRET is shorter than recommended (32+ chars)")

    sample_keys = {pair["key"] for pair in SAMPLE_COOKIE_ENCRYPTION_KEYS}
    if settings.USE_COOKIE_INSTEAD_OF_SESSION and any(
        pair.key in sample_keys for pair in settings.COOKIE_ENCRYPTION_KEYS
    ):
        warnings.append("COOKIE_ENCRYPTION_KEYS contains the sample keys")

    if settings.redirect_url.startswith("http://"):
        warnings.append("REDIRECT_URL uses http (only acceptable for local development)")

    if not settings.VALIDATE_ISSUER:
        warnings.append("Issuer validation is disabled")

    if settings.TENANT_NAME == "YOUR_TENANT_NAME" and not settings.IDENTITY_METADATA:
        errors.append("Neither TENANT_NAME nor IDENTITY_METADATA is configured")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "identity_metadata": settings.identity_metadata_url,
        "response_type": settings.RESPONSE_TYPE,
        "response_mode": settings.RESPONSE_MODE,
    }


if __name__ == "__main__":
    """
    Validate your .env configuration:
        python -m aad_signin.config
    """
    try:
        config = get_settings()
    except Exception as e:
        print(f"Configuration error: {e}")
        raise SystemExit(1)

    status = validate_configuration(config)
    print(json.dumps(status, indent=2))
    raise SystemExit(0 if status["valid"] else 1)
