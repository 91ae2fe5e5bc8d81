"""Tenant authentication for the Courier API.

Every request is resolved to a business identifier before it reaches the
service. With auth enabled this comes from a signed Bearer token; with
auth disabled (development) it is read from the ``X-Business-Id`` header.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from courier.exceptions import AuthenticationError
from courier.logging import get_logger

if TYPE_CHECKING:
    from courier.config import Settings

logger = get_logger(__name__)

BUSINESS_ID_HEADER = "X-Business-Id"

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)


class AuthenticatedBusiness(BaseModel):
    """The tenant a request acts on behalf of.

    Attributes:
        business_id: Business identifier.
        expires_at: Token expiry as a unix timestamp (None for header identity).
    """

    model_config = ConfigDict(extra="forbid")

    business_id: str = Field(min_length=1)
    expires_at: int | None = None


class TokenValidator:
    """Validates Bearer tokens using HMAC-SHA256.

    Token format: ``business_id:expires_at:signature`` where
    ``signature = HMAC(secret, "business_id:expires_at")``.
    """

    def __init__(self, secret_key: str) -> None:
        self.secret_key = secret_key.encode()

    def _sign(self, payload: str) -> str:
        return hmac.new(self.secret_key, payload.encode(), hashlib.sha256).hexdigest()

    def create_token(self, business_id: str, expire_minutes: int = 60) -> str:
        """Create a signed token for a business."""
        if not business_id:
            raise ValueError("business_id is required")
        expires_at = int(time.time()) + (expire_minutes * 60)
        payload = f"{business_id}:{expires_at}"
        return f"{payload}:{self._sign(payload)}"

    def validate_token(self, token: str) -> AuthenticatedBusiness:
        """Validate a token and return the business it was issued to.

        Raises:
            AuthenticationError: If token is malformed, forged or expired.
        """
        parts = token.rsplit(":", 2)
        if len(parts) != 3 or not parts[0]:
            raise AuthenticationError("Invalid token format")

        business_id, expires_at_str, signature = parts
        expected = self._sign(f"{business_id}:{expires_at_str}")
        if not hmac.compare_digest(signature, expected):
            raise AuthenticationError("Invalid token signature")

        try:
            expires_at = int(expires_at_str)
        except ValueError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e
        if time.time() > expires_at:
            raise AuthenticationError("Token has expired")

        return AuthenticatedBusiness(business_id=business_id, expires_at=expires_at)


@lru_cache(maxsize=1)
def get_token_validator(secret_key: str) -> TokenValidator:
    """Get or create the token validator singleton.

    The secret_key parameter ensures a new validator is created if the key changes.
    """
    return TokenValidator(secret_key)


def reset_auth_singletons() -> None:
    """Reset auth singletons (for testing)."""
    get_token_validator.cache_clear()


def authenticate_business(
    settings: Settings,
    credentials: HTTPAuthorizationCredentials | None,
    business_header: str | None,
) -> AuthenticatedBusiness:
    """Resolve the calling business.

    Raises:
        AuthenticationError: If no valid identity was supplied.
    """
    if settings.is_auth_enabled:
        if credentials is None:
            raise AuthenticationError("Missing authentication credentials")
        validator = get_token_validator(settings.effective_auth_secret_key)
        business = validator.validate_token(credentials.credentials)
        logger.debug("Business authenticated", business_id=business.business_id)
        return business

    business_id = (business_header or "").strip()
    if not business_id:
        raise AuthenticationError(f"Missing {BUSINESS_ID_HEADER} header")
    return AuthenticatedBusiness(business_id=business_id)


__all__ = [
    "BUSINESS_ID_HEADER",
    "AuthenticatedBusiness",
    "TokenValidator",
    "authenticate_business",
    "get_token_validator",
    "reset_auth_singletons",
    "security",
]
