"""Tests for tenant authentication."""

import time
from unittest.mock import patch

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from courier.api.auth import (
    AuthenticatedBusiness,
    TokenValidator,
    authenticate_business,
    get_token_validator,
    reset_auth_singletons,
)
from courier.config import Settings
from courier.exceptions import AuthenticationError


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestTokenValidator:
    """Tests for token creation and validation."""

    @pytest.fixture
    def validator(self):
        """Create a token validator with test secret."""
        return TokenValidator("test-secret-key")

    def test_create_token(self, validator):
        """Token format: business_id:expires_at:signature."""
        token = validator.create_token("biz_123")
        business_id, expires_at, signature = token.split(":")
        assert business_id == "biz_123"
        assert int(expires_at) > time.time()
        assert len(signature) == 64

    def test_validate_token_success(self, validator):
        token = validator.create_token("biz_123")
        business = validator.validate_token(token)

        assert isinstance(business, AuthenticatedBusiness)
        assert business.business_id == "biz_123"
        assert business.expires_at is not None

    def test_business_id_with_colon(self, validator):
        """Business IDs may contain colons; the token is split from the right."""
        token = validator.create_token("org:biz_1")
        assert validator.validate_token(token).business_id == "org:biz_1"

    def test_validate_token_invalid_format(self, validator):
        with pytest.raises(AuthenticationError, match="Invalid token format"):
            validator.validate_token("not-a-token")

    def test_validate_token_invalid_signature(self, validator):
        token = validator.create_token("biz_123")
        tampered = token.replace("biz_123", "biz_999")

        with pytest.raises(AuthenticationError, match="Invalid token signature"):
            validator.validate_token(tampered)

    def test_validate_token_expired(self, validator):
        token = validator.create_token("biz_123", expire_minutes=1)

        with patch("courier.api.auth.time.time", return_value=time.time() + 120):
            with pytest.raises(AuthenticationError, match="expired"):
                validator.validate_token(token)

    def test_different_secrets(self):
        token = TokenValidator("secret-1").create_token("biz_1")

        with pytest.raises(AuthenticationError):
            TokenValidator("secret-2").validate_token(token)

    def test_empty_business_rejected(self, validator):
        with pytest.raises(ValueError):
            validator.create_token("")


class TestAuthenticateBusiness:
    """Tests for authenticate_business()."""

    def setup_method(self):
        reset_auth_singletons()

    def test_header_identity_when_auth_disabled(self):
        settings = Settings(env="test")

        business = authenticate_business(settings, None, "  biz_1 ")

        assert business.business_id == "biz_1"
        assert business.expires_at is None

    def test_missing_header(self):
        with pytest.raises(AuthenticationError, match="X-Business-Id"):
            authenticate_business(Settings(env="test"), None, None)

    def test_token_required_when_auth_enabled(self):
        settings = Settings(env="test", auth_enabled=True, auth_secret_key="k" * 32)

        with pytest.raises(AuthenticationError, match="Missing authentication"):
            authenticate_business(settings, None, "biz_1")

    def test_token_wins_over_header(self):
        settings = Settings(env="test", auth_enabled=True, auth_secret_key="k" * 32)
        token = get_token_validator(settings.effective_auth_secret_key).create_token("biz_7")

        business = authenticate_business(settings, bearer(token), "biz_1")

        assert business.business_id == "biz_7"


class TestGlobalSingletons:
    """Tests for the cached token validator."""

    def test_same_key_same_instance(self):
        reset_auth_singletons()
        assert get_token_validator("a") is get_token_validator("a")

    def test_reset(self):
        first = get_token_validator("a")
        reset_auth_singletons()
        assert get_token_validator("a") is not first
