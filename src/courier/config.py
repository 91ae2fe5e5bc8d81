"""Configuration management for Courier."""

import logging
import secrets
import warnings
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class DeliveryPolicy(BaseModel):
    """Retry and timeout policy applied to every delivery attempt.

    Passed explicitly to the dispatcher and scheduler at construction so the
    attempt logic never reads ambient configuration.

    The backoff before attempt ``n + 1`` is::

        min(backoff_base_seconds * 2 ** (n - 1), backoff_max_seconds)
            * (1 + uniform(0, jitter_ratio))

    Attributes:
        max_attempts: Total HTTP attempts allowed per delivery (5 default).
        backoff_base_seconds: Delay after the first failed attempt.
        backoff_max_seconds: Cap applied before jitter.
        jitter_ratio: Upper bound of the random fraction added to each delay.
        request_timeout_seconds: Hard timeout for one HTTP attempt.
        error_summary_max_length: Bound on stored error text.
        response_body_max_length: Bound on stored response body.
    """

    max_attempts: int = Field(default=5, ge=1, le=20, description="Maximum HTTP attempts")
    backoff_base_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Backoff after the first failure (doubles each attempt)",
    )
    backoff_max_seconds: float = Field(
        default=3600.0,
        gt=0.0,
        description="Maximum backoff interval before jitter",
    )
    jitter_ratio: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Random fraction of the delay added as jitter",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout for a single delivery attempt",
    )
    error_summary_max_length: int = Field(
        default=500,
        ge=32,
        description="Maximum characters kept in last_error",
    )
    response_body_max_length: int = Field(
        default=1000,
        ge=0,
        description="Maximum characters kept from the receiver's response body",
    )

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "DeliveryPolicy":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError(
                f"backoff_max_seconds ({self.backoff_max_seconds}) must be >= "
                f"backoff_base_seconds ({self.backoff_base_seconds})"
            )
        return self


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_DATABASE_URL=postgresql://localhost/courier
        COURIER_DELIVERY__MAX_ATTEMPTS=8

    Security Notes:
        - In production (COURIER_ENV=production), auth and HTTPS-only
          webhook URLs are enabled by default
        - A missing auth secret key in production raises an error
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    database_url: str | None = Field(
        default=None,
        description="PostgreSQL DSN. If not set, an in-memory store is used.",
    )
    database_pool_min_size: int = Field(default=1, ge=1)
    database_pool_max_size: int = Field(default=10, ge=1)

    # Delivery policy
    delivery: DeliveryPolicy = Field(
        default_factory=DeliveryPolicy,
        description="Retry/backoff/timeout policy for delivery attempts",
    )

    # Dispatcher
    dispatch_queue_size: int = Field(
        default=1000,
        ge=1,
        description=(
            "Capacity of the in-process dispatch queue. When full, new deliveries "
            "are parked for the retry scheduler instead of blocking producers."
        ),
    )
    dispatch_workers: int = Field(
        default=4,
        ge=1,
        le=100,
        description="Worker tasks draining the dispatch queue",
    )

    # Retry scheduler
    retry_poll_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Seconds between retry sweeps",
    )
    retry_concurrency: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Maximum simultaneous outbound attempts per sweep",
    )
    retry_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Rows fetched per page while scanning due retries",
    )
    stuck_after_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description=(
            "Deliveries left in 'delivering' longer than this (e.g. after a crash) "
            "are reclaimed by the scheduler"
        ),
    )

    # Webhook URL policy
    require_https: bool | None = Field(
        default=None,
        description="Require https:// webhook URLs. Defaults to True in production.",
    )
    allow_private_hosts: bool = Field(
        default=False,
        description="Allow webhook URLs that resolve to private or loopback hosts",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Authentication
    auth_enabled: bool | None = Field(
        default=None,
        description=(
            "Enable Bearer token authentication. "
            "If not set, defaults to True in production, False otherwise."
        ),
    )
    auth_secret_key: str | None = Field(
        default=None,
        description="Secret key for token validation (HMAC). REQUIRED in production.",
    )
    auth_token_expire_minutes: int = Field(
        default=60,
        ge=1,
        description="Token expiration time in minutes",
    )

    # CORS Configuration
    cors_enabled: bool = Field(default=True, description="Enable CORS middleware")
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description="List of allowed CORS origins",
    )

    # Runtime-generated dev secret (not from env)
    _runtime_dev_secret: str | None = None

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Resolve environment-dependent defaults and fail fast in production."""
        is_production = self.env == "production"

        if self.auth_enabled is None:
            object.__setattr__(self, "auth_enabled", is_production)
        if self.require_https is None:
            object.__setattr__(self, "require_https", is_production)

        if is_production:
            if self.auth_secret_key is None:
                raise ValueError(
                    "COURIER_AUTH_SECRET_KEY must be set in production. "
                    'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
                )
            if not self.auth_enabled:
                warnings.warn(
                    "Authentication is disabled in production environment.",
                    UserWarning,
                    stacklevel=2,
                )
                logger.warning("Authentication disabled in production")
            if self.allow_private_hosts:
                logger.warning("Private webhook hosts allowed in production")
        elif self.auth_secret_key is None:
            object.__setattr__(self, "_runtime_dev_secret", secrets.token_hex(32))

        if self.database_pool_max_size < self.database_pool_min_size:
            raise ValueError("database_pool_max_size must be >= database_pool_min_size")

        if self.stuck_after_seconds <= self.delivery.request_timeout_seconds:
            raise ValueError(
                f"stuck_after_seconds ({self.stuck_after_seconds}) must be greater than "
                f"delivery.request_timeout_seconds ({self.delivery.request_timeout_seconds})"
            )

        return self

    @property
    def is_auth_enabled(self) -> bool:
        """Get resolved auth_enabled value (always bool, never None)."""
        if self.auth_enabled is None:
            return self.env == "production"
        return self.auth_enabled

    @property
    def is_https_required(self) -> bool:
        """Get resolved require_https value (always bool, never None)."""
        if self.require_https is None:
            return self.env == "production"
        return self.require_https

    @property
    def effective_auth_secret_key(self) -> str:
        """Get the configured secret key, or the runtime one in dev/test.

        Raises:
            ValueError: If no secret key is available.
        """
        if self.auth_secret_key is not None:
            return self.auth_secret_key
        if self._runtime_dev_secret is not None:
            return self._runtime_dev_secret
        raise ValueError("No auth secret key available")
