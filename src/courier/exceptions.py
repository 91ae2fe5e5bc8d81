"""Courier exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from CourierError for easy catching.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base exception for all Courier errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(CourierError):
    """Invalid input provided.

    Raised when webhook configuration (URL, events) fails validation.
    Configuration errors are rejected here and never reach the dispatcher.

    Attributes:
        field: The field that failed validation.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CourierError):
    """Resource not found.

    Also raised when a resource exists but belongs to another business,
    so callers cannot discover foreign identifiers.

    Attributes:
        resource_type: Type of resource ("webhook", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class ConflictError(CourierError):
    """A guarded status transition lost the race.

    The delivery was no longer in the expected status when the store tried
    to move it. The caller must assume another actor owns the delivery and
    stop; it must not retry the transition itself.

    Attributes:
        delivery_id: Delivery that was targeted.
        expected_status: Status the caller expected.
        actual_status: Status found in the store.
    """

    code: str = "conflict"

    def __init__(self, delivery_id: str, expected_status: str, actual_status: str) -> None:
        self.delivery_id = delivery_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"delivery {delivery_id} is {actual_status}, expected {expected_status}"
        )


class NotRetryableError(CourierError):
    """Manual retry requested on a delivery that is not eligible.

    This is caller misuse (HTTP 400), distinct from a delivery failure.

    Attributes:
        delivery_id: Delivery the caller tried to retry.
        status: Current status of that delivery.
    """

    code: str = "not_retryable"

    def __init__(self, delivery_id: str, status: str, reason: str | None = None) -> None:
        self.delivery_id = delivery_id
        self.status = status
        super().__init__(reason or f"delivery {delivery_id} cannot be retried while {status}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "delivery_id": self.delivery_id,
                "status": self.status,
                "message": self.message,
            }
        }


class StorageError(CourierError):
    """Storage operation failed.

    Raised when the backing database rejects or loses an operation.
    """

    code: str = "storage_error"


class ConfigurationError(CourierError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"


class AuthenticationError(CourierError):
    """Authentication failed.

    Raised when credentials are invalid or missing.
    """

    code: str = "authentication_error"
