"""
Booking Engine Errors

Every domain failure carries a short machine-readable ``code`` so that tool
handlers can turn it into a structured payload the model can read and act on.
"""

from typing import Any, Optional


class BookingError(Exception):
    """Base class for all booking engine errors."""

    code = "booking_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Structured form returned to the model as a tool result."""
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BookingError):
    """Bad or missing caller input."""

    code = "validation_error"


class ConflictError(BookingError):
    """Requested window overlaps an existing appointment."""

    code = "conflict"

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["hint"] = (
            "This time is no longer available. Check availability again "
            "and offer the customer alternative times."
        )
        return payload


class NotFoundError(BookingError):
    """Unknown appointment, customer, service or professional."""

    code = "not_found"


class ProviderError(BookingError):
    """Model or messaging provider failed after bounded retries."""

    code = "provider_error"


class PersistenceError(BookingError):
    """Store write failed."""

    code = "persistence_error"
