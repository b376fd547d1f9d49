"""Error types raised by the order-intake pipeline.

None of these know about HTTP. ``main.py`` maps each type to a status code
at the outermost boundary.
"""

from typing import Any, Optional


class OrderIntakeError(Exception):
    """Base error. ``message`` is safe to show to the caller; ``details``
    identifies the offending line index or product id when there is one."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(OrderIntakeError):
    """Malformed or incomplete purchase request."""


class AuthError(OrderIntakeError):
    """Missing or invalid credential."""


class AuthorizationError(OrderIntakeError):
    """Authenticated caller acting on another user's behalf without admin rights."""


class NotFoundError(OrderIntakeError):
    """Referenced record does not exist."""


class ConflictError(OrderIntakeError):
    """Request is well formed but conflicts with current stored state."""


class InsufficientStockError(ConflictError):
    def __init__(self, product_id: int, requested: int, available: int, product_name: str):
        super().__init__(
            f"Stock insuficiente para {product_name}",
            details={"productId": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name


class UnexpectedError(OrderIntakeError):
    """Storage or connectivity failure. The message never carries internals."""
