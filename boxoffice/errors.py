"""Error taxonomy for the order and ticket lifecycle.

Only conditions a caller has to act on are exceptions. Missing orders,
unknown tickets and oversold payments are returned as typed outcomes by the
services that detect them.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION = "VALIDATION"
    STOCK_UNAVAILABLE = "STOCK_UNAVAILABLE"
    AUTHENTICATION = "AUTHENTICATION"
    PAYMENT_PROVIDER = "PAYMENT_PROVIDER"
    ISSUANCE_FAILURE = "ISSUANCE_FAILURE"
    TRANSIENT_STORE_FAILURE = "TRANSIENT_STORE_FAILURE"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Raised when request input is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.VALIDATION, message=message)


class StockUnavailableError(DomainError):
    """Raised when the soft stock check fails at order creation."""

    def __init__(self, ticket_type: str, requested: int,
                 available: int) -> None:
        super().__init__(
            code=ErrorCode.STOCK_UNAVAILABLE,
            message="Insufficient stock",
        )
        self.ticket_type = ticket_type
        self.requested = requested
        self.available = available


class AuthenticationError(DomainError):
    """Raised for unsigned webhooks and unauthenticated staff calls."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(code=ErrorCode.AUTHENTICATION, message=message)


class PaymentProviderError(DomainError):
    """Raised when the payment provider cannot open a charge."""

    def __init__(self, message: str = "Payment provider unavailable") -> None:
        super().__init__(code=ErrorCode.PAYMENT_PROVIDER, message=message)


class IssuanceFailure(DomainError):
    """Raised when ticket generation for a paid order fails.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, order_id: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.ISSUANCE_FAILURE,
            message=f"Ticket issuance failed for order {order_id}: {reason}",
        )
        self.order_id = order_id
        self.reason = reason


class TransientStoreFailure(DomainError):
    """Raised when a conditional write loses an optimistic race."""

    def __init__(self, key: str) -> None:
        super().__init__(
            code=ErrorCode.TRANSIENT_STORE_FAILURE,
            message="Concurrent update, try again",
        )
        self.key = key


class IllegalTransition(DomainError):
    """Raised when an order status change is not in the transition table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            code=ErrorCode.ILLEGAL_TRANSITION,
            message=f"Illegal order transition {current} -> {target}",
        )
        self.current = current
        self.target = target
