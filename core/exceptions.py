"""Shared exception types for settlement routing and the order lifecycle."""

from typing import Any, Dict, Optional


class RampError(RuntimeError):
    """
    Base error carrying a machine-readable code and numeric context.

    Every rejected request surfaces one of these so callers can map it to a
    response without parsing messages.
    """

    code = "RAMP_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": dict(self.context),
        }


class ValidationError(RampError):
    """Fatal, user-correctable input problem. Never retried automatically."""

    code = "VALIDATION_ERROR"


class TokenNotSupported(ValidationError):
    code = "TOKEN_NOT_SUPPORTED"


class NoRouteLiquidity(ValidationError):
    """Every pricing strategy came back empty for this token."""

    code = "NO_ROUTE_LIQUIDITY"


class LiquidityError(RampError):
    """No single provider can fund the settlement right now."""

    code = "INSUFFICIENT_LIQUIDITY"
    retryable = True

    def __init__(
        self,
        message: str,
        suggested_wait_seconds: float = 900.0,
        max_fulfillable_fiat: Optional[float] = None,
        max_fulfillable_stable: Optional[float] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            suggested_wait_seconds=suggested_wait_seconds,
            max_fulfillable_fiat=max_fulfillable_fiat,
            max_fulfillable_stable=max_fulfillable_stable,
            **context,
        )
        self.suggested_wait_seconds = suggested_wait_seconds
        self.max_fulfillable_fiat = max_fulfillable_fiat
        self.max_fulfillable_stable = max_fulfillable_stable


class DuplicateRequest(RampError):
    """A live order already exists for this customer/token/network."""

    code = "DUPLICATE_REQUEST"
    retryable = True

    def __init__(self, existing_order_id: str, retry_after_seconds: float = 0.0, **context: Any):
        super().__init__(
            f"Order {existing_order_id} is still live for this customer",
            existing_order_id=existing_order_id,
            retry_after_seconds=round(max(retry_after_seconds, 0.0), 1),
            **context,
        )
        self.existing_order_id = existing_order_id
        self.retry_after_seconds = retry_after_seconds


class SettlementFailure(RampError):
    """Settlement could not be completed. Fatal for the order only."""

    code = "SETTLEMENT_FAILED"


class OrderNotFound(RampError):
    code = "ORDER_NOT_FOUND"


class InvalidSignature(RampError):
    code = "INVALID_SIGNATURE"


class UpstreamUnavailable(RampError):
    """Raised when a collaborator cannot be reached or answers garbage."""

    code = "UPSTREAM_UNAVAILABLE"
    retryable = True

    def __init__(self, source: str, original: Optional[Exception] = None):
        detail = f"{source}: {original}" if original else source
        super().__init__(detail, source=source)
        self.source = source
        self.original = original
