"""
Domain errors raised by the checkout engine.

Routers never build error payloads for these by hand: the handler registered in
``marketplace.main`` renders ``{"error": ..., "message": ..., **details}`` with
the error's status code.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional


class MarketplaceError(Exception):
    status_code = 400
    error = "marketplace_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.details}


class ValidationError(MarketplaceError):
    status_code = 400
    error = "validation_error"


class NotFoundError(MarketplaceError):
    status_code = 404
    error = "not_found"


class ConflictError(MarketplaceError):
    status_code = 409
    error = "conflict"


class SlotUnavailableError(ConflictError):
    error = "slot_unavailable"


class InsufficientStockError(ConflictError):
    error = "insufficient_stock"

    def __init__(self, errors: List[Dict[str, Any]]):
        super().__init__("Insufficient stock for some items", errors=errors)


class InsufficientBalanceError(ConflictError):
    error = "insufficient_balance"

    def __init__(self, available: Decimal, requested: Decimal, currency: str):
        super().__init__(
            f"Insufficient balance. Available: {available:.2f} {currency}, "
            f"Requested: {requested:.2f} {currency}",
            available=str(available),
            requested=str(requested),
            currency=currency,
        )
        self.available = available
        self.requested = requested


class InvalidTransitionError(ConflictError):
    error = "invalid_transition"


class AlreadyScannedError(ConflictError):
    error = "already_scanned"

    def __init__(self, order_id: str, scanned_at: Optional[str] = None):
        super().__init__(
            "QR code has already been scanned",
            order_id=order_id,
            scanned_at=scanned_at,
        )


class ExternalServiceError(MarketplaceError):
    status_code = 502
    error = "external_service_error"
