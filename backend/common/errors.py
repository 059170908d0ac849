from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for payment reconciliation and inventory errors.

    `status_code` and `code` drive the HTTP error envelope when the exception
    escapes a route; `details()` is what the client sees.
    """
    status_code: int = 500
    code: str = "RECONCILIATION_ERROR"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context

    def details(self) -> Dict[str, Any]:
        return {"message": self.message, **self.context}


class SignatureVerificationFailed(ReconciliationError):
    # acknowledged to the gateway, flagged for review
    status_code = 200
    code = "SIGNATURE_VERIFICATION_FAILED"


class DuplicateEvent(ReconciliationError):
    status_code = 200
    code = "DUPLICATE_EVENT"


class AmountUnclassifiable(ReconciliationError):
    status_code = 422
    code = "AMOUNT_UNCLASSIFIABLE"


class InsufficientStockError(ReconciliationError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, inventory_id: int, size: Optional[str], requested: int, message: str = ""):
        label = size if size is not None else "<aggregate>"
        super().__init__(
            message or f"insufficient stock for inventory {inventory_id} size {label}: requested {requested}",
            inventory_id=inventory_id, size=size, requested=requested,
        )
        self.inventory_id = inventory_id
        self.size = size
        self.requested = requested


class TransactionAbortError(ReconciliationError):
    status_code = 503
    code = "TRANSACTION_ABORTED"


class GatewayUnavailable(ReconciliationError):
    status_code = 502
    code = "GATEWAY_UNAVAILABLE"


class InvalidStateTransition(ReconciliationError):
    status_code = 409
    code = "INVALID_STATE_TRANSITION"


class OrderNotFound(ReconciliationError):
    status_code = 404
    code = "ORDER_NOT_FOUND"


class InventoryNotFound(ReconciliationError):
    status_code = 404
    code = "INVENTORY_NOT_FOUND"


class InvalidInventoryAdjustment(ReconciliationError):
    status_code = 422
    code = "INVALID_INVENTORY_ADJUSTMENT"
