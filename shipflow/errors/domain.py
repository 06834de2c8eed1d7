"""Typed domain exceptions for API error mapping.

Routes and the CLI catch specific exception types to decide the HTTP
status code or exit code.

Usage:
    # In service layer
    raise NotFoundError("Pickup", pickup_id)

    # In route handler
    try:
        pickup = service.close(pickup_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class IllegalOperationError(DomainError):
    """Operation not allowed in the entity's current state. Maps to HTTP 409."""


class ShipmentRequestError(DomainError):
    """A shipment request could not be built from the order data. Maps to HTTP 400."""

    def __init__(self, message: str, code: str = "E-1001") -> None:
        super().__init__(message)
        self.code = code


class ReconciliationError(DomainError):
    """Order state disagrees with its fulfillments and cannot be repaired.

    Raised when the reconciler computes a legal target state but the order
    transition itself is rejected by a guard. This means the guard and the
    reconciler disagree, which is a programming error rather than bad input.
    """

    def __init__(self, order_id: str, target_state: str, reason: str) -> None:
        super().__init__(
            f"Could not reconcile order '{order_id}' to {target_state}: {reason}"
        )
        self.order_id = order_id
        self.target_state = target_state
        self.reason = reason


class WebhookSignatureError(DomainError):
    """Inbound webhook failed HMAC validation. Maps to HTTP 400."""


class LabelConversionError(DomainError):
    """ZPL to PDF conversion failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
