"""Error handling framework for ShipFlow.

This package provides:
- Error code registry with E-XXXX format codes
- Carrier provider (EasyPost) error translation to friendly messages
- Typed domain exceptions raised by the service layer

Error categories:
- E-1xxx: Order and fulfillment data errors
- E-2xxx: Validation errors
- E-3xxx: Carrier provider errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication and signature errors
"""

from shipflow.errors.registry import (
    ErrorCategory,
    ErrorCode,
    ERROR_REGISTRY,
    get_error,
    get_errors_by_category,
)
from shipflow.errors.provider_translation import (
    PROVIDER_ERROR_MAP,
    extract_provider_error,
    translate_provider_error,
)
from shipflow.errors.formatter import ShipFlowError, format_error
from shipflow.errors.domain import (
    DomainError,
    IllegalOperationError,
    LabelConversionError,
    NotFoundError,
    ReconciliationError,
    ShipmentRequestError,
    WebhookSignatureError,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Provider translation
    "translate_provider_error",
    "extract_provider_error",
    "PROVIDER_ERROR_MAP",
    # Formatter
    "ShipFlowError",
    "format_error",
    # Domain
    "DomainError",
    "IllegalOperationError",
    "LabelConversionError",
    "NotFoundError",
    "ReconciliationError",
    "ShipmentRequestError",
    "WebhookSignatureError",
]
