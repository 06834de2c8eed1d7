"""Error code registry with E-XXXX format codes.

This module defines the error code system for ShipFlow, organizing errors
into categories:
- E-1xxx: Order and fulfillment data errors
- E-2xxx: Validation errors
- E-3xxx: Carrier provider (EasyPost) errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication and signature errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx: Order/fulfillment data errors
    VALIDATION = "validation"  # E-2xxx: Validation errors
    PROVIDER = "provider"  # E-3xxx: Carrier provider errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    AUTH = "auth"  # E-5xxx: Authentication errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Data errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Missing Shipment Dimensions",
        message_template="Weight, height, width, and length are required to create a shipment.",
        remediation="Set dimensions on the fulfillment or on every product variant and retry.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.DATA,
        title="Nothing To Fulfill",
        message_template="Order {order_code} has no unfulfilled items.",
        remediation="All order lines are already covered by active fulfillments.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.DATA,
        title="Insufficient Stock",
        message_template="Not enough stock of {sku}! Only {on_hand} on hand ({allocated} total allocated).",
        remediation="Receive more stock or reduce the fulfillment quantity.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Shipping Address",
        message_template="Shipping address is incomplete: {fields} required.",
        remediation="Complete the shipping address on the order and retry.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Customs Value Too High",
        message_template="International shipments over $2,500 require an AES ITN.",
        remediation="Split the shipment or file electronic export information first.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Carrier Service Missing",
        message_template="A carrier and service must be selected before creating a shipment.",
        remediation="Select a shipping rate on the order or fulfillment.",
    ),
    # Provider errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.PROVIDER,
        title="Provider Unavailable",
        message_template="EasyPost is temporarily unavailable: {provider_message}",
        remediation="Wait a few minutes and retry.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.PROVIDER,
        title="Provider Rate Limit",
        message_template="EasyPost rate limit exceeded.",
        remediation="Reduce request volume or retry after a short delay.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.PROVIDER,
        title="Address Rejected",
        message_template="EasyPost rejected the address: {provider_message}",
        remediation="Verify the address with the customer and retry.",
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.PROVIDER,
        title="Rate Mismatch",
        message_template="Rate mismatch -- rates need to be recalculated",
        remediation="Move the fulfillment back to Created and fetch fresh rates.",
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.PROVIDER,
        title="Provider Error",
        message_template="EasyPost error: {provider_message}",
        remediation="Contact support with this error message for assistance.",
    ),
    "E-3006": ErrorCode(
        code="E-3006",
        category=ErrorCategory.PROVIDER,
        title="Refund Rejected",
        message_template="EasyPost refused the refund: {provider_message}",
        remediation="Labels can only be refunded before the carrier scans them.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Label Rendering Failed",
        message_template="Label conversion failed: {reason}",
        remediation="Retry the label download. Oversized batches must be split.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Reconciliation Failed",
        message_template="Order {order_code} could not be reconciled: {reason}",
        remediation="Inspect the order's fulfillments and transition history.",
    ),
    # Auth errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Invalid API Key",
        message_template="EasyPost API key is missing or invalid.",
        remediation="Set easypost.api_key in shipflow.yaml or SHIPFLOW_EASYPOST_API_KEY.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Invalid Webhook Signature",
        message_template="Webhook signature did not match the configured secret.",
        remediation="Re-register the webhook so both sides share the same secret.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
