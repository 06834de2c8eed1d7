"""EasyPost error translation to ShipFlow friendly messages.

EasyPost reports failures as ``{"error": {"code", "message", "errors": [...]}}``.
The nested ``errors`` array carries field-level detail that is usually more
useful than the top-level message, so it wins when present.
"""

from shipflow.errors.registry import get_error


# Map of EasyPost error codes to ShipFlow error codes
PROVIDER_ERROR_MAP: dict[str, str] = {
    "ADDRESS.VERIFY.FAILURE": "E-3003",
    "ADDRESS.VERIFICATION.FAILURE": "E-3003",
    "SHIPMENT.RATE.MISMATCH": "E-3004",
    "SHIPMENT.REFUND.UNAVAILABLE": "E-3006",
    "SHIPMENT.REFUND.EXPIRED": "E-3006",
    "APIKEY.REQUIRED": "E-5001",
    "APIKEY.INACTIVE": "E-5001",
    "RATE_LIMITED": "E-3002",
    "INTERNAL_SERVER_ERROR": "E-3001",
    "SERVICE_UNAVAILABLE": "E-3001",
}

# Substrings of provider messages that identify a known failure
PROVIDER_MESSAGE_PATTERNS: dict[str, str] = {
    "rate mismatch": "E-3004",
    "address not found": "E-3003",
    "too many requests": "E-3002",
    "service unavailable": "E-3001",
    "api key": "E-5001",
}


def translate_provider_error(
    provider_code: str | None,
    provider_message: str | None,
    context: dict | None = None,
) -> tuple[str, str, str]:
    """Translate an EasyPost error to a ShipFlow error.

    Args:
        provider_code: EasyPost error code (e.g., "ADDRESS.VERIFY.FAILURE").
        provider_message: EasyPost error message text.
        context: Additional template context.

    Returns:
        Tuple of (error_code, formatted_message, remediation).
    """
    context = context or {}

    # Message patterns first: "rate mismatch" arrives under several codes
    if provider_message:
        lowered = provider_message.lower()
        for pattern, sf_code in PROVIDER_MESSAGE_PATTERNS.items():
            if pattern in lowered:
                error = get_error(sf_code)
                if error:
                    message = _format_message(
                        error.message_template,
                        provider_message=provider_message,
                        **context,
                    )
                    return (error.code, message, error.remediation)

    if provider_code and provider_code in PROVIDER_ERROR_MAP:
        error = get_error(PROVIDER_ERROR_MAP[provider_code])
        if error:
            message = _format_message(
                error.message_template,
                provider_message=provider_message or "Unknown error",
                **context,
            )
            return (error.code, message, error.remediation)

    error = get_error("E-3005")
    if error:
        message = _format_message(
            error.message_template,
            provider_message=provider_message or f"Code: {provider_code}",
            **context,
        )
        return (error.code, message, error.remediation)

    return (
        "E-3005",
        f"EasyPost error: {provider_message or provider_code or 'Unknown'}",
        "Contact support with this error message for assistance.",
    )


def _format_message(template: str, **kwargs: object) -> str:
    """Format a message template with context, ignoring missing keys."""
    try:
        return template.format(**kwargs)
    except KeyError:
        return template


def extract_provider_error(response: dict) -> tuple[str | None, str | None]:
    """Extract error code and message from an EasyPost error body.

    Args:
        response: Decoded JSON error body.

    Returns:
        Tuple of (error_code, error_message), either may be None.
    """
    error = response.get("error")
    if not isinstance(error, dict):
        return (None, response.get("message"))

    code = error.get("code")
    nested = error.get("errors")
    if isinstance(nested, list) and nested:
        first = nested[0]
        if isinstance(first, dict) and first.get("message"):
            return (code, first["message"])
        if isinstance(first, str):
            return (code, first)

    return (code, error.get("message"))
