"""Shared service-layer error types.

Centralised here to avoid circular imports between service modules.
"""

from dataclasses import dataclass


@dataclass
class CarrierProviderError(Exception):
    """Error from the EasyPost client.

    Attributes:
        code: ShipFlow error code (E-XXXX format)
        message: Human-readable error message
        remediation: Suggested fix
        details: Raw error body
        status_code: HTTP status returned by EasyPost, if any
        provider_message: Untranslated message from EasyPost
    """

    code: str
    message: str
    remediation: str = ""
    details: dict | None = None
    status_code: int | None = None
    provider_message: str = ""

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"


@dataclass(frozen=True)
class TransitionRejected:
    """A state transition refused by the table, a guard or a handler.

    Returned rather than raised: a rejection is an expected outcome that
    the caller reports, not a failure.
    """

    from_state: str
    to_state: str
    message: str
