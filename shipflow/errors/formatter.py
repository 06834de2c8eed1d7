"""Application error type and formatting for user display."""

from dataclasses import dataclass, field

from shipflow.errors.registry import get_error


@dataclass
class ShipFlowError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    is_retryable: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "ShipFlowError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                The special key 'details' is stored on the error rather
                than substituted.

        Returns:
            ShipFlowError instance with formatted message.
        """
        details = kwargs.pop("details", {})
        if not isinstance(details, dict):
            details = {}

        error_def = get_error(code)
        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                details=details,
            )

        message = error_def.message_template
        try:
            message = message.format(**kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            pass

        return cls(
            code=code,
            message=message,
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
            details=details,
        )


def format_error(error: ShipFlowError) -> str:
    """Format an error for CLI or log display.

    Args:
        error: The error to format.

    Returns:
        Multi-line string with code, title, message and remediation.
    """
    error_def = get_error(error.code)
    title = error_def.title if error_def else "Error"
    lines = [f"{error.code}: {title}", f"  {error.message}"]
    if error.remediation:
        lines.append(f"  Fix: {error.remediation}")
    return "\n".join(lines)
