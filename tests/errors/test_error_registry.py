"""Tests for the error registry, provider translation and formatting."""

from shipflow.errors import (
    ERROR_REGISTRY,
    ErrorCategory,
    IllegalOperationError,
    NotFoundError,
    ReconciliationError,
    ShipFlowError,
    extract_provider_error,
    format_error,
    get_error,
    get_errors_by_category,
    translate_provider_error,
)


class TestRegistry:
    def test_codes_match_keys_and_categories(self):
        prefixes = {
            ErrorCategory.DATA: "E-1",
            ErrorCategory.VALIDATION: "E-2",
            ErrorCategory.PROVIDER: "E-3",
            ErrorCategory.SYSTEM: "E-4",
            ErrorCategory.AUTH: "E-5",
        }
        for key, error in ERROR_REGISTRY.items():
            assert error.code == key
            assert key.startswith(prefixes[error.category])

    def test_unknown_code(self):
        assert get_error("E-9999") is None

    def test_provider_category_lists_retryable_outage(self):
        codes = {e.code for e in get_errors_by_category(ErrorCategory.PROVIDER)}
        assert "E-3001" in codes
        assert get_error("E-3001").is_retryable is True


class TestExtractProviderError:
    def test_nested_errors_win(self):
        body = {
            "error": {
                "code": "ADDRESS.VERIFY.FAILURE",
                "message": "Unable to verify address.",
                "errors": [{"field": "street1", "message": "Address not found"}],
            }
        }
        assert extract_provider_error(body) == ("ADDRESS.VERIFY.FAILURE", "Address not found")

    def test_falls_back_to_top_level_message(self):
        body = {"error": {"code": "SHIPMENT.POSTAGE.FAILURE", "message": "Postage failed", "errors": []}}
        assert extract_provider_error(body) == ("SHIPMENT.POSTAGE.FAILURE", "Postage failed")

    def test_body_without_error_object(self):
        assert extract_provider_error({"message": "boom"}) == (None, "boom")


class TestTranslateProviderError:
    def test_rate_mismatch_message_pattern(self):
        code, message, _ = translate_provider_error(
            "SHIPMENT.POSTAGE.FAILURE", "Rate mismatch for this shipment"
        )
        assert code == "E-3004"
        assert message == "Rate mismatch -- rates need to be recalculated"

    def test_known_provider_code(self):
        code, message, remediation = translate_provider_error(
            "SHIPMENT.REFUND.UNAVAILABLE", "Label already scanned"
        )
        assert code == "E-3006"
        assert "Label already scanned" in message
        assert remediation

    def test_unknown_code_is_generic(self):
        code, message, _ = translate_provider_error("SOMETHING.NEW", "Odd failure")
        assert code == "E-3005"
        assert message == "EasyPost error: Odd failure"


def test_format_error_includes_title_and_fix():
    error = ShipFlowError.from_code("E-3003", provider_message="bad zip")
    text = format_error(error)
    assert text.startswith("E-3003: Address Rejected")
    assert "bad zip" in text
    assert "Fix:" in text


def test_domain_error_messages():
    assert str(NotFoundError("Pickup", "p1")) == "Pickup 'p1' not found"
    assert IllegalOperationError("nope").message == "nope"
    err = ReconciliationError("o1", "Shipped", "guard")
    assert err.order_id == "o1"
    assert "Shipped" in err.message
