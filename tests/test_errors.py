"""
Tests for the error taxonomy and structured error payloads
"""

from account_compliance.errors import (
    ComplianceError, CircularReferenceError, CompliancePartialFailureError, DecryptionError,
    NotFoundError, PermissionDeniedError, StoreTimeoutError, ValidationError
)


class TestErrorCodes:
    """Every error carries a machine-readable code"""

    def test_codes(self):
        assert ValidationError(["Account name is required"]).code == "VALIDATION_ERROR"
        assert PermissionDeniedError("u1", "delete", "account", "a1").code == "PERMISSION_DENIED"
        assert CircularReferenceError("A", "B").code == "CIRCULAR_REFERENCE"
        assert DecryptionError("bad token").code == "DECRYPTION_FAILED"
        assert NotFoundError("account", "a1").code == "NOT_FOUND"
        assert CompliancePartialFailureError("a1", {"audit": "down"}).code == "COMPLIANCE_PARTIAL_FAILURE"
        assert StoreTimeoutError("load", 5.0).code == "STORE_TIMEOUT"

    def test_all_are_compliance_errors(self):
        for error in (ValidationError([]), NotFoundError("account", "a1"), DecryptionError("x")):
            assert isinstance(error, ComplianceError)

    def test_decryption_error_is_value_error(self):
        assert isinstance(DecryptionError("x"), ValueError)


class TestErrorPayloads:
    """Test to_dict() rendering"""

    def test_validation_details(self):
        error = ValidationError(["Account name is required", "Invalid email format", "something odd"])
        data = error.to_dict()

        assert data["code"] == "VALIDATION_ERROR"
        assert "Account name is required" in data["message"]
        assert data["details"] == [
            {"field": "account name", "message": "Account name is required"},
            {"field": "email", "message": "Invalid email format"},
            {"field": "general", "message": "something odd"},
        ]
        assert "retryable" not in data

    def test_permission_message(self):
        error = PermissionDeniedError("u1", "delete", "account", "a1")
        assert error.to_dict() == {
            "code": "PERMISSION_DENIED",
            "message": "User u1 does not have permission to delete account a1",
        }

    def test_not_found_message(self):
        assert NotFoundError("account", "a1").message == "Account with ID a1 not found"

    def test_partial_failure_is_retryable(self):
        error = CompliancePartialFailureError("a1", {"relationships": "store down", "audit": "timeout"})
        data = error.to_dict()

        assert data["retryable"] is True
        assert data["details"]["failed_steps"] == {"relationships": "store down", "audit": "timeout"}
        assert "audit, relationships" in data["message"]

    def test_circular_reference_message(self):
        error = CircularReferenceError("A", "C")
        assert error.parent_id == "A"
        assert "circular reference" in error.message
