"""
Error Taxonomy Module

Every failure surfaced by the compliance pipeline carries a machine-readable
code so callers can render a structured response without string matching.
"""

import re
from typing import Any, Dict, List, Optional


class ComplianceError(Exception):
    """Base class for all compliance pipeline errors"""

    code = "COMPLIANCE_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured error payload"""
        result = {
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        if self.retryable:
            result["retryable"] = True
        return result


class ValidationError(ComplianceError):
    """Missing or malformed input, rejected before any store or crypto call"""

    code = "VALIDATION_ERROR"

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        details = [{"field": _field_from_message(e), "message": e} for e in self.errors]
        super().__init__(message or f"Validation failed: {', '.join(self.errors)}", details)


class PermissionDeniedError(ComplianceError):
    """User lacks the required permission"""

    code = "PERMISSION_DENIED"

    def __init__(self, user_id: str, action: str, entity_type: str, entity_id: Optional[str] = None):
        self.user_id = user_id
        self.action = action
        self.entity_type = entity_type
        self.entity_id = entity_id
        target = f"{entity_type} {entity_id}" if entity_id else entity_type
        super().__init__(f"User {user_id} does not have permission to {action} {target}")


class CircularReferenceError(ComplianceError):
    """Relationship edge would make an account its own ancestor"""

    code = "CIRCULAR_REFERENCE"

    def __init__(self, parent_id: str, child_id: str):
        self.parent_id = parent_id
        self.child_id = child_id
        super().__init__(
            f"Adding a relationship between {parent_id} and {child_id} "
            f"would create a circular reference"
        )


class DecryptionError(ComplianceError, ValueError):
    """Token is malformed or failed its integrity check"""

    code = "DECRYPTION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, {"field": field} if field else None)


class NotFoundError(ComplianceError):
    """Entity is absent"""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} with ID {entity_id} not found")


class CompliancePartialFailureError(ComplianceError):
    """One or more erasure sub-steps failed; the whole erasure must be retried"""

    code = "COMPLIANCE_PARTIAL_FAILURE"
    retryable = True

    def __init__(self, entity_id: str, failed_steps: Dict[str, str]):
        self.entity_id = entity_id
        self.failed_steps = dict(failed_steps)
        steps = ", ".join(sorted(self.failed_steps))
        super().__init__(
            f"Erasure of account {entity_id} incomplete (failed: {steps}); retry required",
            {"failed_steps": self.failed_steps},
        )


class StoreTimeoutError(ComplianceError):
    """Store call exceeded its deadline"""

    code = "STORE_TIMEOUT"
    retryable = True

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Store operation '{operation}' timed out after {timeout}s")


def _field_from_message(message: str) -> str:
    match = re.match(r"^(.+?) is required", message) or re.match(r"^Invalid (\S+)", message)
    return match.group(1).lower() if match else "general"
