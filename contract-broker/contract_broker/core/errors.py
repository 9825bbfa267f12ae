"""
Structured error taxonomy for the contract broker.

Every broker exception carries a stable error code so that API clients and
CI pipelines can tell a malformed contract from a missing entity from a
storage outage without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel


class ErrorCategory(str, Enum):
    """High-level error categories for the broker."""
    CONTRACT = "CONTRACT"
    LOOKUP = "LOOKUP"
    REQUEST = "REQUEST"
    VERIFY = "VERIFY"
    AUTH = "AUTH"
    STORE = "STORE"


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class BrokerErrorCode(str, Enum):
    """
    Structured error codes.

    Format: {CATEGORY}_{SPECIFIC_CODE}
    """

    # Contract publishing (CONTRACT_xx)
    CONTRACT_INVALID = "CONTRACT_001"
    CONTRACT_SCHEMA_VIOLATION = "CONTRACT_002"

    # Entity lookups (LOOKUP_xx)
    LOOKUP_NOT_FOUND = "LOOKUP_001"
    LOOKUP_UNKNOWN_CONTRACT = "LOOKUP_002"
    LOOKUP_UNKNOWN_PARTICIPANT = "LOOKUP_003"
    LOOKUP_UNKNOWN_VERSION = "LOOKUP_004"

    # Malformed API requests (REQUEST_xx)
    REQUEST_INVALID_SELECTOR = "REQUEST_001"

    # Verification recording (VERIFY_xx)
    VERIFY_STALE_CONTRACT_REFERENCE = "VERIFY_001"

    # Authentication (AUTH_xx)
    AUTH_INVALID_TOKEN = "AUTH_001"

    # Storage (STORE_xx)
    STORE_UNAVAILABLE = "STORE_001"


HTTP_STATUS_BY_CODE: Dict[BrokerErrorCode, int] = {
    BrokerErrorCode.CONTRACT_INVALID: 422,
    BrokerErrorCode.CONTRACT_SCHEMA_VIOLATION: 422,
    BrokerErrorCode.LOOKUP_NOT_FOUND: 404,
    BrokerErrorCode.LOOKUP_UNKNOWN_CONTRACT: 404,
    BrokerErrorCode.LOOKUP_UNKNOWN_PARTICIPANT: 404,
    BrokerErrorCode.LOOKUP_UNKNOWN_VERSION: 404,
    BrokerErrorCode.REQUEST_INVALID_SELECTOR: 400,
    BrokerErrorCode.VERIFY_STALE_CONTRACT_REFERENCE: 409,
    BrokerErrorCode.AUTH_INVALID_TOKEN: 401,
    BrokerErrorCode.STORE_UNAVAILABLE: 503,
}


class BrokerErrorDetail(BaseModel):
    """Actionable detail attached to every broker exception."""
    code: BrokerErrorCode
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str
    context: Dict[str, Any] = {}

    @property
    def category(self) -> ErrorCategory:
        """Extract error category from code."""
        return ErrorCategory(self.code.value.split("_")[0])

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and API responses."""
        result: Dict[str, Any] = {
            "error_code": self.code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.context:
            result["context"] = self.context
        return result


def problem_type(code: BrokerErrorCode) -> str:
    slug = code.name.lower().replace("_", "-")
    return f"https://contract-broker.dev/problems/{slug}"

