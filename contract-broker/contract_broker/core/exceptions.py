from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import BrokerErrorCode, BrokerErrorDetail, ErrorSeverity


class BrokerError(Exception):
    code: BrokerErrorCode = BrokerErrorCode.LOOKUP_NOT_FOUND
    severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.context = context or {}

    @property
    def error_detail(self) -> BrokerErrorDetail:
        return BrokerErrorDetail(code=self.code, severity=self.severity, message=self.detail, context=self.context)


class InvalidContract(BrokerError):
    code = BrokerErrorCode.CONTRACT_INVALID

    def __init__(self, detail: str, issues: List[str] | None = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(detail, context)
        self.issues = issues or []


class NotFound(BrokerError):
    code = BrokerErrorCode.LOOKUP_NOT_FOUND


class UnknownContract(NotFound):
    code = BrokerErrorCode.LOOKUP_UNKNOWN_CONTRACT


class UnknownParticipant(NotFound):
    code = BrokerErrorCode.LOOKUP_UNKNOWN_PARTICIPANT


class UnknownVersion(NotFound):
    code = BrokerErrorCode.LOOKUP_UNKNOWN_VERSION


class InvalidSelector(BrokerError):
    code = BrokerErrorCode.REQUEST_INVALID_SELECTOR


class StaleContractReference(BrokerError):
    code = BrokerErrorCode.VERIFY_STALE_CONTRACT_REFERENCE
    severity = ErrorSeverity.WARNING


class StoreUnavailable(BrokerError):
    code = BrokerErrorCode.STORE_UNAVAILABLE
    severity = ErrorSeverity.CRITICAL


class UnauthorizedError(BrokerError):
    code = BrokerErrorCode.AUTH_INVALID_TOKEN
