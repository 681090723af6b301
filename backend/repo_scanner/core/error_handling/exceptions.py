"""
Standardized Exception Classes for the repository scanner
"""

from typing import Optional, Dict, Any
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone


class ErrorCategory(Enum):
    """Categories of errors for classification and handling"""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REPOSITORY_SERVICE = "repository_service"
    ANALYSIS_PROVIDER = "analysis_provider"
    DATABASE = "database"
    CANCELLED = "cancelled"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for errors"""
    correlation_id: Optional[str] = None
    report_id: Optional[str] = None
    file_path: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.metadata is None:
            self.metadata = {}


class ScannerBaseException(Exception):
    """Base exception for all scanner errors"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_code = error_code or self._generate_error_code()
        self.context = context or ErrorContext()
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def _generate_error_code(self) -> str:
        """Generate error code based on exception class"""
        class_name = self.__class__.__name__
        return f"{self.category.value.upper()}_{class_name.upper().replace('EXCEPTION', '')}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
            "report_id": self.context.report_id,
        }


# Validation Exceptions
class ValidationException(ScannerBaseException):
    """Request validation errors, rejected before any state is created"""

    status_code = 400

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            **kwargs
        )


# Report lookup / state Exceptions
class ReportNotFoundException(ScannerBaseException):
    """Scan report not found"""

    status_code = 404

    def __init__(self, report_id: str, **kwargs):
        super().__init__(
            "Scan report not found.",
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            context=ErrorContext(report_id=report_id),
            **kwargs
        )


class ReportStateException(ScannerBaseException):
    """Operation not allowed in the report's current status"""

    status_code = 400

    def __init__(self, message: str, report_id: Optional[str] = None, status_code: int = 400, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.LOW,
            context=ErrorContext(report_id=report_id),
            **kwargs
        )
        self.status_code = status_code


# External collaborator Exceptions
class RepositoryServiceException(ScannerBaseException):
    """Clone, tree listing or content fetch failed"""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.REPOSITORY_SERVICE,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )
        self.upstream_status = upstream_status
        if upstream_status and upstream_status >= 400:
            self.status_code = upstream_status


class AnalysisProviderException(ScannerBaseException):
    """Text-analysis provider call failed"""

    status_code = 502

    def __init__(self, message: str, transient: bool = False, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ANALYSIS_PROVIDER,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )
        self.transient = transient


# Database Exceptions
class DatabaseException(ScannerBaseException):
    """Database related errors"""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class ScanCancelledException(ScannerBaseException):
    """Raised inside a running job once its cancel event is set"""

    status_code = 409

    def __init__(self, report_id: str, **kwargs):
        super().__init__(
            "Scan cancelled by user",
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.LOW,
            context=ErrorContext(report_id=report_id),
            **kwargs
        )


# Markers the provider uses for overload / rate limiting
TRANSIENT_ERROR_MARKERS = (
    "429",
    "503",
    "overloaded",
    "rate limit",
    "rate_limit",
    "too many requests",
    "service unavailable",
    "temporarily unavailable",
)


def is_transient_provider_error(exc: Exception) -> bool:
    """Check if a provider error is retry-eligible (rate limited / overloaded)"""
    if isinstance(exc, AnalysisProviderException):
        return exc.transient

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if status in (429, 503):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)
