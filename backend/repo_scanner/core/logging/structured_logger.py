"""
Structured Logging with correlation and report context
"""

import json
import uuid
import logging
import asyncio
from typing import Dict, Any, Optional, Union
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field, asdict
from contextvars import ContextVar
from functools import wraps
import traceback

# Context variables for correlation tracking
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
report_id: ContextVar[Optional[str]] = ContextVar('report_id', default=None)


class EventType(Enum):
    """Types of events for categorization"""
    API_REQUEST = "api_request"
    DATABASE_QUERY = "database_query"
    EXTERNAL_SERVICE = "external_service"
    SCAN_PROGRESS = "scan_progress"
    RATE_LIMIT = "rate_limit"
    ERROR_OCCURRED = "error_occurred"
    SYSTEM_EVENT = "system_event"


@dataclass
class LogContext:
    """Context information for structured logging"""
    correlation_id: Optional[str] = None
    report_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values"""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class LogEvent:
    """Structured log event"""
    timestamp: datetime
    level: str
    logger: str
    message: str
    event_type: EventType
    context: LogContext
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_details: Optional[Dict[str, Any]] = None
    performance_metrics: Optional[Dict[str, Union[int, float]]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "logger": self.logger,
            "message": self.message,
            "event_type": self.event_type.value,
            "context": self.context.to_dict(),
            "metadata": self.metadata,
        }

        if self.error_details:
            result["error"] = self.error_details

        if self.performance_metrics:
            result["performance"] = self.performance_metrics

        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredFormatter(logging.Formatter):
    """Formats log records as one JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        context = LogContext(
            correlation_id=correlation_id.get(),
            report_id=report_id.get()
        )

        event = LogEvent(
            timestamp=datetime.fromtimestamp(record.created),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            event_type=getattr(record, 'event_type', EventType.SYSTEM_EVENT),
            context=context,
            metadata=getattr(record, 'metadata', {}),
            error_details=self._extract_error_details(record),
            performance_metrics=getattr(record, 'performance_metrics', None)
        )

        return event.to_json()

    def _extract_error_details(self, record: logging.LogRecord) -> Optional[Dict[str, Any]]:
        if record.exc_info:
            return {
                "exception_type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "exception_message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
                "function": record.funcName,
                "line_number": record.lineno
            }
        return None


class StructuredLogger:
    """Thin wrapper over a stdlib logger that attaches event type and metadata"""

    def __init__(self, name: str, level: str = "INFO"):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

        if not any(isinstance(h.formatter, StructuredFormatter) for h in self.logger.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)

    def _log(self,
             level: int,
             message: str,
             event_type: EventType = EventType.SYSTEM_EVENT,
             metadata: Optional[Dict[str, Any]] = None,
             error: Optional[Exception] = None,
             performance_metrics: Optional[Dict[str, Union[int, float]]] = None):
        extra = {
            'event_type': event_type,
            'metadata': metadata or {},
            'performance_metrics': performance_metrics,
        }

        if error is not None:
            self.logger.log(level, message, exc_info=(type(error), error, error.__traceback__), extra=extra)
        else:
            self.logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[Exception] = None, **kwargs):
        self._log(logging.ERROR, message, error=error, **kwargs)

    def external_service_call(self, service: str, operation: str,
                              duration_ms: float, success: bool = True, **kwargs):
        """Log a call to the retrieval service or the analysis provider"""
        status = "successful" if success else "failed"
        message = f"External service call to {service}.{operation} {status}"

        metadata = kwargs.pop('metadata', {})
        metadata.update({
            "service": service,
            "operation": operation,
            "success": success
        })

        level = logging.INFO if success else logging.WARNING
        self._log(level, message, EventType.EXTERNAL_SERVICE,
                  metadata=metadata, performance_metrics={"call_duration_ms": duration_ms}, **kwargs)


class LoggerManager:
    """Caches structured loggers by name"""

    def __init__(self):
        self.loggers: Dict[str, StructuredLogger] = {}
        self.default_level = "INFO"

    def get_logger(self, name: str, level: Optional[str] = None) -> StructuredLogger:
        if name not in self.loggers:
            self.loggers[name] = StructuredLogger(name, level or self.default_level)
        return self.loggers[name]

    def set_default_level(self, level: str):
        self.default_level = level
        for structured in self.loggers.values():
            structured.logger.setLevel(getattr(logging, level.upper(), logging.INFO))


# Global logger manager
logger_manager = LoggerManager()


def get_logger(name: str, level: Optional[str] = None) -> StructuredLogger:
    """Get a structured logger instance"""
    return logger_manager.get_logger(name, level)


def set_correlation_id(correlation_id_value: str):
    correlation_id.set(correlation_id_value)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def with_report_context(report_id_value: str):
    """Decorator to bind a report id (and a fresh correlation id) while a job runs"""
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            report_token = report_id.set(report_id_value)
            correlation_token = correlation_id.set(correlation_id.get() or generate_correlation_id())
            try:
                return await func(*args, **kwargs)
            finally:
                correlation_id.reset(correlation_token)
                report_id.reset(report_token)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            report_token = report_id.set(report_id_value)
            correlation_token = correlation_id.set(correlation_id.get() or generate_correlation_id())
            try:
                return func(*args, **kwargs)
            finally:
                correlation_id.reset(correlation_token)
                report_id.reset(report_token)

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper
    return decorator
