"""
Error Handling System for TaskTrack

This module provides the error handling framework for the backend core:
1. Custom exception hierarchy rooted in TaskTrackError
2. Structured error information for logging and reporting
3. Error response generation for APIs

BackendError is the only error native to the cache and rate limiting core.
Whether it reaches a caller depends on the operation: cache writes surface it,
cache reads, deletes and rate limit checks degrade to a documented default.
"""

import logging
import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tasktrack.common.logger import get_logger

# Configure logging
logger = get_logger(__name__)

class ErrorSeverity(Enum):
    """Severity levels for errors"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

class ErrorCode(Enum):
    """Standard error codes for TaskTrack"""
    # General errors
    UNKNOWN_ERROR = "unknown_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    CONFIGURATION_ERROR = "configuration_error"

    # Backend errors
    BACKEND_ERROR = "backend_error"

    # Cache errors
    CACHE_ERROR = "cache_error"
    CACHE_SERIALIZATION_ERROR = "cache_serialization_error"

class ErrorInfo(BaseModel):
    """Structured information about an error"""
    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    exception_type: Optional[str] = None
    exception_message: Optional[str] = None
    stack_trace: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None

    @field_validator('stack_trace', mode='before')
    @classmethod
    def validate_stack_trace(cls, v):
        """Format stack trace if it's a string"""
        if isinstance(v, str):
            return v.splitlines()
        return v

class TaskTrackError(Exception):
    """Base exception class for all TaskTrack errors"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now()

    def to_error_info(self, include_stack_trace: bool = False) -> ErrorInfo:
        """Convert the exception to an ErrorInfo object"""
        stack_trace = None
        if include_stack_trace:
            stack_trace = traceback.format_exc().splitlines()

        # Include cause information in details
        details = dict(self.details)
        if self.cause is not None:
            details["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }

        return ErrorInfo(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            severity=self.severity,
            details=details,
            exception_type=type(self).__name__,
            exception_message=str(self),
            stack_trace=stack_trace,
            context=self.context
        )

    def to_dict(self, include_stack_trace: bool = False) -> Dict[str, Any]:
        """Convert the exception to a dictionary"""
        return self.to_error_info(include_stack_trace).model_dump(mode="json")

    def __str__(self) -> str:
        base_str = f"{self.code.value}: {self.message}"
        if self.details:
            base_str += f" (details: {self.details})"
        if self.cause:
            base_str += f" caused by {type(self.cause).__name__}: {str(self.cause)}"
        return base_str

class ConfigurationError(TaskTrackError):
    """Error raised when configuration cannot be loaded or validated"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        cause: Optional[Exception] = None
    ):
        details = {}
        if config_key is not None:
            details["config_key"] = config_key

        super().__init__(
            message=message,
            code=ErrorCode.CONFIGURATION_ERROR,
            severity=ErrorSeverity.CRITICAL,
            details=details,
            cause=cause
        )
        self.config_key = config_key

class RateLimitError(TaskTrackError):
    """Error raised when rate limits are exceeded"""

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        decision: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if retry_after is not None:
            details["retry_after_seconds"] = retry_after

        super().__init__(
            message=message,
            code=ErrorCode.RATE_LIMIT_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            context=context
        )
        self.retry_after = retry_after
        # Gate decision at the time of rejection, None when the key was blocked
        self.decision = decision

class BackendError(TaskTrackError):
    """Error raised when a call to the key-value backend fails"""

    def __init__(
        self,
        operation: str,
        message: Optional[str] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message or f"Backend operation '{operation}' failed",
            code=ErrorCode.BACKEND_ERROR,
            severity=ErrorSeverity.ERROR,
            details={"operation": operation},
            cause=cause,
            context=context
        )
        self.operation = operation

class CacheError(TaskTrackError):
    """Base class for cache-related errors"""
    pass

class CacheSerializationError(CacheError):
    """Error raised when a value cannot be serialized for the cache"""

    def __init__(self, key: str, cause: Optional[Exception] = None):
        super().__init__(
            message=f"Value for cache key '{key}' could not be serialized",
            code=ErrorCode.CACHE_SERIALIZATION_ERROR,
            severity=ErrorSeverity.ERROR,
            details={"key": key},
            cause=cause
        )

def convert_exception(
    exception: Exception,
    default_message: str = "An unexpected error occurred",
    default_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    default_severity: ErrorSeverity = ErrorSeverity.ERROR,
    context: Optional[Dict[str, Any]] = None
) -> TaskTrackError:
    """
    Convert a standard exception to a TaskTrackError.

    Args:
        exception: The exception to convert
        default_message: Default message if the exception has no message
        default_code: Default error code
        default_severity: Default error severity
        context: Optional additional context

    Returns:
        Converted TaskTrackError
    """
    if isinstance(exception, TaskTrackError):
        if context:
            exception.context.update(context)
        return exception

    return TaskTrackError(
        message=str(exception) or default_message,
        code=default_code,
        severity=default_severity,
        cause=exception,
        context=context
    )

def error_response(
    error: Union[TaskTrackError, Exception],
    include_details: bool = True,
    include_stack_trace: bool = False
) -> Dict[str, Any]:
    """
    Generate a standardized API error response.

    Args:
        error: The error to generate a response for
        include_details: Whether to include error details
        include_stack_trace: Whether to include stack trace

    Returns:
        Standardized error response dictionary
    """
    if not isinstance(error, TaskTrackError):
        error = convert_exception(error)

    error_info = error.to_error_info(include_stack_trace=include_stack_trace)

    response = {
        "status": "error",
        "code": error_info.code,
        "message": error_info.message
    }

    if include_details and error_info.details:
        response["details"] = error_info.details

    return response

def log_error(
    error: Union[TaskTrackError, Exception],
    level: int = logging.ERROR,
    include_stack_trace: bool = False,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log an error with standardized format.

    Args:
        error: The error to log
        level: Logging level
        include_stack_trace: Whether to include stack trace
        context: Additional context to include
    """
    if not isinstance(error, TaskTrackError):
        error = convert_exception(error, context=context)
    elif context:
        error.context.update(context)

    message = f"ERROR [{error.code.value}]: {error.message}"

    if error.context:
        context_str = ", ".join(f"{k}={v}" for k, v in error.context.items())
        message += f" (context: {context_str})"

    if error.cause:
        message += f" caused by {type(error.cause).__name__}: {str(error.cause)}"

    if include_stack_trace:
        message += f"\n{traceback.format_exc()}"

    logger.log(level, message)
