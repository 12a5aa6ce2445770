"""Custom exceptions for the flow orchestration engine with detailed error information."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    ROUTING = "routing"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    NOT_FOUND = "not_found"


class FlowEngineError(Exception):
    """Base exception for all flow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class ValidationError(FlowEngineError):
    """Raised when a flow definition or request is malformed."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        flow_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if flow_name:
            self.add_context(flow_name=flow_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NotFoundError(FlowEngineError):
    """Raised when a definition or instance does not exist or is unusable."""

    def __init__(
        self,
        message: str,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        if resource:
            self.add_context(resource=resource)
        if resource_id:
            self.add_context(resource_id=resource_id)


class RoutingError(FlowEngineError):
    """Raised when no outgoing edge matches a node's output and no fallback exists."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        routing_value: Optional[Any] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.ROUTING,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        self.add_details(routing_value=routing_value)


class HandlerError(FlowEngineError):
    """Raised when a node handler fails; retried per the flow's retry policy."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        recoverable: bool = True,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=recoverable,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if node_type:
            self.add_context(node_type=node_type)


class UnknownNodeTypeError(HandlerError):
    """Raised when no handler is registered for a node type."""

    def __init__(self, node_type: str, **kwargs):
        super().__init__(
            f"No handler registered for node type '{node_type}'",
            node_type=node_type,
            recoverable=False,
            **kwargs
        )


class RateLimitExceeded(FlowEngineError):
    """Raised when a provider's fixed rate-limit window is exhausted."""

    def __init__(self, provider_id: str, reset_time: float, limit: Optional[int] = None, **kwargs):
        super().__init__(
            f"Rate limit exceeded for provider '{provider_id}'",
            error_code="RATE_LIMIT_EXCEEDED",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.RESOURCE,
            recoverable=True,
            **kwargs
        )
        self.provider_id = provider_id
        self.reset_time = reset_time
        self.add_context(provider_id=provider_id)
        self.add_details(reset_time=reset_time, limit=limit)


class CircuitBreakerOpen(FlowEngineError):
    """Raised when calls to a model are blocked by an open circuit breaker."""

    def __init__(self, model_id: str, reset_time: float, **kwargs):
        super().__init__(
            f"Circuit breaker is open for model '{model_id}'",
            error_code="CIRCUIT_BREAKER_OPEN",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.NETWORK,
            recoverable=True,
            **kwargs
        )
        self.model_id = model_id
        self.reset_time = reset_time
        self.add_context(model_id=model_id)
        self.add_details(reset_time=reset_time)


class FlowTimeoutError(FlowEngineError, TimeoutError):
    """Raised when an instance exceeds its overall timeout."""

    def __init__(self, message: str, instance_id: Optional[str] = None, timeout_ms: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            error_code="TIMEOUT",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.RESOURCE,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if timeout_ms is not None:
            self.add_details(timeout_ms=timeout_ms)


class FlowCancelledError(FlowEngineError):
    """Raised inside the execution loop when cancellation is observed at a node boundary."""

    def __init__(self, instance_id: str, reason: Optional[str] = None, **kwargs):
        super().__init__(
            f"Flow instance {instance_id} was cancelled" + (f": {reason}" if reason else ""),
            error_code="CANCELLED",
            severity=ErrorSeverity.LOW,
            **kwargs
        )
        self.add_context(instance_id=instance_id)


class NodeVisitLimitExceeded(FlowEngineError):
    """Raised when an instance visits more nodes than allowed, usually a runaway cycle."""

    def __init__(self, instance_id: str, limit: int, **kwargs):
        super().__init__(
            f"Flow instance {instance_id} exceeded the limit of {limit} node visits",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.RESOURCE,
            **kwargs
        )
        self.add_context(instance_id=instance_id)
        self.add_details(limit=limit)


class StorageError(FlowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(FlowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: FlowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a FlowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
