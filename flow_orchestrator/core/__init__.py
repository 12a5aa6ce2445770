"""Core flow orchestration components."""

from .exceptions import (
    FlowEngineError,
    ValidationError,
    NotFoundError,
    RoutingError,
    HandlerError,
    UnknownNodeTypeError,
    RateLimitExceeded,
    CircuitBreakerOpen,
    FlowTimeoutError,
    FlowCancelledError,
    NodeVisitLimitExceeded,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .invocation_guard import InvocationGuard, GuardConfig, InMemoryCounterStore
from .node_handlers import NodeHandlerRegistry, create_default_registry
from .flow_selector import FlowSelector
from .flow_engine import FlowEngine, EngineSettings

__all__ = [
    "FlowEngineError",
    "ValidationError",
    "NotFoundError",
    "RoutingError",
    "HandlerError",
    "UnknownNodeTypeError",
    "RateLimitExceeded",
    "CircuitBreakerOpen",
    "FlowTimeoutError",
    "FlowCancelledError",
    "NodeVisitLimitExceeded",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "InvocationGuard",
    "GuardConfig",
    "InMemoryCounterStore",
    "NodeHandlerRegistry",
    "create_default_registry",
    "FlowSelector",
    "FlowEngine",
    "EngineSettings",
]
