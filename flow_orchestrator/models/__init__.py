"""Data models for the flow orchestration engine."""

from .core import (
    NodeType,
    FlowStatus,
    LogStatus,
    ExecuteMode,
    SubTaskStatus,
    SelectionStrategy,
    ConditionOperator,
    ValidationResult,
    Node,
    Edge,
    RetryConfig,
    FlowDefinition,
    FlowInstance,
    FlowExecutionLog,
    DefinitionFilter,
    InstanceFilter,
    LogFilter,
    NodeInput,
    NodeResult,
    utcnow,
)

__all__ = [
    "NodeType",
    "FlowStatus",
    "LogStatus",
    "ExecuteMode",
    "SubTaskStatus",
    "SelectionStrategy",
    "ConditionOperator",
    "ValidationResult",
    "Node",
    "Edge",
    "RetryConfig",
    "FlowDefinition",
    "FlowInstance",
    "FlowExecutionLog",
    "DefinitionFilter",
    "InstanceFilter",
    "LogFilter",
    "NodeInput",
    "NodeResult",
    "utcnow",
]
