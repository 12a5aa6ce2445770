"""Storage layer for the flow engine."""

from .database import Base, build_engine, create_session_factory, create_tables, drop_tables, get_database_engine
from .models import FlowDefinitionModel, FlowInstanceModel, FlowExecutionLogModel

__all__ = [
    "Base",
    "build_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "FlowDefinitionModel",
    "FlowInstanceModel",
    "FlowExecutionLogModel",
]
