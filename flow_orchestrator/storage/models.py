"""SQLAlchemy database models for the flow engine."""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from ..models.core import utcnow
from .database import Base


class FlowDefinitionModel(Base):
    """Database model for flow definitions."""
    __tablename__ = "flow_definitions"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    version = Column(String, nullable=False, default="1.0")
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(String, nullable=False, index=True)
    trigger_config = Column(JSON)
    nodes = Column(JSON, nullable=False)
    edges = Column(JSON, nullable=False)
    variables = Column(JSON)
    timeout = Column(Integer, nullable=False)
    retry_config = Column(JSON)
    is_default = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0)
    robot_id = Column(String, index=True)
    created_by = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_flow_definitions_active_trigger", "is_active", "trigger_type"),
    )


class FlowInstanceModel(Base):
    """Database model for flow instances."""
    __tablename__ = "flow_instances"

    id = Column(String, primary_key=True)
    flow_definition_id = Column(String, nullable=False, index=True)
    flow_name = Column(String)
    status = Column(String, nullable=False, index=True)  # pending, running, completed, failed, cancelled
    current_node_id = Column(String)
    execution_path = Column(JSON)  # Ordered list of visited node IDs
    trigger_data = Column(JSON)
    variables = Column(JSON)
    meta = Column("metadata", JSON)
    result = Column(JSON)
    error_message = Column(Text)
    error_stack = Column(Text)
    error_code = Column(String)
    cancel_reason = Column(Text)
    processing_time = Column(Integer)
    definition_snapshot = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)


class FlowExecutionLogModel(Base):
    """Database model for per-attempt node execution logs."""
    __tablename__ = "flow_execution_logs"

    id = Column(String, primary_key=True)
    flow_instance_id = Column(String, nullable=False, index=True)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    node_name = Column(String)
    attempt = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False)  # running, completed, failed
    input_data = Column(JSON)
    output_data = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    processing_time = Column(Integer)

    __table_args__ = (
        Index("ix_flow_execution_logs_instance_node", "flow_instance_id", "node_id"),
    )
