"""Core Pydantic models for the flow orchestration engine."""

import re
import uuid
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every stored datetime uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class NodeType(str, Enum):
    """Enumeration of node types understood by the handler registry."""
    START = "start"
    END = "end"
    INTENT = "intent"
    AI_CHAT = "ai_chat"
    CONDITION = "condition"
    DECISION = "decision"
    HTTP_REQUEST = "http_request"
    DATA_QUERY = "data_query"
    DATA_TRANSFORM = "data_transform"
    VARIABLE_SET = "variable_set"
    MESSAGE_RECEIVE = "message_receive"
    MESSAGE_DISPATCH = "message_dispatch"
    MESSAGE_SYNC = "message_sync"
    ALERT_SAVE = "alert_save"
    ALERT_RULE = "alert_rule"
    ALERT_NOTIFY = "alert_notify"
    ALERT_ESCALATE = "alert_escalate"
    ROBOT_DISPATCH = "robot_dispatch"
    SEND_COMMAND = "send_command"
    COMMAND_STATUS = "command_status"
    STAFF_INTERVENTION = "staff_intervention"
    HUMAN_HANDOVER = "human_handover"
    TASK_ASSIGN = "task_assign"
    SESSION_CREATE = "session_create"
    LOG_SAVE = "log_save"
    DELAY = "delay"
    MULTI_TASK_AI = "multi_task_ai"
    MULTI_TASK_DATA = "multi_task_data"
    MULTI_TASK_HTTP = "multi_task_http"
    MULTI_TASK_TASK = "multi_task_task"
    MULTI_TASK_ALERT = "multi_task_alert"
    MULTI_TASK_STAFF = "multi_task_staff"
    MULTI_TASK_ANALYSIS = "multi_task_analysis"
    MULTI_TASK_ROBOT = "multi_task_robot"
    MULTI_TASK_MESSAGE = "multi_task_message"

    @property
    def is_multi_task(self) -> bool:
        return self.value.startswith("multi_task_")


class FlowStatus(str, Enum):
    """Enumeration of flow instance statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED)


class LogStatus(str, Enum):
    """Status of a single node execution attempt."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecuteMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SubTaskStatus(str, Enum):
    """Outcome of one sub-task inside a multi-task node."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class SelectionStrategy(str, Enum):
    """Policies for picking flow definitions for a trigger."""
    DEFAULT_FIRST = "default_first"
    HIGHEST_PRIORITY = "highest_priority"
    ALL_MATCHED = "all_matched"
    SINGLE = "single"


class ConditionOperator(str, Enum):
    """Comparison operators supported on edges and rules."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    EXISTS = "exists"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"


class ValidationResult(BaseModel):
    """Result of flow definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


def snake_case_keys(model: Type[BaseModel], data: Dict[str, Any],
                    aliases: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Rename camelCase keys of ``data`` to the model's field names.

    Raises:
        ValueError: If one field is given under both spellings
    """
    names = {to_camel(name): name for name in model.model_fields}
    names.update(aliases or {})
    renamed: Dict[str, Any] = {}
    for key, value in data.items():
        name = names.get(key, key)
        if name in renamed:
            raise ValueError(f"Field '{name}' given more than once")
        renamed[name] = value
    return renamed


class Node(BaseModel):
    """Definition of a flow node."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node type used for handler dispatch")
    name: str = Field(default="", description="Human readable node name")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific node configuration")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, '_', '-', '.' and ':'")
        return id_value.strip()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def config(self) -> Dict[str, Any]:
        """Handler configuration: ``data`` with a nested ``data.config`` object merged over it."""
        nested = self.data.get("config")
        if not isinstance(nested, dict):
            return self.data
        return {**{key: value for key, value in self.data.items() if key != "config"}, **nested}

    @model_validator(mode='after')
    def validate_timeout_ms(self):
        timeout = self.config.get("timeoutMs")
        if timeout is None:
            return self
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError(f"Node '{self.id}' timeoutMs must be a positive number of milliseconds")
        return self


class Edge(BaseModel):
    """Directed, optionally conditioned transition between two nodes."""
    id: str = Field(default_factory=new_id, description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    condition: Optional[str] = Field(None, description="Value compared against the source node output")
    default: bool = Field(False, description="Fallback edge used when no condition matches")
    field: Optional[str] = Field(None, description="Output field to compare; defaults to conditionResult/intent")
    operator: ConditionOperator = Field(ConditionOperator.EQUALS, description="Comparison operator")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('condition', mode='before')
    @classmethod
    def normalize_condition(cls, condition):
        """Blank conditions are treated as unconditioned edges."""
        if condition is None:
            return None
        if isinstance(condition, bool):
            return "true" if condition else "false"
        condition = str(condition)
        return condition if condition.strip() else None

    @property
    def is_fallback(self) -> bool:
        return self.default or self.condition is None


class RetryConfig(BaseModel):
    """Per-node retry policy of a flow definition (fixed delay)."""
    model_config = ConfigDict(extra='forbid')

    max_retries: int = Field(default=3, ge=0, le=100, description="Retries after the first attempt")
    retry_interval: int = Field(default=1000, ge=0, description="Delay between attempts in milliseconds")

    @model_validator(mode='before')
    @classmethod
    def accept_camel_case(cls, data):
        if isinstance(data, dict):
            return snake_case_keys(cls, data)
        return data


class FlowDefinition(BaseModel):
    """Complete definition of a flow graph plus trigger and routing metadata."""
    id: str = Field(default_factory=new_id, description="Unique identifier of the definition")
    name: str = Field(..., description="Name of the flow")
    description: str = Field(default="", description="Description of the flow")
    version: str = Field(default="1.0", description="Definition version")
    is_active: bool = Field(default=True, description="Inactive definitions cannot be instantiated")
    trigger_type: str = Field(default="webhook", description="Event class that starts this flow")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="Trigger specific settings")
    nodes: List[Node] = Field(..., description="List of nodes in the flow")
    edges: List[Edge] = Field(default_factory=list, description="List of edges connecting nodes")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Default variable bag")
    timeout: int = Field(default=30000, description="Instance timeout in milliseconds")
    retry_config: RetryConfig = Field(default_factory=RetryConfig, description="Per-node retry policy")
    is_default: bool = Field(default=False, description="Default flow for its robot and trigger")
    priority: int = Field(default=0, description="Higher values win under highest_priority selection")
    robot_id: Optional[str] = Field(default=None, description="Robot binding; unset matches any robot")
    created_by: Optional[str] = Field(default=None, description="Author of the definition")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def normalize_keys(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """Field-name view of a definition written with camelCase keys (``triggerType``, ``robotBinding``)."""
        return snake_case_keys(cls, data, {"robotBinding": "robot_id"})

    @model_validator(mode='before')
    @classmethod
    def accept_camel_case(cls, data):
        if isinstance(data, dict):
            return cls.normalize_keys(data)
        return data

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name or not name.strip():
            raise ValueError("Flow name cannot be empty")
        return name.strip()

    @field_validator('trigger_type')
    @classmethod
    def validate_trigger_type(cls, trigger_type):
        if not trigger_type or not trigger_type.strip():
            raise ValueError("Trigger type cannot be empty")
        return trigger_type.strip()

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout <= 0:
            raise ValueError("Timeout must be a positive number of milliseconds")
        return timeout

    @model_validator(mode='after')
    def validate_graph_structure(self):
        """Validate the overall graph structure."""
        if not self.nodes:
            raise ValueError("Flow must contain at least one node")

        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
            raise ValueError(f"Duplicate node IDs: {', '.join(duplicates)}")

        start_nodes = [node.id for node in self.nodes if node.type == NodeType.START]
        if len(start_nodes) != 1:
            raise ValueError(f"Flow must contain exactly one start node, found {len(start_nodes)}")

        edge_ids = [edge.id for edge in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            raise ValueError("All edge IDs must be unique")

        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known:
                raise ValueError(f"Edge '{edge.id}' references non-existent source node: {edge.source}")
            if edge.target not in known:
                raise ValueError(f"Edge '{edge.id}' references non-existent target node: {edge.target}")

        return self

    @property
    def robot_binding(self) -> Optional[str]:
        """Robot this definition is bound to, if any."""
        if self.robot_id:
            return self.robot_id
        bound = self.trigger_config.get("robotId") or self.trigger_config.get("robot_id")
        return str(bound) if bound else None

    @property
    def start_node(self) -> Node:
        return next(node for node in self.nodes if node.type == NodeType.START)

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Outgoing edges of a node in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def validate_structure(self) -> ValidationResult:
        """Report structural warnings that do not make the definition invalid."""
        warnings = []

        if self._has_cycles():
            warnings.append("Flow contains cycles; total node visits are bounded at execution time")

        unreachable = {node.id for node in self.nodes} - self._find_reachable_nodes()
        if unreachable:
            warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        if not any(node.type == NodeType.END for node in self.nodes):
            warnings.append("Flow has no end node and can never complete")

        return ValidationResult(is_valid=True, warnings=warnings)

    def _adjacency(self) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            adjacency[edge.source].append(edge.target)
        return adjacency

    def _find_reachable_nodes(self) -> Set[str]:
        """Find all nodes reachable from the start node."""
        adjacency = self._adjacency()
        start = self.start_node.id
        reachable = {start}
        queue = [start]
        while queue:
            current = queue.pop(0)
            for neighbor in adjacency[current]:
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    def _has_cycles(self) -> bool:
        """Detect cycles with an iterative three-colour DFS."""
        adjacency = self._adjacency()
        white, grey, black = 0, 1, 2
        colour = {node_id: white for node_id in adjacency}

        for root in adjacency:
            if colour[root] != white:
                continue
            stack = [(root, iter(adjacency[root]))]
            colour[root] = grey
            while stack:
                node_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    colour[node_id] = black
                    stack.pop()
                elif colour[child] == grey:
                    return True
                elif colour[child] == white:
                    colour[child] = grey
                    stack.append((child, iter(adjacency[child])))
        return False


class FlowInstance(BaseModel):
    """One execution of a flow definition against specific trigger data."""
    id: str = Field(default_factory=new_id)
    flow_definition_id: str = Field(..., description="Definition this instance was created from")
    flow_name: str = Field(default="", description="Definition name at creation time")
    status: FlowStatus = Field(default=FlowStatus.PENDING)
    current_node_id: Optional[str] = Field(default=None)
    execution_path: List[str] = Field(default_factory=list, description="Visited node IDs in order")
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict, description="Mutable context bag")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    error_stack: Optional[str] = Field(default=None)
    error_code: Optional[str] = Field(default=None)
    cancel_reason: Optional[str] = Field(default=None)
    processing_time: Optional[int] = Field(default=None, description="Wall time in milliseconds")
    definition_snapshot: Optional[FlowDefinition] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class FlowExecutionLog(BaseModel):
    """Append-only record of one node execution attempt."""
    id: str = Field(default_factory=new_id)
    flow_instance_id: str
    node_id: str
    node_type: str
    node_name: str = ""
    attempt: int = Field(default=1, ge=1)
    status: LogStatus = Field(default=LogStatus.RUNNING)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    processing_time: Optional[int] = Field(default=None, description="Milliseconds")


class DefinitionFilter(BaseModel):
    """Filter for listing flow definitions."""
    is_active: Optional[bool] = None
    trigger_type: Optional[str] = None
    is_default: Optional[bool] = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class InstanceFilter(BaseModel):
    """Filter for listing flow instances."""
    flow_definition_id: Optional[str] = None
    status: Optional[FlowStatus] = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class LogFilter(BaseModel):
    """Filter for execution logs."""
    flow_instance_id: Optional[str] = None
    node_id: Optional[str] = None
    status: Optional[LogStatus] = None
    limit: Optional[int] = Field(default=None, ge=1)


@dataclass
class NodeInput:
    """Input handed to a node handler for one attempt."""
    variables: Dict[str, Any]
    trigger_data: Dict[str, Any] = dataclass_field(default_factory=dict)
    previous_output: Dict[str, Any] = dataclass_field(default_factory=dict)
    instance_id: Optional[str] = None
    node_id: Optional[str] = None

    def scope(self) -> Dict[str, Any]:
        """Lookup scope for templates and rules; variables shadow trigger data."""
        return {**self.trigger_data, **self.variables, "trigger": self.trigger_data,
                "previous": self.previous_output}


@dataclass
class NodeResult:
    """Handler outcome: output on success, error on failure."""
    output: Dict[str, Any] = dataclass_field(default_factory=dict)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None
