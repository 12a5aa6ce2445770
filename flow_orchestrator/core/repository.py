"""Persistence port for definitions, instances and execution logs, with a SQLAlchemy implementation."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    DefinitionFilter,
    FlowDefinition,
    FlowExecutionLog,
    FlowInstance,
    FlowStatus,
    InstanceFilter,
    LogFilter,
)
from ..storage.models import FlowDefinitionModel, FlowExecutionLogModel, FlowInstanceModel
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


class FlowRepository(ABC):
    """Storage contract used by the flow engine and selector."""

    @abstractmethod
    def create_definition(self, definition: FlowDefinition) -> FlowDefinition: ...

    @abstractmethod
    def get_definition(self, definition_id: str) -> Optional[FlowDefinition]: ...

    @abstractmethod
    def list_definitions(self, filter: DefinitionFilter) -> List[FlowDefinition]: ...

    @abstractmethod
    def find_active_definitions(self, trigger_type: str) -> List[FlowDefinition]:
        """Active definitions for a trigger type, any robot binding."""

    @abstractmethod
    def update_definition(self, definition: FlowDefinition) -> FlowDefinition: ...

    @abstractmethod
    def delete_definition(self, definition_id: str) -> bool: ...

    @abstractmethod
    def create_instance(self, instance: FlowInstance) -> FlowInstance: ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[FlowInstance]: ...

    @abstractmethod
    def list_instances(self, filter: InstanceFilter) -> List[FlowInstance]: ...

    @abstractmethod
    def transition_instance(self, instance_id: str, from_statuses: Iterable[FlowStatus],
                            to_status: FlowStatus, **changes: Any) -> Optional[FlowInstance]:
        """Change status only if the current status is one of ``from_statuses``.

        Returns the updated instance, or None when the instance is missing or
        in another status. This check-and-set is what keeps status
        transitions monotonic when a cancel races the execution loop.
        """

    @abstractmethod
    def count_instances_by_status(self) -> Dict[str, int]: ...

    @abstractmethod
    def create_log(self, log: FlowExecutionLog) -> FlowExecutionLog: ...

    @abstractmethod
    def update_log(self, log_id: str, **changes: Any) -> Optional[FlowExecutionLog]: ...

    @abstractmethod
    def list_logs(self, filter: LogFilter) -> List[FlowExecutionLog]: ...


_DEFINITION_JSON = ("trigger_config", "nodes", "edges", "variables", "retry_config")
_INSTANCE_JSON = ("execution_path", "trigger_data", "variables", "metadata", "result", "definition_snapshot")
_LOG_JSON = ("input_data", "output_data")


def _jsonable(value: Any) -> Any:
    return to_jsonable_python(value, fallback=str)


def _definition_columns(definition: FlowDefinition) -> Dict[str, Any]:
    columns = definition.model_dump()
    for key in _DEFINITION_JSON:
        columns[key] = _jsonable(columns[key])
    return columns


def _to_definition(model: FlowDefinitionModel) -> FlowDefinition:
    return FlowDefinition.model_validate({
        "id": model.id,
        "name": model.name,
        "description": model.description or "",
        "version": model.version,
        "is_active": model.is_active,
        "trigger_type": model.trigger_type,
        "trigger_config": model.trigger_config or {},
        "nodes": model.nodes or [],
        "edges": model.edges or [],
        "variables": model.variables or {},
        "timeout": model.timeout,
        "retry_config": model.retry_config or {},
        "is_default": model.is_default,
        "priority": model.priority,
        "robot_id": model.robot_id,
        "created_by": model.created_by,
        "created_at": model.created_at,
        "updated_at": model.updated_at,
    })


def _instance_columns(changes: Dict[str, Any]) -> Dict[str, Any]:
    columns = {}
    for key, value in changes.items():
        if isinstance(value, FlowStatus):
            value = value.value
        elif key in _INSTANCE_JSON:
            value = _jsonable(value)
        columns["meta" if key == "metadata" else key] = value
    return columns


def _to_instance(model: FlowInstanceModel) -> FlowInstance:
    return FlowInstance.model_validate({
        "id": model.id,
        "flow_definition_id": model.flow_definition_id,
        "flow_name": model.flow_name or "",
        "status": model.status,
        "current_node_id": model.current_node_id,
        "execution_path": model.execution_path or [],
        "trigger_data": model.trigger_data or {},
        "variables": model.variables or {},
        "metadata": model.meta or {},
        "result": model.result,
        "error_message": model.error_message,
        "error_stack": model.error_stack,
        "error_code": model.error_code,
        "cancel_reason": model.cancel_reason,
        "processing_time": model.processing_time,
        "definition_snapshot": model.definition_snapshot,
        "created_at": model.created_at,
        "started_at": model.started_at,
        "completed_at": model.completed_at,
    })


def _log_columns(changes: Dict[str, Any]) -> Dict[str, Any]:
    columns = {}
    for key, value in changes.items():
        if hasattr(value, "value") and key == "status":
            value = value.value
        elif key in _LOG_JSON:
            value = _jsonable(value)
        columns[key] = value
    return columns


def _to_log(model: FlowExecutionLogModel) -> FlowExecutionLog:
    return FlowExecutionLog.model_validate({
        "id": model.id,
        "flow_instance_id": model.flow_instance_id,
        "node_id": model.node_id,
        "node_type": model.node_type,
        "node_name": model.node_name or "",
        "attempt": model.attempt,
        "status": model.status,
        "input_data": model.input_data or {},
        "output_data": model.output_data,
        "error_message": model.error_message,
        "started_at": model.started_at,
        "completed_at": model.completed_at,
        "processing_time": model.processing_time,
    })


class SqlAlchemyFlowRepository(FlowRepository):
    """FlowRepository backed by SQLAlchemy sessions."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, table: str) -> Iterator[Session]:
        """Session scope that commits on success and wraps database errors."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation} on {table}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table=table)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Definitions

    def create_definition(self, definition: FlowDefinition) -> FlowDefinition:
        with self._session("create flow definition", "flow_definitions") as session:
            session.add(FlowDefinitionModel(**_definition_columns(definition)))
        return definition

    def get_definition(self, definition_id: str) -> Optional[FlowDefinition]:
        with self._session("get flow definition", "flow_definitions") as session:
            model = session.get(FlowDefinitionModel, definition_id)
            return _to_definition(model) if model else None

    def list_definitions(self, filter: DefinitionFilter) -> List[FlowDefinition]:
        with self._session("list flow definitions", "flow_definitions") as session:
            query = session.query(FlowDefinitionModel)
            if filter.is_active is not None:
                query = query.filter(FlowDefinitionModel.is_active == filter.is_active)
            if filter.trigger_type:
                query = query.filter(FlowDefinitionModel.trigger_type == filter.trigger_type)
            if filter.is_default is not None:
                query = query.filter(FlowDefinitionModel.is_default == filter.is_default)
            models = (
                query.order_by(FlowDefinitionModel.created_at.desc())
                .offset(filter.offset)
                .limit(filter.limit)
                .all()
            )
            return [_to_definition(model) for model in models]

    def find_active_definitions(self, trigger_type: str) -> List[FlowDefinition]:
        with self._session("find active flow definitions", "flow_definitions") as session:
            models = (
                session.query(FlowDefinitionModel)
                .filter(FlowDefinitionModel.is_active.is_(True),
                        FlowDefinitionModel.trigger_type == trigger_type)
                .order_by(FlowDefinitionModel.created_at.asc())
                .all()
            )
            return [_to_definition(model) for model in models]

    def update_definition(self, definition: FlowDefinition) -> FlowDefinition:
        with self._session("update flow definition", "flow_definitions") as session:
            model = session.get(FlowDefinitionModel, definition.id)
            if model is None:
                raise StorageError(f"Flow definition '{definition.id}' not found",
                                   operation="update flow definition", table="flow_definitions")
            for key, value in _definition_columns(definition).items():
                setattr(model, key, value)
        return definition

    def delete_definition(self, definition_id: str) -> bool:
        with self._session("delete flow definition", "flow_definitions") as session:
            model = session.get(FlowDefinitionModel, definition_id)
            if model is None:
                return False
            session.delete(model)
            return True

    # Instances

    def create_instance(self, instance: FlowInstance) -> FlowInstance:
        with self._session("create flow instance", "flow_instances") as session:
            session.add(FlowInstanceModel(**_instance_columns(instance.model_dump())))
        return instance

    def get_instance(self, instance_id: str) -> Optional[FlowInstance]:
        with self._session("get flow instance", "flow_instances") as session:
            model = session.get(FlowInstanceModel, instance_id)
            return _to_instance(model) if model else None

    def list_instances(self, filter: InstanceFilter) -> List[FlowInstance]:
        with self._session("list flow instances", "flow_instances") as session:
            query = session.query(FlowInstanceModel)
            if filter.flow_definition_id:
                query = query.filter(FlowInstanceModel.flow_definition_id == filter.flow_definition_id)
            if filter.status:
                query = query.filter(FlowInstanceModel.status == filter.status.value)
            models = (
                query.order_by(FlowInstanceModel.created_at.desc())
                .offset(filter.offset)
                .limit(filter.limit)
                .all()
            )
            return [_to_instance(model) for model in models]

    def transition_instance(self, instance_id: str, from_statuses: Iterable[FlowStatus],
                            to_status: FlowStatus, **changes: Any) -> Optional[FlowInstance]:
        allowed = [FlowStatus(status).value for status in from_statuses]
        values = _instance_columns({**changes, "status": to_status})
        with self._session("transition flow instance", "flow_instances") as session:
            updated = (
                session.query(FlowInstanceModel)
                .filter(FlowInstanceModel.id == instance_id, FlowInstanceModel.status.in_(allowed))
                .update({getattr(FlowInstanceModel, key): value for key, value in values.items()},
                        synchronize_session=False)
            )
            if not updated:
                return None
            session.flush()
            session.expire_all()
            return _to_instance(session.get(FlowInstanceModel, instance_id))

    def count_instances_by_status(self) -> Dict[str, int]:
        with self._session("count flow instances", "flow_instances") as session:
            rows = (
                session.query(FlowInstanceModel.status, func.count(FlowInstanceModel.id))
                .group_by(FlowInstanceModel.status)
                .all()
            )
            return {status: count for status, count in rows}

    # Execution logs

    def create_log(self, log: FlowExecutionLog) -> FlowExecutionLog:
        with self._session("create execution log", "flow_execution_logs") as session:
            session.add(FlowExecutionLogModel(**_log_columns(log.model_dump())))
        return log

    def update_log(self, log_id: str, **changes: Any) -> Optional[FlowExecutionLog]:
        with self._session("update execution log", "flow_execution_logs") as session:
            model = session.get(FlowExecutionLogModel, log_id)
            if model is None:
                return None
            for key, value in _log_columns(changes).items():
                setattr(model, key, value)
            session.flush()
            return _to_log(model)

    def list_logs(self, filter: LogFilter) -> List[FlowExecutionLog]:
        with self._session("list execution logs", "flow_execution_logs") as session:
            query = session.query(FlowExecutionLogModel)
            if filter.flow_instance_id:
                query = query.filter(FlowExecutionLogModel.flow_instance_id == filter.flow_instance_id)
            if filter.node_id:
                query = query.filter(FlowExecutionLogModel.node_id == filter.node_id)
            if filter.status:
                query = query.filter(FlowExecutionLogModel.status == filter.status.value)
            query = query.order_by(FlowExecutionLogModel.started_at.asc(), FlowExecutionLogModel.attempt.asc())
            if filter.limit:
                query = query.limit(filter.limit)
            return [_to_log(model) for model in query.all()]
