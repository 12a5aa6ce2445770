"""Flow Engine: definition and instance lifecycle plus the node execution loop."""

import asyncio
import time
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..models.core import (
    DefinitionFilter,
    FlowDefinition,
    FlowExecutionLog,
    FlowInstance,
    FlowStatus,
    InstanceFilter,
    LogFilter,
    LogStatus,
    Node,
    NodeInput,
    NodeResult,
    NodeType,
    SelectionStrategy,
    ValidationResult,
    utcnow,
)
from .conditions import routing_value, select_edge
from .exceptions import (
    ConfigurationError,
    FlowCancelledError,
    FlowEngineError,
    FlowTimeoutError,
    HandlerError,
    NodeVisitLimitExceeded,
    NotFoundError,
    RoutingError,
    ValidationError,
)
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_handlers import NodeHandlerRegistry
from .ports import NodeServices
from .repository import FlowRepository

logger = get_logger(__name__)

DefinitionSpec = Union[FlowDefinition, Dict[str, Any]]


@dataclass
class EngineSettings:
    """Engine tunables; durations in milliseconds unless named otherwise."""
    default_timeout_ms: int = 30000
    default_max_retries: int = 3
    default_retry_interval_ms: int = 1000
    node_timeout_ms: Optional[int] = None
    max_node_visits: int = 1000
    max_delay_seconds: float = 300.0
    default_strategy: SelectionStrategy = SelectionStrategy.DEFAULT_FIRST


def _format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class FlowEngine:
    """Owns flow definitions and instances and walks instances through their node graph."""

    def __init__(
        self,
        repository: FlowRepository,
        registry: NodeHandlerRegistry,
        services: Optional[NodeServices] = None,
        settings: Optional[EngineSettings] = None,
        selector=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the flow engine.

        Args:
            repository: Persistence port for definitions, instances and logs
            registry: Node handler registry
            services: Capability ports handed to handlers
            settings: Engine tunables
            selector: Flow selector used by ``trigger_flows``
            clock: Monotonic clock in seconds
            sleep: Awaitable sleep taking seconds, used between node retries
        """
        self.repository = repository
        self.registry = registry
        self.services = services or NodeServices()
        self.settings = settings or EngineSettings()
        self.selector = selector
        self._clock = clock
        self._sleep = sleep
        self._active_tasks: Dict[str, asyncio.Task] = {}

        logger.info(f"FlowEngine initialized with max_node_visits={self.settings.max_node_visits}")

    # Flow definitions

    def _parse_definition(self, spec: DefinitionSpec) -> FlowDefinition:
        data = spec.model_dump() if isinstance(spec, FlowDefinition) else self._normalize(spec)
        data.setdefault("timeout", self.settings.default_timeout_ms)
        data.setdefault("retry_config", {
            "max_retries": self.settings.default_max_retries,
            "retry_interval": self.settings.default_retry_interval_ms,
        })
        try:
            definition = FlowDefinition.model_validate(data)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc']) or 'definition'}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError(
                f"Flow definition validation failed: {'; '.join(errors)}",
                validation_errors=errors,
                flow_name=data.get("name"),
            )

        missing = sorted({node.type.value for node in definition.nodes
                          if not self.registry.has_handler(node.type)})
        if missing:
            errors = [f"No handler registered for node type '{node_type}'" for node_type in missing]
            raise ValidationError(
                f"Flow definition validation failed: {'; '.join(errors)}",
                validation_errors=errors,
                flow_name=definition.name,
            )
        return definition

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return FlowDefinition.normalize_keys(dict(data))
        except ValueError as e:
            raise ValidationError(f"Flow definition validation failed: {e}", validation_errors=[str(e)],
                                  flow_name=data.get("name"))

    def validate_flow_definition(self, spec: DefinitionSpec) -> ValidationResult:
        """Dry-run validation returning errors and structural warnings."""
        try:
            definition = self._parse_definition(spec)
        except ValidationError as e:
            return ValidationResult(is_valid=False, errors=e.validation_errors or [e.message])
        return definition.validate_structure()

    def create_flow_definition(self, spec: DefinitionSpec) -> FlowDefinition:
        """
        Validate and store a new flow definition.

        Raises:
            ValidationError: If the definition is malformed or its id is taken
            StorageError: If storage operation fails
        """
        definition = self._parse_definition(spec)
        logger.info(f"Creating flow definition: {definition.name}")

        warnings = definition.validate_structure().warnings
        if warnings:
            logger.warning(f"Flow definition '{definition.name}' warnings: {'; '.join(warnings)}")

        if self.repository.get_definition(definition.id) is not None:
            raise ValidationError(f"Flow definition with ID '{definition.id}' already exists",
                                  flow_name=definition.name)

        stored = self.repository.create_definition(definition)
        logger.info(f"Successfully created flow definition '{stored.name}' with ID: {stored.id}")
        return stored

    def get_flow_definition(self, definition_id: str) -> Optional[FlowDefinition]:
        return self.repository.get_definition(definition_id)

    def list_flow_definitions(self, filter: Optional[DefinitionFilter] = None) -> List[FlowDefinition]:
        return self.repository.list_definitions(filter or DefinitionFilter())

    def update_flow_definition(self, definition_id: str, patch: Dict[str, Any]) -> FlowDefinition:
        """
        Apply a partial update and re-validate the definition.

        Running instances keep the snapshot they were created with.

        Raises:
            NotFoundError: If the definition does not exist
            ValidationError: If the patched definition is invalid
        """
        current = self.repository.get_definition(definition_id)
        if current is None:
            raise NotFoundError(f"Flow definition '{definition_id}' not found",
                                resource="flow_definition", resource_id=definition_id)

        patch = {key: value for key, value in self._normalize(patch).items()
                 if key not in ("id", "created_at", "updated_at")}
        merged = {**current.model_dump(), **patch, "updated_at": utcnow()}
        definition = self._parse_definition(merged)

        updated = self.repository.update_definition(definition)
        logger.info(f"Updated flow definition {definition_id} ({', '.join(sorted(patch)) or 'no fields'})")
        return updated

    def delete_flow_definition(self, definition_id: str) -> bool:
        deleted = self.repository.delete_definition(definition_id)
        if deleted:
            logger.info(f"Deleted flow definition {definition_id}")
        return deleted

    # Flow instances

    def create_flow_instance(
        self,
        definition_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FlowInstance:
        """
        Create a pending instance from an active definition.

        Raises:
            NotFoundError: If the definition is missing or inactive
        """
        definition = self.repository.get_definition(definition_id)
        if definition is None:
            raise NotFoundError(f"Flow definition '{definition_id}' not found",
                                resource="flow_definition", resource_id=definition_id)
        if not definition.is_active:
            raise NotFoundError(f"Flow definition '{definition_id}' is not active",
                                resource="flow_definition", resource_id=definition_id)

        trigger_data = dict(trigger_data or {})
        instance = FlowInstance(
            flow_definition_id=definition.id,
            flow_name=definition.name,
            status=FlowStatus.PENDING,
            trigger_data=trigger_data,
            variables={**definition.variables, **trigger_data},
            metadata=dict(metadata or {}),
            definition_snapshot=definition,
        )
        self.repository.create_instance(instance)
        logger.info(f"Created flow instance {instance.id} for flow '{definition.name}'")
        return instance

    def get_flow_instance(self, instance_id: str) -> Optional[FlowInstance]:
        return self.repository.get_instance(instance_id)

    def list_flow_instances(self, filter: Optional[InstanceFilter] = None) -> List[FlowInstance]:
        return self.repository.list_instances(filter or InstanceFilter())

    def get_flow_execution_logs(self, filter: Optional[LogFilter] = None) -> List[FlowExecutionLog]:
        return self.repository.list_logs(filter or LogFilter())

    def cancel_flow_instance(self, instance_id: str, reason: Optional[str] = None) -> Optional[FlowInstance]:
        """
        Cancel a non-terminal instance.

        Cancellation is cooperative: an in-flight handler finishes, and the
        execution loop stops at the next node boundary.

        Returns:
            The cancelled instance, the unchanged instance if it was already
            terminal, or None if it does not exist
        """
        instance = self.repository.get_instance(instance_id)
        if instance is None:
            logger.warning(f"Attempted to cancel unknown flow instance: {instance_id}")
            return None
        if instance.is_terminal:
            logger.info(f"Flow instance {instance_id} is already {instance.status.value}; not cancelling")
            return instance

        now = utcnow()
        changes = {"cancel_reason": reason, "completed_at": now}
        if instance.started_at:
            changes["processing_time"] = int((now - instance.started_at).total_seconds() * 1000)
        cancelled = self.repository.transition_instance(
            instance_id, [FlowStatus.PENDING, FlowStatus.RUNNING], FlowStatus.CANCELLED, **changes
        )
        if cancelled is None:
            return self.repository.get_instance(instance_id)

        logger.info(f"Cancelled flow instance {instance_id}" + (f": {reason}" if reason else ""))
        return cancelled

    # Execution

    async def execute_flow(self, instance_id: str) -> None:
        """
        Execute a pending instance until an end node, a terminal error, a timeout or a cancellation.

        Failures are recorded on the instance rather than raised.

        Raises:
            NotFoundError: If the instance does not exist
        """
        instance = self.repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Flow instance '{instance_id}' not found",
                                resource="flow_instance", resource_id=instance_id)

        definition = instance.definition_snapshot or self.repository.get_definition(instance.flow_definition_id)
        started = self._clock()

        running = self.repository.transition_instance(
            instance_id, [FlowStatus.PENDING], FlowStatus.RUNNING, started_at=utcnow()
        )
        if running is None:
            logger.warning(f"Flow instance {instance_id} is {instance.status.value}, not pending; skipping")
            return

        set_logging_context(instance_id=instance_id, flow_definition_id=instance.flow_definition_id)
        try:
            if definition is None:
                raise NotFoundError(f"Flow definition '{instance.flow_definition_id}' no longer exists",
                                    resource="flow_definition", resource_id=instance.flow_definition_id)
            logger.info(f"Executing flow instance {instance_id} of '{definition.name}'")
            await self._run(running, definition, started)
        except FlowCancelledError:
            logger.info(f"Flow instance {instance_id} stopped after cancellation")
        except asyncio.CancelledError:
            self.repository.transition_instance(
                instance_id, [FlowStatus.RUNNING], FlowStatus.CANCELLED,
                cancel_reason="engine shutdown", completed_at=utcnow(),
            )
            logger.warning(f"Flow instance {instance_id} interrupted by task cancellation")
            raise
        except Exception as e:
            self._fail_instance(instance_id, e, started)
        finally:
            clear_logging_context()

    async def _run(self, instance: FlowInstance, definition: FlowDefinition, started: float) -> None:
        deadline = started + definition.timeout / 1000
        variables = dict(instance.variables)
        path = list(instance.execution_path)
        previous_output: Dict[str, Any] = {}
        current = definition.start_node
        visits = 0

        while True:
            self._check_boundary(instance.id, deadline, definition.timeout)
            visits += 1
            if visits > self.settings.max_node_visits:
                raise NodeVisitLimitExceeded(instance.id, self.settings.max_node_visits)

            self._save_progress(instance.id, current_node_id=current.id)
            set_logging_context(node_id=current.id)

            output = await self._execute_node(instance, definition, current, variables,
                                              previous_output, deadline)
            variables.update(output)
            path.append(current.id)

            if current.type == NodeType.END:
                self._complete_instance(instance.id, variables, path, started)
                return

            edge = select_edge(definition.outgoing_edges(current.id), output)
            self._save_progress(instance.id, variables=variables, execution_path=path)
            if edge is None:
                value = routing_value(output)
                raise RoutingError(
                    f"No outgoing edge of node '{current.id}' matches routing value {value!r} "
                    f"and no default edge exists",
                    node_id=current.id,
                    routing_value=value,
                )

            logger.debug(f"Routing {current.id} -> {edge.target} via edge {edge.id}")
            current = definition.get_node(edge.target)
            previous_output = output

    def _check_boundary(self, instance_id: str, deadline: float, timeout_ms: int) -> None:
        instance = self.repository.get_instance(instance_id)
        if instance is not None and instance.status == FlowStatus.CANCELLED:
            raise FlowCancelledError(instance_id, instance.cancel_reason)
        if self._clock() >= deadline:
            raise FlowTimeoutError(
                f"Flow instance {instance_id} exceeded its timeout of {timeout_ms}ms",
                instance_id=instance_id, timeout_ms=timeout_ms,
            )

    def _save_progress(self, instance_id: str, **changes: Any) -> None:
        """Persist progress while the instance is still running."""
        saved = self.repository.transition_instance(instance_id, [FlowStatus.RUNNING], FlowStatus.RUNNING, **changes)
        if saved is None:
            current = self.repository.get_instance(instance_id)
            raise FlowCancelledError(instance_id, current.cancel_reason if current else None)

    async def _execute_node(
        self,
        instance: FlowInstance,
        definition: FlowDefinition,
        node: Node,
        variables: Dict[str, Any],
        previous_output: Dict[str, Any],
        deadline: float,
    ) -> Dict[str, Any]:
        """Run one node with the definition's fixed-delay retry policy; one log row per attempt."""
        retry = definition.retry_config
        max_attempts = retry.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                self._check_boundary(instance.id, deadline, definition.timeout)

            node_input = NodeInput(
                variables=dict(variables),
                trigger_data=instance.trigger_data,
                previous_output=previous_output,
                instance_id=instance.id,
                node_id=node.id,
            )
            log = self.repository.create_log(FlowExecutionLog(
                flow_instance_id=instance.id,
                node_id=node.id,
                node_type=node.type.value,
                node_name=node.display_name,
                attempt=attempt,
                status=LogStatus.RUNNING,
                input_data={"variables": node_input.variables, "previousOutput": previous_output,
                            "nodeConfig": node.config},
            ))
            attempt_started = self._clock()

            try:
                result = await self._invoke(node, node_input, deadline)
            except BaseException as e:
                self._finish_log(log.id, attempt_started, error=e)
                raise

            if result.ok:
                self._finish_log(log.id, attempt_started, output=result.output)
                logger.info(f"Node {node.id} ({node.type.value}) completed on attempt {attempt}")
                return result.output

            last_error = result.error
            self._finish_log(log.id, attempt_started, error=last_error)
            recoverable = getattr(last_error, "recoverable", True)
            if attempt == max_attempts or not recoverable:
                logger.error(f"Node {node.id} failed on attempt {attempt}/{max_attempts}: {last_error}")
                break

            logger.warning(
                f"Node {node.id} failed on attempt {attempt}/{max_attempts}: {last_error}; "
                f"retrying in {retry.retry_interval}ms"
            )
            remaining = max(0.0, deadline - self._clock())
            await self._sleep(min(retry.retry_interval / 1000, remaining))

        raise last_error

    async def _invoke(self, node: Node, node_input: NodeInput, deadline: float) -> NodeResult:
        """Dispatch to the registry bounded by the remaining instance budget and the node timeout."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise FlowTimeoutError(f"Flow instance {node_input.instance_id} ran out of time before node {node.id}",
                                   instance_id=node_input.instance_id)

        node_timeout_ms = node.config.get("timeoutMs") or self.settings.node_timeout_ms
        limit, node_bound = remaining, False
        if node_timeout_ms and node_timeout_ms / 1000 < remaining:
            limit, node_bound = node_timeout_ms / 1000, True

        try:
            return await asyncio.wait_for(self.registry.execute(node, node_input, self.services), timeout=limit)
        except asyncio.TimeoutError:
            if node_bound:
                return NodeResult(error=HandlerError(
                    f"Node {node.id} timed out after {node_timeout_ms}ms",
                    node_id=node.id, node_type=node.type.value,
                ))
            raise FlowTimeoutError(
                f"Flow instance {node_input.instance_id} timed out while running node {node.id}",
                instance_id=node_input.instance_id,
            )

    def _finish_log(self, log_id: str, attempt_started: float, output: Optional[Dict[str, Any]] = None,
                    error: Optional[BaseException] = None) -> None:
        changes: Dict[str, Any] = {
            "completed_at": utcnow(),
            "processing_time": int((self._clock() - attempt_started) * 1000),
        }
        if error is None:
            changes.update(status=LogStatus.COMPLETED, output_data=output)
        else:
            changes.update(status=LogStatus.FAILED, error_message=str(error) or type(error).__name__)
        self.repository.update_log(log_id, **changes)

    def _complete_instance(self, instance_id: str, variables: Dict[str, Any], path: List[str],
                           started: float) -> None:
        completed = self.repository.transition_instance(
            instance_id, [FlowStatus.RUNNING], FlowStatus.COMPLETED,
            variables=variables,
            execution_path=path,
            result=dict(variables),
            processing_time=int((self._clock() - started) * 1000),
            completed_at=utcnow(),
        )
        if completed is None:
            logger.info(f"Flow instance {instance_id} reached its end node after being cancelled")
            return
        logger.info(f"Flow instance {instance_id} completed in {completed.processing_time}ms "
                    f"after {len(path)} nodes")

    def _fail_instance(self, instance_id: str, error: Exception, started: float) -> None:
        if isinstance(error, FlowEngineError):
            logger.error(f"Flow instance {instance_id} failed: {error.message}")
            error_code = error.error_code
        else:
            logger.error(f"Flow instance {instance_id} failed with unexpected error: {error}", exc_info=True)
            error_code = type(error).__name__

        failed = self.repository.transition_instance(
            instance_id, [FlowStatus.RUNNING], FlowStatus.FAILED,
            error_message=str(error),
            error_stack=_format_stack(error),
            error_code=error_code,
            processing_time=int((self._clock() - started) * 1000),
            completed_at=utcnow(),
        )
        if failed is None:
            logger.info(f"Flow instance {instance_id} was no longer running when it failed")

    # Background execution and triggers

    def start_flow(self, instance_id: str) -> asyncio.Task:
        """Schedule ``execute_flow`` on the running loop and track the task."""
        task = asyncio.get_running_loop().create_task(self._execute_tracked(instance_id))
        self._active_tasks[instance_id] = task
        task.add_done_callback(lambda _: self._active_tasks.pop(instance_id, None))
        return task

    async def _execute_tracked(self, instance_id: str) -> None:
        try:
            await self.execute_flow(instance_id)
        except FlowEngineError as e:
            logger.error(f"Background execution of {instance_id} could not start: {e.message}")

    async def trigger_flows(
        self,
        robot_id: Optional[str],
        trigger_type: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        strategy: Optional[SelectionStrategy] = None,
        flow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        wait: bool = True,
    ) -> List[FlowInstance]:
        """
        Select flows for a trigger, create an instance for each and execute them.

        With ``wait`` the instances run to completion concurrently and their
        final state is returned; otherwise they are started in the background
        and returned as pending.

        Raises:
            ConfigurationError: If the engine has no selector
        """
        if self.selector is None:
            raise ConfigurationError("FlowEngine has no flow selector configured", config_key="selector")

        strategy = strategy or self.settings.default_strategy
        definitions = self.selector.select_flows(robot_id, trigger_type, strategy, flow_id)
        if not definitions:
            logger.info(f"No flow matched robot={robot_id} trigger={trigger_type} strategy={strategy}")
            return []

        meta = {**(metadata or {}), "robotId": robot_id, "triggerType": trigger_type,
                "strategy": SelectionStrategy(strategy).value}
        instances = [self.create_flow_instance(d.id, trigger_data, meta) for d in definitions]

        if not wait:
            for instance in instances:
                self.start_flow(instance.id)
            return instances

        await asyncio.gather(*(self.execute_flow(instance.id) for instance in instances))
        return [self.repository.get_instance(instance.id) for instance in instances]

    @property
    def active_executions(self) -> int:
        return len(self._active_tasks)

    def get_statistics(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in FlowStatus}
        counts.update(self.repository.count_instances_by_status())
        return {
            "instances_by_status": counts,
            "active_executions": self.active_executions,
            "registered_node_types": len(self.registry.list_handlers()),
        }

    async def shutdown(self) -> None:
        """Cancel background executions and wait for them to finish."""
        tasks = list(self._active_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"FlowEngine shutdown completed ({len(tasks)} executions cancelled)")
