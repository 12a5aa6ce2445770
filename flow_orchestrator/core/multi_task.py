"""Composite multi-task handlers.

A multi-task node carries ``{tasks: [{id, operation, config}], executeMode,
failFast}`` (camelCase or snake_case keys, optionally nested under
``data.config``). Each sub-task's ``operation`` is either a node type or a
short alias scoped to the composite family, and is dispatched recursively
through the same registry.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..models.core import ExecuteMode, NodeInput, NodeResult, NodeType, SubTaskStatus
from .exceptions import FlowEngineError, HandlerError
from .logging import get_logger
from .node_handlers import DISPATCH, NodeHandlerRegistry, SubTaskDispatcher

logger = get_logger(__name__)

Alias = Tuple[NodeType, Dict[str, Any]]

OPERATION_ALIASES: Dict[NodeType, Dict[str, Alias]] = {
    NodeType.MULTI_TASK_AI: {
        "chat": (NodeType.AI_CHAT, {}),
        "analyze": (NodeType.AI_CHAT, {"task": "analyze"}),
        "identify": (NodeType.INTENT, {}),
        "generate": (NodeType.AI_CHAT, {"task": "generate"}),
    },
    NodeType.MULTI_TASK_DATA: {
        "query": (NodeType.DATA_QUERY, {}),
        "transform": (NodeType.DATA_TRANSFORM, {}),
        "aggregate": (NodeType.DATA_QUERY, {"aggregate": True}),
    },
    NodeType.MULTI_TASK_HTTP: {
        "request": (NodeType.HTTP_REQUEST, {}),
        "upload": (NodeType.HTTP_REQUEST, {"method": "POST"}),
        "download": (NodeType.HTTP_REQUEST, {"method": "GET"}),
    },
    NodeType.MULTI_TASK_TASK: {
        "create": (NodeType.TASK_ASSIGN, {"action": "create"}),
        "assign": (NodeType.TASK_ASSIGN, {"action": "assign"}),
        "update": (NodeType.TASK_ASSIGN, {"action": "update"}),
    },
    NodeType.MULTI_TASK_ALERT: {
        "rule_evaluate": (NodeType.ALERT_RULE, {}),
        "save": (NodeType.ALERT_SAVE, {}),
        "notify": (NodeType.ALERT_NOTIFY, {}),
        "escalate": (NodeType.ALERT_ESCALATE, {}),
    },
    NodeType.MULTI_TASK_STAFF: {
        "match": (NodeType.STAFF_INTERVENTION, {"action": "match"}),
        "transfer": (NodeType.HUMAN_HANDOVER, {}),
        "notify": (NodeType.MESSAGE_DISPATCH, {"audience": "staff"}),
        "intervene": (NodeType.STAFF_INTERVENTION, {"action": "intervene"}),
    },
    NodeType.MULTI_TASK_ANALYSIS: {
        "activity": (NodeType.DATA_QUERY, {"analysis": "activity"}),
        "satisfaction": (NodeType.AI_CHAT, {"analysis": "satisfaction"}),
        "report": (NodeType.DATA_QUERY, {"analysis": "report"}),
    },
    NodeType.MULTI_TASK_ROBOT: {
        "dispatch": (NodeType.ROBOT_DISPATCH, {}),
        "command": (NodeType.SEND_COMMAND, {}),
        "status": (NodeType.COMMAND_STATUS, {}),
    },
    NodeType.MULTI_TASK_MESSAGE: {
        "receive": (NodeType.MESSAGE_RECEIVE, {}),
        "dispatch": (NodeType.MESSAGE_DISPATCH, {}),
        "sync": (NodeType.MESSAGE_SYNC, {}),
    },
}

_FORBIDDEN_OPERATIONS = {NodeType.START, NodeType.END}


@dataclass
class SubTask:
    id: str
    operation: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MultiTaskConfig:
    tasks: List[SubTask]
    execute_mode: ExecuteMode = ExecuteMode.SEQUENTIAL
    fail_fast: bool = False
    fail_on_error: bool = False


def parse_multi_task_config(data: Dict[str, Any]) -> MultiTaskConfig:
    """Read the task block from a node's effective configuration (``Node.config``).

    Raises:
        HandlerError: If the block is malformed (not retried)
    """
    raw_tasks = data.get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise HandlerError("Multi-task 'tasks' must be a list", recoverable=False)

    tasks = []
    for index, raw in enumerate(raw_tasks):
        if not isinstance(raw, dict):
            raise HandlerError(f"Sub-task #{index + 1} must be an object", recoverable=False)
        operation = raw.get("operation") or raw.get("type")
        if not operation:
            raise HandlerError(f"Sub-task #{index + 1} has no operation", recoverable=False)
        config = raw.get("config")
        if config is None:
            config = {k: v for k, v in raw.items() if k not in ("id", "operation", "type")}
        tasks.append(SubTask(str(raw.get("id") or f"task_{index + 1}"), str(operation), dict(config)))

    mode = data.get("executeMode", data.get("execute_mode", ExecuteMode.SEQUENTIAL.value))
    try:
        execute_mode = ExecuteMode(str(mode).lower())
    except ValueError:
        raise HandlerError(f"Unknown executeMode '{mode}'", recoverable=False)

    return MultiTaskConfig(
        tasks=tasks,
        execute_mode=execute_mode,
        fail_fast=bool(data.get("failFast", data.get("fail_fast", False))),
        fail_on_error=bool(data.get("failOnError", data.get("fail_on_error", False))),
    )


def resolve_operation(composite: NodeType, operation: str) -> Alias:
    """Map an operation to the node type that runs it.

    Raises:
        HandlerError: For start/end or unknown operations
    """
    key = operation.strip().lower()
    aliases = OPERATION_ALIASES.get(composite, {})
    if key in aliases:
        node_type, defaults = aliases[key]
        return node_type, dict(defaults)
    try:
        node_type = NodeType(key)
    except ValueError:
        raise HandlerError(f"Unknown operation '{operation}' for {composite.value}", recoverable=False)
    if node_type in _FORBIDDEN_OPERATIONS:
        raise HandlerError(f"Operation '{operation}' cannot run as a sub-task", recoverable=False)
    return node_type, {}


def _describe_error(error: Exception) -> Dict[str, Any]:
    described = {"error": str(error)}
    if isinstance(error, FlowEngineError):
        described["errorCode"] = error.error_code
    return described


class MultiTaskRunner:
    """Runs one composite node's sub-tasks."""

    def __init__(self, composite: NodeType, config: MultiTaskConfig, dispatcher: SubTaskDispatcher):
        self.composite = composite
        self.config = config
        self.dispatcher = dispatcher

    async def run_one(self, task: SubTask) -> Dict[str, Any]:
        entry = {"id": task.id, "operation": task.operation}
        try:
            node_type, defaults = resolve_operation(self.composite, task.operation)
        except HandlerError as e:
            return {**entry, "status": SubTaskStatus.FAILED.value, **_describe_error(e)}

        result: NodeResult = await self.dispatcher.run(node_type, task.id, {**defaults, **task.config})
        if result.ok:
            return {**entry, "status": SubTaskStatus.COMPLETED.value, "output": result.output}
        logger.info(f"Sub-task {task.id} of {self.dispatcher.parent.id} failed: {result.error}")
        return {**entry, "status": SubTaskStatus.FAILED.value, **_describe_error(result.error)}

    async def run_sequential(self) -> List[Dict[str, Any]]:
        results = []
        for index, task in enumerate(self.config.tasks):
            result = await self.run_one(task)
            results.append(result)
            if result["status"] == SubTaskStatus.FAILED.value and self.config.fail_fast:
                results.extend(
                    {"id": rest.id, "operation": rest.operation, "status": SubTaskStatus.SKIPPED.value}
                    for rest in self.config.tasks[index + 1:]
                )
                break
        return results

    async def run_parallel(self) -> List[Dict[str, Any]]:
        """Run every sub-task concurrently; with failFast, cancel the rest after the first failure."""
        tasks = self.config.tasks
        results: List[Dict[str, Any]] = [{} for _ in tasks]
        pending = {asyncio.ensure_future(self.run_one(task)): index for index, task in enumerate(tasks)}

        try:
            while pending:
                done, _ = await asyncio.wait(list(pending), return_when=asyncio.FIRST_COMPLETED)
                failed = False
                for future in done:
                    index = pending.pop(future)
                    results[index] = future.result()
                    failed = failed or results[index]["status"] == SubTaskStatus.FAILED.value
                if failed and self.config.fail_fast and pending:
                    await self._cancel_pending(pending, results)
        finally:
            if pending:
                await self._cancel_pending(pending, results)
        return results

    async def _cancel_pending(self, pending: Dict[asyncio.Future, int], results: List[Dict[str, Any]]) -> None:
        """Cancel outstanding sub-tasks and wait for all of them to settle."""
        futures = list(pending)
        for future in futures:
            future.cancel()
        settled = await asyncio.gather(*futures, return_exceptions=True)
        for future, outcome in zip(futures, settled):
            index = pending.pop(future)
            task = self.config.tasks[index]
            if isinstance(outcome, asyncio.CancelledError):
                results[index] = {"id": task.id, "operation": task.operation,
                                  "status": SubTaskStatus.CANCELLED.value}
            elif isinstance(outcome, BaseException):
                results[index] = {"id": task.id, "operation": task.operation,
                                  "status": SubTaskStatus.FAILED.value, **_describe_error(outcome)}
            else:
                results[index] = outcome

    async def run(self) -> Dict[str, Any]:
        if self.config.execute_mode == ExecuteMode.PARALLEL:
            results = await self.run_parallel()
        else:
            results = await self.run_sequential()

        counts = {status: 0 for status in SubTaskStatus}
        for result in results:
            counts[SubTaskStatus(result["status"])] += 1
        has_failure = counts[SubTaskStatus.FAILED] > 0

        if has_failure and self.config.fail_on_error:
            raise HandlerError(
                f"{counts[SubTaskStatus.FAILED]} of {len(results)} sub-tasks failed",
                details={"results": results},
            )

        return {
            "results": results,
            "taskOutputs": {r["id"]: r["output"] for r in results if "output" in r},
            "hasFailure": has_failure,
            "completedCount": counts[SubTaskStatus.COMPLETED],
            "failedCount": counts[SubTaskStatus.FAILED],
            "cancelledCount": counts[SubTaskStatus.CANCELLED],
            "skippedCount": counts[SubTaskStatus.SKIPPED],
            "executeMode": self.config.execute_mode.value,
            "conditionResult": "failed" if has_failure else "completed",
        }


def make_multi_task_handler(composite: NodeType):
    async def handle_multi_task(node_input: NodeInput, data: Dict[str, Any], dispatcher: SubTaskDispatcher):
        config = parse_multi_task_config(data)
        logger.debug(
            f"Running {len(config.tasks)} sub-tasks of {dispatcher.parent.id} "
            f"({config.execute_mode.value}, failFast={config.fail_fast})"
        )
        return await MultiTaskRunner(composite, config, dispatcher).run()

    handle_multi_task.__name__ = f"handle_{composite.value}"
    return handle_multi_task


def register_multi_task_handlers(registry: NodeHandlerRegistry) -> None:
    for composite in OPERATION_ALIASES:
        registry.register(composite, make_multi_task_handler(composite), DISPATCH,
                          description=f"Composite {composite.value} node")
