"""Node handler registry: one async handler per node type.

A handler has the signature ``async (node_input, node_data, port) -> dict``,
where ``node_data`` is ``Node.config``: the node data with a nested
``config`` object merged over it.
``port`` is the single capability the handler declared at registration
(see ``ports.NodeServices``), already wrapped by the invocation guard when it
is the AI port. ``NodeHandlerRegistry.execute`` never raises for handler
failures; it returns a ``NodeResult`` carrying the error instead.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models.core import Node, NodeInput, NodeResult, NodeType, utcnow
from .conditions import (
    evaluate_rule,
    first_matching_branch,
    render_template,
    resolve_path,
    stringify,
)
from .exceptions import FlowEngineError, HandlerError, UnknownNodeTypeError
from .invocation_guard import InvocationGuard
from .logging import get_logger
from .ports import GuardedAIChatPort, NodeServices

logger = get_logger(__name__)

Handler = Callable[[NodeInput, Dict[str, Any], Any], Awaitable[Optional[Dict[str, Any]]]]

DISPATCH = "dispatch"
MAX_DISPATCH_DEPTH = 4
_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_.:-]")


@dataclass
class HandlerRegistration:
    """A registered handler and the capability it receives."""
    node_type: NodeType
    handler: Handler
    capability: Optional[str] = None
    optional: bool = False
    description: str = ""


class SubTaskDispatcher:
    """Port given to composite handlers for recursive dispatch through the registry."""

    def __init__(self, registry: "NodeHandlerRegistry", services: NodeServices,
                 node_input: NodeInput, parent: Node, depth: int):
        self.registry = registry
        self.services = services
        self.node_input = node_input
        self.parent = parent
        self.depth = depth

    async def run(self, node_type: NodeType, task_id: str, config: Dict[str, Any]) -> NodeResult:
        if self.depth + 1 > MAX_DISPATCH_DEPTH:
            return NodeResult(error=HandlerError(
                f"Multi-task nesting deeper than {MAX_DISPATCH_DEPTH} levels",
                node_id=self.parent.id, recoverable=False,
            ))
        node = Node(
            id=f"{self.parent.id}.{_UNSAFE_ID_CHARS.sub('_', task_id)}",
            type=node_type,
            name=f"{self.parent.display_name}/{task_id}",
            data=config,
        )
        return await self.registry.execute(node, self.node_input, self.services, depth=self.depth + 1)


class NodeHandlerRegistry:
    """Registry mapping node types to handlers."""

    def __init__(self, guard: Optional[InvocationGuard] = None,
                 default_provider: str = "default", default_model: str = "default"):
        """Initialize the registry.

        Args:
            guard: Invocation guard wrapped around the AI port, if any
            default_provider: Provider id used when a node names none
            default_model: Model id used when a node names none
        """
        self.guard = guard
        self.default_provider = default_provider
        self.default_model = default_model
        self._handlers: Dict[NodeType, HandlerRegistration] = {}

    def register(self, node_type: NodeType, handler: Handler, capability: Optional[str] = None,
                 optional: bool = False, description: str = "", replace: bool = False) -> None:
        """Register a handler for a node type.

        Raises:
            ValueError: If the type is already registered and ``replace`` is false,
                or the capability is unknown
        """
        node_type = NodeType(node_type)
        if node_type in self._handlers and not replace:
            raise ValueError(f"Handler for node type '{node_type.value}' is already registered")
        if capability not in (None, DISPATCH) and capability not in NodeServices.capabilities():
            raise ValueError(f"Unknown capability '{capability}' for node type '{node_type.value}'")
        if not callable(handler):
            raise ValueError(f"Handler for '{node_type.value}' must be callable")

        self._handlers[node_type] = HandlerRegistration(node_type, handler, capability, optional, description)
        logger.debug(f"Registered handler for node type '{node_type.value}'")

    def unregister(self, node_type: NodeType) -> bool:
        return self._handlers.pop(NodeType(node_type), None) is not None

    def has_handler(self, node_type: NodeType) -> bool:
        return NodeType(node_type) in self._handlers

    def get_registration(self, node_type: NodeType) -> Optional[HandlerRegistration]:
        return self._handlers.get(NodeType(node_type))

    def list_handlers(self) -> Dict[str, str]:
        """Registered node types with their descriptions."""
        return {node_type.value: reg.description for node_type, reg in self._handlers.items()}

    def _resolve_port(self, registration: HandlerRegistration, node: Node, node_input: NodeInput,
                      services: NodeServices, depth: int) -> Any:
        capability = registration.capability
        if capability is None:
            return None
        if capability == DISPATCH:
            return SubTaskDispatcher(self, services, node_input, node, depth)

        port = services.get(capability)
        if port is None:
            if registration.optional:
                return None
            raise HandlerError(
                f"Node type '{node.type.value}' needs the '{capability}' capability but none is configured",
                node_id=node.id, node_type=node.type.value, recoverable=False,
            )
        if capability == "ai" and self.guard is not None and not isinstance(port, GuardedAIChatPort):
            port = GuardedAIChatPort(port, self.guard, self.default_provider, self.default_model)
        return port

    async def execute(self, node: Node, node_input: NodeInput, services: NodeServices,
                      depth: int = 0) -> NodeResult:
        """Run the handler for ``node``; failures come back as ``NodeResult.error``."""
        registration = self._handlers.get(node.type)
        if registration is None:
            return NodeResult(error=UnknownNodeTypeError(node.type.value).add_context(node_id=node.id))

        try:
            port = self._resolve_port(registration, node, node_input, services, depth)
            output = await registration.handler(node_input, node.config, port)
        except FlowEngineError as e:
            e.add_context(node_id=node.id, node_type=node.type.value)
            return NodeResult(error=e)
        except Exception as e:
            error = HandlerError(
                f"{node.type.value} handler failed: {e}",
                node_id=node.id, node_type=node.type.value,
            )
            error.__cause__ = e
            return NodeResult(error=error)

        if output is None:
            output = {}
        elif not isinstance(output, dict):
            output = {"result": output}
        return NodeResult(output=output)


# Helpers shared by handlers

def _as_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return {"result": value}


def _user_message(node_input: NodeInput) -> str:
    for source in (node_input.variables, node_input.trigger_data):
        for key in ("content", "message", "text"):
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return ""


def _port_spec(node_input: NodeInput, data: Dict[str, Any], *drop: str) -> Dict[str, Any]:
    spec = render_template({k: v for k, v in data.items() if k not in drop}, node_input.scope())
    spec.setdefault("flowInstanceId", node_input.instance_id)
    return spec


def _output_key(data: Dict[str, Any], default: str) -> str:
    return data.get("outputVariable") or default


# Core handlers

async def handle_start(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    output = dict(render_template(data.get("initialVariables") or {}, node_input.scope()))
    output.update({"flowExecutionId": node_input.instance_id, "startedAt": utcnow().isoformat()})
    return output


async def handle_end(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    scope = node_input.scope()
    output = {"completedAt": utcnow().isoformat()}
    if data.get("resultVariable"):
        output["result"] = resolve_path(scope, data["resultVariable"])
    if data.get("message"):
        output["endMessage"] = render_template(data["message"], scope)
    return output


_DEFAULT_INTENT_PROMPT = (
    "Classify the user's message into exactly one of these intents: {intents}. "
    "Reply with the intent name only."
)


def _match_intent(reply: str, supported: List[str]) -> Optional[str]:
    cleaned = reply.strip().strip('."\'').lower()
    for intent in supported:
        if cleaned == intent.lower():
            return intent
    for intent in supported:
        if intent.lower() in cleaned:
            return intent
    return None


async def handle_intent(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    """Recognize the intent of the inbound message.

    Keyword rules (``keywords: {intent: [words]}``) are tried first and need no
    AI call; otherwise the AI port classifies the message against
    ``supportedIntents``. Anything unrecognized becomes ``fallbackIntent``.
    """
    supported = [str(intent) for intent in data.get("supportedIntents") or []]
    fallback = data.get("fallbackIntent", "unknown")
    message = _user_message(node_input)
    lowered = message.lower()

    for intent, words in (data.get("keywords") or {}).items():
        if any(str(word).lower() in lowered for word in words):
            return {"intent": intent, "confidence": 1.0, "conditionResult": intent, "source": "keyword"}

    if port is None or not message:
        return {"intent": fallback, "confidence": 0.0, "conditionResult": fallback, "source": "fallback"}

    system_prompt = data.get("systemPrompt") or _DEFAULT_INTENT_PROMPT.format(
        intents=", ".join(supported) or "any")
    reply = _as_dict(await port.generate(
        [{"role": "system", "content": render_template(system_prompt, node_input.scope())},
         {"role": "user", "content": message}],
        dict(data.get("modelConfig") or {}),
    ))

    candidate = reply.get("intent") or reply.get("content") or ""
    intent = _match_intent(str(candidate), supported) if supported else (str(candidate).strip() or None)
    confidence = float(reply.get("confidence", 1.0 if intent else 0.0))
    threshold = float(data.get("confidenceThreshold", 0.0))
    if intent is None or confidence < threshold:
        intent = fallback
    return {"intent": intent, "confidence": confidence, "conditionResult": intent, "source": "ai"}


async def handle_ai_chat(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    scope = node_input.scope()
    model_config = dict(data.get("modelConfig") or {})
    for key in ("provider", "model", "temperature", "maxTokens"):
        if key in data:
            model_config.setdefault(key, data[key])

    messages = []
    if data.get("systemPrompt"):
        messages.append({"role": "system", "content": render_template(data["systemPrompt"], scope)})
    prompt = render_template(data["prompt"], scope) if data.get("prompt") else _user_message(node_input)
    messages.append({"role": "user", "content": stringify(prompt) or ""})

    reply = _as_dict(await port.generate(messages, model_config))
    content = reply.get("content")
    if content is None:
        raise HandlerError("AI provider returned no content", node_type=NodeType.AI_CHAT.value)

    output = {_output_key(data, "aiResponse"): content, "model": reply.get("model", model_config.get("model"))}
    if reply.get("usage") is not None:
        output["usage"] = reply["usage"]
    return output


async def handle_condition(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    """First matching branch in ``conditions`` sets ``conditionResult``."""
    branch = first_matching_branch(data.get("conditions") or data.get("rules") or [], node_input.scope())
    if branch is None:
        result = data.get("defaultResult", "false")
    else:
        result = branch.get("result", "true")
    return {"conditionResult": stringify(result), "matched": branch is not None}


async def handle_decision(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    """Route on a named field's value, or on rule branches like ``condition``."""
    if data.get("field") and not (data.get("conditions") or data.get("rules")):
        value = resolve_path(node_input.scope(), data["field"])
        result = stringify(value) if value is not None else data.get("defaultResult", "default")
        return {"conditionResult": result, "decisionValue": value}
    return await handle_condition(node_input, data, port)


async def handle_http_request(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    spec = _port_spec(node_input, data, "outputVariable", "failOnError")
    if not spec.get("url"):
        raise HandlerError("http_request node needs a url", recoverable=False)
    spec["method"] = str(spec.get("method") or "GET").upper()

    response = _as_dict(await port.request(spec))
    status = int(response.get("status", response.get("statusCode", 200)))
    if status >= 400 and data.get("failOnError", True):
        raise HandlerError(
            f"HTTP {spec['method']} {spec['url']} returned {status}",
            recoverable=status >= 500 or status == 429,
            details={"status": status, "body": response.get("body")},
        )
    return {
        _output_key(data, "httpResponse"): response.get("body"),
        "statusCode": status,
        "responseHeaders": response.get("headers", {}),
    }


async def handle_data_query(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = await port.query(_port_spec(node_input, data, "outputVariable"))
    return {_output_key(data, "queryResult"): result}


async def handle_data_transform(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    """Build new values from ``mappings: {target: path-or-template}``."""
    scope = node_input.scope()
    transformed = {}
    for target, source in (data.get("mappings") or {}).items():
        if isinstance(source, str) and "{{" not in source:
            transformed[target] = resolve_path(scope, source)
        else:
            transformed[target] = render_template(source, scope)
    if data.get("outputVariable"):
        return {data["outputVariable"]: transformed}
    return transformed


async def handle_variable_set(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    return dict(render_template(data.get("variables") or {}, node_input.scope()))


async def handle_message_receive(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    spec = _port_spec(node_input, data)
    spec.setdefault("content", _user_message(node_input))
    result = _as_dict(await port.receive(spec))
    return {"messageId": result.get("messageId") or result.get("id"), "receivedMessage": result}


async def handle_message_dispatch(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = _as_dict(await port.dispatch(_port_spec(node_input, data)))
    return {"dispatchResult": result, "dispatched": result.get("success", True)}


async def handle_message_sync(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    return {"syncResult": _as_dict(await port.sync(_port_spec(node_input, data)))}


async def handle_alert_save(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = _as_dict(await port.save(_port_spec(node_input, data)))
    return {"alertId": result.get("alertId") or result.get("id"), "alertSaved": True}


_ALERT_LEVELS = ["info", "warning", "critical", "emergency"]


async def handle_alert_rule(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    """Evaluate alert rules locally and persist the triggered ones."""
    scope = node_input.scope()
    triggered = [rule for rule in data.get("rules") or [] if evaluate_rule(rule, scope)]
    if not triggered:
        return {"alertTriggered": False, "triggeredRules": [], "conditionResult": "not_triggered"}

    levels = [str(rule.get("level", "warning")).lower() for rule in triggered]
    level = max(levels, key=lambda name: _ALERT_LEVELS.index(name) if name in _ALERT_LEVELS else 0)
    names = [rule.get("name") or rule.get("field") or rule.get("variable") for rule in triggered]

    output = {"alertTriggered": True, "triggeredRules": names, "alertLevel": level,
              "conditionResult": "triggered"}
    if data.get("persist", True):
        saved = _as_dict(await port.save({
            "rules": names,
            "level": level,
            "message": render_template(data.get("message", ""), scope),
            "flowInstanceId": node_input.instance_id,
        }))
        output["alertId"] = saved.get("alertId") or saved.get("id")
    return output


async def handle_alert_notify(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    return {"notified": True, "notificationResult": _as_dict(await port.notify(_port_spec(node_input, data)))}


async def handle_alert_escalate(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = _as_dict(await port.escalate(_port_spec(node_input, data)))
    return {"escalated": True, "escalationLevel": result.get("level", data.get("level"))}


async def handle_robot_dispatch(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    spec = _port_spec(node_input, data)
    spec.setdefault("robotId", node_input.variables.get("robotId") or node_input.trigger_data.get("robotId"))
    result = _as_dict(await port.dispatch(spec))
    return {"robotId": result.get("robotId", spec.get("robotId")), "dispatchInfo": result}


async def handle_send_command(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    spec = _port_spec(node_input, data)
    if not spec.get("command"):
        raise HandlerError("send_command node needs a command", recoverable=False)
    spec.setdefault("robotId", node_input.variables.get("robotId") or node_input.trigger_data.get("robotId"))
    spec.setdefault("priority", 5)
    result = _as_dict(await port.send_command(spec))
    return {"commandId": result.get("commandId") or result.get("id"),
            "commandStatus": result.get("status", "pending")}


async def handle_command_status(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    spec = _port_spec(node_input, data)
    spec.setdefault("commandId", node_input.variables.get("commandId"))
    result = _as_dict(await port.command_status(spec))
    status = result.get("status", "unknown")
    return {"commandStatus": status, "conditionResult": status}


async def handle_staff_intervention(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = _as_dict(await port.intervene(_port_spec(node_input, data)))
    return {"interventionId": result.get("interventionId") or result.get("id"), "isHuman": True,
            "staffId": result.get("staffId")}


async def handle_human_handover(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = _as_dict(await port.handover(_port_spec(node_input, data)))
    return {"handoverResult": result, "isHuman": True, "assignedStaff": result.get("staffId")}


async def handle_task_assign(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    result = _as_dict(await port.assign(_port_spec(node_input, data)))
    return {"taskId": result.get("taskId") or result.get("id"),
            "assignee": result.get("assignee", data.get("assignee"))}


async def handle_session_create(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    spec = _port_spec(node_input, data)
    for key in ("userId", "robotId"):
        spec.setdefault(key, node_input.variables.get(key) or node_input.trigger_data.get(key))
    result = _as_dict(await port.create(spec))
    return {"sessionId": result.get("sessionId") or result.get("id")}


_LOG_LEVELS = {"debug": 10, "info": 20, "warn": 30, "warning": 30, "error": 40}


async def handle_log_save(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
    level_name = str(data.get("level", "info")).lower()
    message = stringify(render_template(data.get("message", ""), node_input.scope())) or ""
    logger.log(_LOG_LEVELS.get(level_name, 20), f"[flow {node_input.instance_id}] {message}")
    if port is not None:
        await port.save({"level": level_name, "message": message, "flowInstanceId": node_input.instance_id,
                         "nodeId": node_input.node_id})
    return {"logged": True, "logLevel": level_name}


def make_delay_handler(sleep: Callable[[float], Awaitable[Any]], max_seconds: float) -> Handler:
    """Delay handler bound to an injectable sleep and an upper bound."""

    async def handle_delay(node_input: NodeInput, data: Dict[str, Any], port: Any) -> Dict[str, Any]:
        if "delayMs" in data:
            seconds = float(data["delayMs"]) / 1000
        else:
            seconds = float(data.get("delaySeconds", 0))
        seconds = max(0.0, min(seconds, max_seconds))
        await sleep(seconds)
        return {"delayedSeconds": seconds}

    return handle_delay


CORE_HANDLERS = [
    (NodeType.START, handle_start, None, False, "Seed initial variables"),
    (NodeType.END, handle_end, None, False, "Finish the flow"),
    (NodeType.INTENT, handle_intent, "ai", True, "Recognize intent by keywords or AI"),
    (NodeType.AI_CHAT, handle_ai_chat, "ai", False, "Generate an AI reply"),
    (NodeType.CONDITION, handle_condition, None, False, "Evaluate rule branches"),
    (NodeType.DECISION, handle_decision, None, False, "Branch on a field or rules"),
    (NodeType.HTTP_REQUEST, handle_http_request, "http", False, "Call an HTTP endpoint"),
    (NodeType.DATA_QUERY, handle_data_query, "data", False, "Query data"),
    (NodeType.DATA_TRANSFORM, handle_data_transform, None, False, "Map values into new variables"),
    (NodeType.VARIABLE_SET, handle_variable_set, None, False, "Assign variables"),
    (NodeType.MESSAGE_RECEIVE, handle_message_receive, "message", False, "Record an inbound message"),
    (NodeType.MESSAGE_DISPATCH, handle_message_dispatch, "message", False, "Send a message"),
    (NodeType.MESSAGE_SYNC, handle_message_sync, "message", False, "Synchronize messages"),
    (NodeType.ALERT_SAVE, handle_alert_save, "alert", False, "Persist an alert"),
    (NodeType.ALERT_RULE, handle_alert_rule, "alert", False, "Evaluate alert rules"),
    (NodeType.ALERT_NOTIFY, handle_alert_notify, "alert", False, "Notify about an alert"),
    (NodeType.ALERT_ESCALATE, handle_alert_escalate, "alert", False, "Escalate an alert"),
    (NodeType.ROBOT_DISPATCH, handle_robot_dispatch, "robot", False, "Dispatch a robot"),
    (NodeType.SEND_COMMAND, handle_send_command, "robot", False, "Queue a robot command"),
    (NodeType.COMMAND_STATUS, handle_command_status, "robot", False, "Read a command's status"),
    (NodeType.STAFF_INTERVENTION, handle_staff_intervention, "staff", False, "Request staff intervention"),
    (NodeType.HUMAN_HANDOVER, handle_human_handover, "staff", False, "Hand the session to a human"),
    (NodeType.TASK_ASSIGN, handle_task_assign, "task", False, "Create and assign a task"),
    (NodeType.SESSION_CREATE, handle_session_create, "session", False, "Open a session"),
    (NodeType.LOG_SAVE, handle_log_save, "log", True, "Write a log entry"),
]


def create_default_registry(
    guard: Optional[InvocationGuard] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    max_delay_seconds: float = 300.0,
    default_provider: str = "default",
    default_model: str = "default",
) -> NodeHandlerRegistry:
    """Registry with every core and multi-task handler registered."""
    from .multi_task import register_multi_task_handlers

    registry = NodeHandlerRegistry(guard, default_provider, default_model)
    for node_type, handler, capability, optional, description in CORE_HANDLERS:
        registry.register(node_type, handler, capability, optional, description)
    registry.register(NodeType.DELAY, make_delay_handler(sleep, max_delay_seconds),
                      description="Pause the flow")
    register_multi_task_handlers(registry)
    return registry
