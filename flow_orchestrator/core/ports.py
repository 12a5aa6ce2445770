"""Capability ports handed to node handlers.

Handlers never talk to concrete collaborators. Each one declares the single
narrow capability it needs and receives the matching port from
``NodeServices``. Every port method is a single async call returning a dict
(or raising); concrete AI clients, HTTP libraries, notification senders and
robot transports live outside this package.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .invocation_guard import InvocationGuard, RetryOptions


@runtime_checkable
class AIChatPort(Protocol):
    async def generate(self, messages: List[Dict[str, str]], model_config: Dict[str, Any]) -> Dict[str, Any]:
        """Return at least ``{"content": str}``."""


class HttpPort(Protocol):
    async def request(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``{"status": int, "headers": dict, "body": Any}``."""


class DataPort(Protocol):
    async def query(self, spec: Dict[str, Any]) -> Any: ...


class MessagePort(Protocol):
    async def receive(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...

    async def dispatch(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...

    async def sync(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...


class AlertPort(Protocol):
    async def save(self, alert: Dict[str, Any]) -> Dict[str, Any]: ...

    async def notify(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...

    async def escalate(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...


class RobotCommandPort(Protocol):
    async def dispatch(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...

    async def send_command(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...

    async def command_status(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...


class StaffPort(Protocol):
    async def intervene(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...

    async def handover(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...


class TaskPort(Protocol):
    async def assign(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...


class SessionPort(Protocol):
    async def create(self, spec: Dict[str, Any]) -> Dict[str, Any]: ...


class LogPort(Protocol):
    async def save(self, entry: Dict[str, Any]) -> Dict[str, Any]: ...


class GuardedAIChatPort:
    """AI port decorator routing every call through the invocation guard.

    The provider and model ids come from the node's model config and fall
    back to the configured defaults; they key the rate limiter and the
    circuit breaker respectively.
    """

    def __init__(
        self,
        port: AIChatPort,
        guard: InvocationGuard,
        default_provider: str = "default",
        default_model: str = "default",
    ):
        self.port = port
        self.guard = guard
        self.default_provider = default_provider
        self.default_model = default_model

    async def generate(self, messages: List[Dict[str, str]], model_config: Dict[str, Any]) -> Dict[str, Any]:
        provider_id = str(model_config.get("provider") or self.default_provider)
        model_id = str(model_config.get("model") or self.default_model)
        options = RetryOptions(
            max_retries=model_config.get("maxRetries"),
            operation=f"ai.generate[{provider_id}/{model_id}]",
        )
        return await self.guard.execute_with_protection(
            provider_id,
            model_id,
            lambda: self.port.generate(messages, model_config),
            options,
            rate_limit=model_config.get("rateLimit"),
        )


@dataclass
class NodeServices:
    """Bundle of capability ports; any of them may be absent."""
    ai: Optional[AIChatPort] = None
    http: Optional[HttpPort] = None
    data: Optional[DataPort] = None
    message: Optional[MessagePort] = None
    alert: Optional[AlertPort] = None
    robot: Optional[RobotCommandPort] = None
    staff: Optional[StaffPort] = None
    task: Optional[TaskPort] = None
    session: Optional[SessionPort] = None
    log: Optional[LogPort] = None

    @classmethod
    def capabilities(cls) -> List[str]:
        return [item.name for item in fields(cls)]

    def get(self, capability: str) -> Any:
        return getattr(self, capability)
