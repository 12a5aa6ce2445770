"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from flow_orchestrator.core.flow_engine import EngineSettings, FlowEngine
from flow_orchestrator.core.flow_selector import FlowSelector
from flow_orchestrator.core.node_handlers import create_default_registry
from flow_orchestrator.core.ports import NodeServices
from flow_orchestrator.core.repository import SqlAlchemyFlowRepository
from flow_orchestrator.storage.database import build_engine, create_session_factory, create_tables, drop_tables


class FakeClock:
    """Manually advanced clock returning epoch milliseconds."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingSleep:
    """Async sleep that returns immediately and remembers what it was asked for."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds * 1000)
        await asyncio.sleep(0)


class FakeAIPort:
    """AI port replaying scripted replies; exceptions in the script are raised."""

    def __init__(self, replies: Optional[List[Any]] = None, default: Optional[Dict[str, Any]] = None):
        self.replies = list(replies or [])
        self.default = default or {"content": "ok", "model": "fake-model"}
        self.calls: List[Any] = []

    async def generate(self, messages, model_config):
        self.calls.append((messages, model_config))
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakePort:
    """Catch-all capability port.

    ``responses`` maps a method name to a dict, an exception, a callable
    taking the spec, or a list consumed one call at a time.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = responses or {}
        self.calls: List[Any] = []

    async def _call(self, method: str, spec: Dict[str, Any]) -> Any:
        self.calls.append((method, spec))
        response = self.responses.get(method, {})
        if isinstance(response, list):
            response = response.pop(0) if response else {}
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(spec)
        return response

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [spec for name, spec in self.calls if name == method]

    async def request(self, spec):
        return await self._call("request", spec)

    async def query(self, spec):
        return await self._call("query", spec)

    async def receive(self, spec):
        return await self._call("receive", spec)

    async def dispatch(self, spec):
        return await self._call("dispatch", spec)

    async def sync(self, spec):
        return await self._call("sync", spec)

    async def save(self, spec):
        return await self._call("save", spec)

    async def notify(self, spec):
        return await self._call("notify", spec)

    async def escalate(self, spec):
        return await self._call("escalate", spec)

    async def send_command(self, spec):
        return await self._call("send_command", spec)

    async def command_status(self, spec):
        return await self._call("command_status", spec)

    async def intervene(self, spec):
        return await self._call("intervene", spec)

    async def handover(self, spec):
        return await self._call("handover", spec)

    async def assign(self, spec):
        return await self._call("assign", spec)

    async def create(self, spec):
        return await self._call("create", spec)


def make_services(**overrides) -> NodeServices:
    """Services with a fake port for every capability."""
    ports = {name: FakePort() for name in NodeServices.capabilities()}
    ports["ai"] = FakeAIPort()
    ports.update(overrides)
    return NodeServices(**ports)


def linear_flow(name: str = "Linear flow", **overrides) -> Dict[str, Any]:
    """start -> set -> end."""
    flow = {
        "name": name,
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "set", "type": "variable_set", "data": {"variables": {"greeting": "Hello {{name}}"}}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "set"},
            {"id": "e2", "source": "set", "target": "end"},
        ],
    }
    flow.update(overrides)
    return flow


@pytest.fixture
def session_factory():
    """In-memory SQLite database shared across sessions."""
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield create_session_factory(engine)
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return SqlAlchemyFlowRepository(session_factory)


@pytest.fixture
def selector(repository):
    return FlowSelector(repository)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def services():
    return make_services()


@pytest.fixture
def registry(sleep):
    return create_default_registry(sleep=sleep, max_delay_seconds=5)


@pytest.fixture
def settings():
    return EngineSettings(default_retry_interval_ms=10, max_node_visits=50)


@pytest.fixture
def engine(repository, registry, services, settings, selector, sleep):
    return FlowEngine(
        repository=repository,
        registry=registry,
        services=services,
        settings=settings,
        selector=selector,
        sleep=sleep,
    )
