"""Tests for the node handler registry and the core handlers."""

import pytest

from conftest import FakeAIPort, FakePort, RecordingSleep, make_services
from flow_orchestrator.core.exceptions import HandlerError, RateLimitExceeded, UnknownNodeTypeError
from flow_orchestrator.core.invocation_guard import GuardConfig, InvocationGuard
from flow_orchestrator.core.node_handlers import NodeHandlerRegistry, create_default_registry, handle_start
from flow_orchestrator.core.ports import NodeServices
from flow_orchestrator.models.core import Node, NodeInput, NodeType


def node(node_type, **data):
    return Node(id="n1", type=node_type, data=data)


def context(**variables):
    return NodeInput(variables=variables, trigger_data={}, instance_id="inst-1", node_id="n1")


class TestRegistry:
    """Test registration and dispatch."""

    def test_duplicate_registration_rejected(self):
        registry = NodeHandlerRegistry()
        registry.register(NodeType.START, handle_start)

        with pytest.raises(ValueError):
            registry.register(NodeType.START, handle_start)

        registry.register(NodeType.START, handle_start, replace=True)
        assert registry.has_handler("start")

    def test_unknown_capability_rejected(self):
        with pytest.raises(ValueError):
            NodeHandlerRegistry().register(NodeType.START, handle_start, capability="teleport")

    def test_default_registry_covers_every_node_type(self):
        registry = create_default_registry()
        assert all(registry.has_handler(node_type) for node_type in NodeType)

    @pytest.mark.asyncio
    async def test_unknown_node_type_is_non_recoverable(self):
        result = await NodeHandlerRegistry().execute(node(NodeType.START), context(), NodeServices())

        assert isinstance(result.error, UnknownNodeTypeError)
        assert result.error.recoverable is False

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_handler_error(self):
        async def boom(node_input, data, port):
            raise KeyError("missing")

        registry = NodeHandlerRegistry()
        registry.register(NodeType.VARIABLE_SET, boom)

        result = await registry.execute(node(NodeType.VARIABLE_SET), context(), NodeServices())

        assert isinstance(result.error, HandlerError)
        assert result.error.recoverable is True
        assert isinstance(result.error.__cause__, KeyError)
        assert result.error.context["node_id"] == "n1"

    @pytest.mark.asyncio
    async def test_non_dict_output_is_wrapped(self):
        async def answer(node_input, data, port):
            return 42

        registry = NodeHandlerRegistry()
        registry.register(NodeType.VARIABLE_SET, answer)

        result = await registry.execute(node(NodeType.VARIABLE_SET), context(), NodeServices())
        assert result.output == {"result": 42}

    @pytest.mark.asyncio
    async def test_missing_required_port(self, registry):
        result = await registry.execute(node(NodeType.HTTP_REQUEST, url="http://x"), context(), NodeServices())

        assert isinstance(result.error, HandlerError)
        assert result.error.recoverable is False
        assert "http" in str(result.error)


class TestFlowControlHandlers:
    """Test start, end, condition, decision and variable handlers."""

    @pytest.mark.asyncio
    async def test_start_seeds_templated_variables(self, registry, services):
        result = await registry.execute(
            node(NodeType.START, initialVariables={"welcome": "Hi {{name}}"}), context(name="Ann"), services)

        assert result.output["welcome"] == "Hi Ann"
        assert result.output["flowExecutionId"] == "inst-1"

    @pytest.mark.asyncio
    async def test_end_resolves_result_variable(self, registry, services):
        result = await registry.execute(
            node(NodeType.END, resultVariable="order.id", message="Done {{order.id}}"),
            context(order={"id": 9}), services)

        assert result.output["result"] == 9
        assert result.output["endMessage"] == "Done 9"

    @pytest.mark.asyncio
    async def test_condition_first_matching_branch(self, registry, services):
        data = {
            "conditions": [
                {"field": "score", "operator": "gt", "value": 80, "result": "high"},
                {"field": "score", "operator": "gt", "value": 50, "result": "medium"},
            ],
            "defaultResult": "low",
        }
        medium = await registry.execute(node(NodeType.CONDITION, **data), context(score=60), services)
        low = await registry.execute(node(NodeType.CONDITION, **data), context(score=10), services)

        assert medium.output == {"conditionResult": "medium", "matched": True}
        assert low.output == {"conditionResult": "low", "matched": False}

    @pytest.mark.asyncio
    async def test_condition_without_result_defaults_to_true(self, registry, services):
        data = {"conditions": [{"field": "vip", "operator": "equals", "value": True}]}
        result = await registry.execute(node(NodeType.CONDITION, **data), context(vip=True), services)
        assert result.output["conditionResult"] == "true"

    @pytest.mark.asyncio
    async def test_decision_on_field(self, registry, services):
        result = await registry.execute(node(NodeType.DECISION, field="customer.tier"),
                                        context(customer={"tier": "gold"}), services)

        assert result.output["conditionResult"] == "gold"

    @pytest.mark.asyncio
    async def test_variable_set_and_transform(self, registry, services):
        set_result = await registry.execute(
            node(NodeType.VARIABLE_SET, variables={"label": "{{first}}-{{last}}", "count": "{{n}}"}),
            context(first="a", last="b", n=3), services)
        transform = await registry.execute(
            node(NodeType.DATA_TRANSFORM, mappings={"city": "user.address.city", "title": "Mr {{user.name}}"}),
            context(user={"name": "Lee", "address": {"city": "Oslo"}}), services)

        assert set_result.output == {"label": "a-b", "count": 3}
        assert transform.output == {"city": "Oslo", "title": "Mr Lee"}

    @pytest.mark.asyncio
    async def test_delay_is_capped(self):
        sleep = RecordingSleep()
        registry = create_default_registry(sleep=sleep, max_delay_seconds=5)

        result = await registry.execute(node(NodeType.DELAY, delayMs=10_000), context(), NodeServices())

        assert sleep.calls == [5]
        assert result.output == {"delayedSeconds": 5}

    @pytest.mark.asyncio
    async def test_nested_config_is_read(self, registry, services):
        sleep = RecordingSleep()
        delays = create_default_registry(sleep=sleep, max_delay_seconds=5)

        delayed = await delays.execute(node(NodeType.DELAY, config={"delayMs": 40}), context(), NodeServices())
        started = await registry.execute(
            node(NodeType.START, config={"initialVariables": {"welcome": "Hi {{name}}"}}), context(name="Ann"), services)

        assert sleep.calls == [0.04]
        assert delayed.output == {"delayedSeconds": 0.04}
        assert started.output["welcome"] == "Hi Ann"

    def test_nested_config_overrides_top_level_data(self):
        merged = node(NodeType.DELAY, delayMs=10, label="wait", config={"delayMs": 20}).config

        assert merged == {"delayMs": 20, "label": "wait"}


class TestAIHandlers:
    """Test intent recognition and AI chat."""

    @pytest.mark.asyncio
    async def test_intent_keywords_skip_ai(self, registry):
        ai = FakeAIPort()
        services = make_services(ai=ai)
        data = {"keywords": {"booking": ["book", "reserve"]}, "supportedIntents": ["booking"]}

        result = await registry.execute(node(NodeType.INTENT, **data), context(content="I want to book a room"),
                                        services)

        assert result.output["intent"] == "booking"
        assert result.output["conditionResult"] == "booking"
        assert result.output["source"] == "keyword"
        assert ai.calls == []

    @pytest.mark.asyncio
    async def test_intent_classified_by_ai(self, registry):
        services = make_services(ai=FakeAIPort([{"content": "Complaint."}]))
        data = {"supportedIntents": ["booking", "complaint"]}

        result = await registry.execute(node(NodeType.INTENT, **data), context(content="the room was dirty"),
                                        services)

        assert result.output["intent"] == "complaint"
        assert result.output["source"] == "ai"

    @pytest.mark.asyncio
    async def test_intent_below_threshold_falls_back(self, registry):
        services = make_services(ai=FakeAIPort([{"content": "booking", "confidence": 0.3}]))
        data = {"supportedIntents": ["booking"], "confidenceThreshold": 0.5, "fallbackIntent": "other"}

        result = await registry.execute(node(NodeType.INTENT, **data), context(content="hmm"), services)

        assert result.output["intent"] == "other"

    @pytest.mark.asyncio
    async def test_intent_without_ai_port_falls_back(self, registry):
        services = make_services(ai=None)

        result = await registry.execute(node(NodeType.INTENT, supportedIntents=["a"]), context(content="x"),
                                        services)

        assert result.output["intent"] == "unknown"
        assert result.output["source"] == "fallback"

    @pytest.mark.asyncio
    async def test_ai_chat_renders_prompt(self, registry):
        ai = FakeAIPort([{"content": "Hello back", "model": "m1", "usage": {"tokens": 5}}])
        services = make_services(ai=ai)

        result = await registry.execute(
            node(NodeType.AI_CHAT, systemPrompt="Be brief", prompt="Greet {{name}}", model="m1"),
            context(name="Ann"), services)

        messages, model_config = ai.calls[0]
        assert messages == [{"role": "system", "content": "Be brief"}, {"role": "user", "content": "Greet Ann"}]
        assert model_config["model"] == "m1"
        assert result.output == {"aiResponse": "Hello back", "model": "m1", "usage": {"tokens": 5}}

    @pytest.mark.asyncio
    async def test_ai_chat_without_content_fails(self, registry):
        services = make_services(ai=FakeAIPort([{"text": "wrong shape"}]))

        result = await registry.execute(node(NodeType.AI_CHAT, prompt="hi"), context(), services)

        assert isinstance(result.error, HandlerError)

    @pytest.mark.asyncio
    async def test_ai_calls_go_through_guard(self):
        guard = InvocationGuard(GuardConfig(default_rate_limit=1))
        registry = create_default_registry(guard=guard)
        services = make_services(ai=FakeAIPort())

        first = await registry.execute(node(NodeType.AI_CHAT, prompt="a"), context(), services)
        second = await registry.execute(node(NodeType.AI_CHAT, prompt="b"), context(), services)

        assert first.ok
        assert isinstance(second.error, RateLimitExceeded)
        assert second.error.recoverable is True


class TestServiceHandlers:
    """Test handlers that delegate to capability ports."""

    @pytest.mark.asyncio
    async def test_http_request_success(self, registry):
        http = FakePort({"request": {"status": 200, "body": {"ok": True}, "headers": {"x": "1"}}})
        services = make_services(http=http)

        result = await registry.execute(
            node(NodeType.HTTP_REQUEST, url="https://api/{{id}}", method="post"), context(id=5), services)

        assert http.calls_to("request")[0]["url"] == "https://api/5"
        assert http.calls_to("request")[0]["method"] == "POST"
        assert result.output == {"httpResponse": {"ok": True}, "statusCode": 200, "responseHeaders": {"x": "1"}}

    @pytest.mark.asyncio
    async def test_http_server_error_is_recoverable(self, registry):
        services = make_services(http=FakePort({"request": {"status": 503}}))

        result = await registry.execute(node(NodeType.HTTP_REQUEST, url="https://x"), context(), services)

        assert isinstance(result.error, HandlerError)
        assert result.error.recoverable is True

    @pytest.mark.asyncio
    async def test_http_client_error_is_not_recoverable(self, registry):
        services = make_services(http=FakePort({"request": {"status": 404}}))

        result = await registry.execute(node(NodeType.HTTP_REQUEST, url="https://x"), context(), services)

        assert result.error.recoverable is False

    @pytest.mark.asyncio
    async def test_http_requires_url(self, registry, services):
        result = await registry.execute(node(NodeType.HTTP_REQUEST), context(), services)
        assert result.error.recoverable is False

    @pytest.mark.asyncio
    async def test_alert_rule_triggered_saves_alert(self, registry):
        alert = FakePort({"save": {"id": "alert-1"}})
        services = make_services(alert=alert)
        rules = [
            {"name": "hot", "field": "temperature", "operator": "gt", "value": 30, "level": "warning"},
            {"name": "very_hot", "field": "temperature", "operator": "gt", "value": 40, "level": "critical"},
        ]

        result = await registry.execute(node(NodeType.ALERT_RULE, rules=rules, message="Temp {{temperature}}"),
                                        context(temperature=45), services)

        assert result.output["alertTriggered"] is True
        assert result.output["triggeredRules"] == ["hot", "very_hot"]
        assert result.output["alertLevel"] == "critical"
        assert result.output["conditionResult"] == "triggered"
        assert result.output["alertId"] == "alert-1"
        assert alert.calls_to("save")[0]["message"] == "Temp 45"

    @pytest.mark.asyncio
    async def test_alert_rule_not_triggered(self, registry):
        alert = FakePort()
        services = make_services(alert=alert)
        rules = [{"name": "hot", "field": "temperature", "operator": "gt", "value": 30}]

        result = await registry.execute(node(NodeType.ALERT_RULE, rules=rules), context(temperature=20), services)

        assert result.output["conditionResult"] == "not_triggered"
        assert alert.calls == []

    @pytest.mark.asyncio
    async def test_send_command_requires_command(self, registry, services):
        result = await registry.execute(node(NodeType.SEND_COMMAND), context(), services)
        assert result.error.recoverable is False

    @pytest.mark.asyncio
    async def test_send_command_defaults_robot_and_priority(self, registry):
        robot = FakePort({"send_command": {"commandId": "c-1", "status": "queued"}})
        services = make_services(robot=robot)

        result = await registry.execute(node(NodeType.SEND_COMMAND, command="move"), context(robotId="r-7"),
                                        services)

        spec = robot.calls_to("send_command")[0]
        assert (spec["robotId"], spec["priority"]) == ("r-7", 5)
        assert result.output == {"commandId": "c-1", "commandStatus": "queued"}

    @pytest.mark.asyncio
    async def test_command_status_routes_on_status(self, registry):
        services = make_services(robot=FakePort({"command_status": {"status": "done"}}))

        result = await registry.execute(node(NodeType.COMMAND_STATUS, commandId="c-1"), context(), services)

        assert result.output["conditionResult"] == "done"

    @pytest.mark.asyncio
    async def test_log_save_works_without_port(self, registry):
        services = make_services(log=None)

        result = await registry.execute(node(NodeType.LOG_SAVE, level="warn", message="hi {{who}}"),
                                        context(who="there"), services)

        assert result.output == {"logged": True, "logLevel": "warn"}

    @pytest.mark.asyncio
    async def test_port_specs_carry_instance_id(self, registry):
        task = FakePort({"assign": {"taskId": "t-1"}})
        services = make_services(task=task)

        result = await registry.execute(node(NodeType.TASK_ASSIGN, assignee="bob"), context(), services)

        assert task.calls_to("assign")[0]["flowInstanceId"] == "inst-1"
        assert result.output == {"taskId": "t-1", "assignee": "bob"}
