"""
Unit tests for tool routing.
"""
import json

import httpx
import pytest
import respx

from chat_gateway.billing.ledger import LocalLedgerClient
from chat_gateway.billing.store import InMemoryLedgerStore
from chat_gateway.core.errors import ToolExecutionError
from chat_gateway.models.tools import Tool, ToolResult, normalize_tool_call
from chat_gateway.tools import (
    InMemoryToolCallLog,
    InMemoryToolRegistry,
    ToolExecutor,
    ToolRouter,
    summarize_tool_results,
    validate_arguments,
)
from chat_gateway.tools.builtin import convert_units
from chat_gateway.tools.router import INSUFFICIENT_CREDITS, PREMIUM_TOOL

ECHO_SCHEMA = {
    "type": "object",
    "required": ["text"],
    "properties": {"text": {"type": "string"}, "times": {"type": "integer"}},
}


class EchoTool:
    """In-process tool counting its executions."""

    def __init__(self):
        self.calls = 0

    async def __call__(self, args):
        self.calls += 1
        return {"message": args["text"] * int(args.get("times", 1))}


@pytest.fixture
def echo():
    return EchoTool()


@pytest.fixture
def registry():
    return InMemoryToolRegistry(
        tools=[
            Tool(id="t-echo", name="echo", endpoint="echo", cost_tokens=3, json_schema=ECHO_SCHEMA),
            Tool(id="t-vip", name="vip", endpoint="echo", requires_premium=True, json_schema=ECHO_SCHEMA),
        ],
        personas={"persona-1": ["t-echo", "t-vip"]},
    )


def make_router(principal, registry, echo, balance=10, entitled=False):
    store = InMemoryLedgerStore({principal.user_id: balance})
    executor = ToolExecutor("http://tools.test", local_tools={"echo": echo})
    call_log = InMemoryToolCallLog()
    router = ToolRouter(
        principal,
        registry,
        call_log,
        executor,
        LocalLedgerClient(store, principal.user_id),
        entitled=entitled,
    )
    return router, store, call_log


class TestValidateArguments:
    """Test argument checks against tool schemas."""

    def test_missing_required_field(self):
        """Test a missing required field is reported by name."""
        with pytest.raises(ToolExecutionError, match="Missing required field: text"):
            validate_arguments({}, ECHO_SCHEMA)

    def test_type_mismatch(self):
        """Test a wrongly typed field is reported with both types."""
        with pytest.raises(ToolExecutionError, match="Invalid type for text: expected string, got number"):
            validate_arguments({"text": 5}, ECHO_SCHEMA)

    def test_bool_is_not_a_number(self):
        """Test booleans do not satisfy numeric types."""
        with pytest.raises(ToolExecutionError):
            validate_arguments({"text": "a", "times": True}, ECHO_SCHEMA)

    def test_whole_float_is_an_integer(self):
        """Test a whole-number float satisfies integer."""
        validate_arguments({"text": "a", "times": 3.0}, ECHO_SCHEMA)
        with pytest.raises(ToolExecutionError):
            validate_arguments({"text": "a", "times": 3.5}, ECHO_SCHEMA)

    def test_union_types_and_undeclared_fields(self):
        """Test list-valued types and fields outside the schema."""
        schema = {"properties": {"v": {"type": ["string", "null"]}}}
        validate_arguments({"v": None, "extra": 1}, schema)
        validate_arguments({"v": "x"}, schema)


class TestNormalizeToolCall:
    """Test provider tool call shapes."""

    def test_openai_shape(self):
        """Test JSON-string arguments are decoded."""
        call = normalize_tool_call({
            "id": "c1",
            "type": "function",
            "function": {"name": "echo", "arguments": '{"text": "hi"}'},
        })
        assert (call.id, call.name, call.args) == ("c1", "echo", {"text": "hi"})

    def test_anthropic_shape(self):
        """Test tool_use blocks carry their input object."""
        call = normalize_tool_call({"id": "c2", "type": "tool_use", "name": "echo", "input": {"text": "x"}})
        assert call.args == {"text": "x"}

    def test_flat_shape_gets_an_id(self):
        """Test calls without ids are given one."""
        call = normalize_tool_call({"name": "echo", "args": {"text": "x"}})
        assert call.id.startswith("call_")

    def test_malformed_arguments(self):
        """Test undecodable arguments are rejected."""
        with pytest.raises(ToolExecutionError, match="Invalid tool arguments"):
            normalize_tool_call({"id": "c", "function": {"name": "echo", "arguments": "{not json"}})


class TestToolRouter:
    """Test tool call batches."""

    @pytest.mark.asyncio
    async def test_executes_and_charges(self, user, registry, echo):
        """Test a call is debited once and its result returned."""
        router, store, call_log = make_router(user, registry, echo)
        batch = await router.process_tool_calls([{"id": "c1", "name": "echo", "args": {"text": "hi"}}])

        result = batch.results[0]
        assert not result.is_error
        assert json.loads(result.content) == {"message": "hi"}
        assert result.tokens_spent == 3
        assert batch.total_tokens_spent == 3
        assert await store.balance(user.user_id) == 7
        assert len(call_log) == 1

    @pytest.mark.asyncio
    async def test_repeated_call_id_replays(self, user, registry, echo):
        """Test a call id seen before returns the logged result without a debit."""
        router, store, _ = make_router(user, registry, echo)
        call = {"id": "c1", "name": "echo", "args": {"text": "hi"}}

        first = await router.process_tool_calls([call])
        second = await router.process_tool_calls([call])

        assert second.results[0].content == first.results[0].content
        assert second.results[0].tokens_spent == 0
        assert second.total_tokens_spent == 0
        assert echo.calls == 1
        assert await store.balance(user.user_id) == 7

    @pytest.mark.asyncio
    async def test_failures_are_isolated_and_ordered(self, user, registry, echo):
        """Test one result per call, in order, with failures contained."""
        router, _, _ = make_router(user, registry, echo, balance=100)
        batch = await router.process_tool_calls([
            {"id": "c1", "name": "echo", "args": {"text": "a"}},
            {"id": "c2", "name": "nope", "args": {}},
            {"id": "c3", "name": "echo", "args": {"text": 5}},
            {"id": "c4", "function": {"name": "echo", "arguments": '{"text": "b"}'}},
        ])

        assert [r.tool_call_id for r in batch.results] == ["c1", "c2", "c3", "c4"]
        assert [r.is_error for r in batch.results] == [False, True, True, False]
        assert json.loads(batch.results[1].content) == {"error": "Tool not found: nope"}
        assert "Invalid type for text" in json.loads(batch.results[2].content)["error"]
        assert batch.total_tokens_spent == 6

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, user, registry, echo):
        """Test an unaffordable tool is not executed."""
        router, store, call_log = make_router(user, registry, echo, balance=2)
        batch = await router.process_tool_calls([{"id": "c1", "name": "echo", "args": {"text": "hi"}}])

        assert json.loads(batch.results[0].content) == {"error": INSUFFICIENT_CREDITS}
        assert echo.calls == 0
        assert len(call_log) == 0
        assert await store.balance(user.user_id) == 2

    @pytest.mark.asyncio
    async def test_premium_tool_refused(self, user, registry, echo):
        """Test premium tools need premium access."""
        router, _, _ = make_router(user, registry, echo)
        batch = await router.process_tool_calls([{"id": "c1", "name": "vip", "args": {"text": "hi"}}])

        assert json.loads(batch.results[0].content) == {"error": PREMIUM_TOOL}
        assert echo.calls == 0

    @pytest.mark.asyncio
    async def test_entitled_caller_is_not_charged(self, subscriber, registry, echo):
        """Test tool costs are waived for callers with premium access."""
        router, store, _ = make_router(subscriber, registry, echo, entitled=True)
        batch = await router.process_tool_calls([
            {"id": "c1", "name": "echo", "args": {"text": "hi"}},
            {"id": "c2", "name": "vip", "args": {"text": "hi"}},
        ])

        assert [r.is_error for r in batch.results] == [False, False]
        assert batch.total_tokens_spent == 0
        assert await store.balance(subscriber.user_id) == 10

    @pytest.mark.asyncio
    async def test_persona_tools(self, registry):
        """Test persona tool discovery resolves tool ids."""
        tools = await registry.get_persona_tools("persona-1")
        assert [t.name for t in tools] == ["echo", "vip"]
        assert await registry.get_persona_tools("missing") == []


class TestToolExecutor:
    """Test endpoint dispatch."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_relative_endpoint_goes_to_tools_service(self):
        """Test /path endpoints call the tools service by name."""
        route = respx.post("http://tools.test/run").mock(return_value=httpx.Response(200, json={"ok": True}))
        executor = ToolExecutor("http://tools.test/run", api_key="anon", local_tools={})
        tool = Tool(id="t", name="lookup", endpoint="/functions/v1/lookup")

        assert await executor.execute(tool, {"q": "x"}) == {"ok": True}
        sent = json.loads(route.calls.last.request.content)
        assert sent == {"tool_name": "lookup", "q": "x"}
        assert route.calls.last.request.headers["Authorization"] == "Bearer anon"
        await executor.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_absolute_endpoint(self):
        """Test full URLs receive the arguments directly."""
        respx.post("https://example.test/tool").mock(return_value=httpx.Response(200, json=[1, 2]))
        executor = ToolExecutor("http://tools.test/run", local_tools={})
        tool = Tool(id="t", name="remote", endpoint="https://example.test/tool")

        assert await executor.execute(tool, {}) == [1, 2]
        await executor.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_endpoint_failure(self):
        """Test a failing endpoint raises ToolExecutionError."""
        respx.post("https://example.test/tool").mock(return_value=httpx.Response(500, text="down"))
        executor = ToolExecutor("http://tools.test/run", local_tools={})
        tool = Tool(id="t", name="remote", endpoint="https://example.test/tool")

        with pytest.raises(ToolExecutionError, match="Tool execution failed"):
            await executor.execute(tool, {})
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_invalid_endpoint(self):
        """Test endpoints of no known form are rejected."""
        executor = ToolExecutor("http://tools.test/run", local_tools={})
        tool = Tool(id="t", name="bad", endpoint="ftp.example/x")

        with pytest.raises(ToolExecutionError, match="Invalid tool endpoint"):
            await executor.execute(tool, {})
        await executor.aclose()


class TestBuiltinTools:
    """Test in-process tools."""

    def test_length_conversion(self):
        """Test unit conversion within a category."""
        result = convert_units(1, "km", "m")
        assert result["converted_amount"] == 1000
        assert result["conversion_type"] == "length"

    def test_temperature_conversion(self):
        """Test temperature conversion goes through Celsius."""
        assert convert_units(100, "C", "F")["converted_amount"] == 212

    def test_incompatible_units(self):
        """Test units from different categories are refused."""
        with pytest.raises(ToolExecutionError, match="Unsupported unit conversion"):
            convert_units(1, "kg", "m")


class TestSummarizeToolResults:
    """Test the visible summary appended after tool execution."""

    def test_summary(self):
        """Test messages and errors are rendered per tool."""
        summary = summarize_tool_results([
            ToolResult.success("c1", "convert", {"message": "1 km = 1000 m"}),
            ToolResult.failure("c2", "lookup", "Tool not found: lookup"),
        ])
        assert summary == "\n\nconvert: 1 km = 1000 m\n\nlookup failed: Tool not found: lookup"

    def test_empty(self):
        """Test no results produce no summary."""
        assert summarize_tool_results([]) == ""
