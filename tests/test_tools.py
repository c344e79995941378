import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp.types import CallToolResult, ImageContent, TextContent, Tool as MCPTool

from unichat.errors import ToolCallError, ToolRegistrationError
from unichat.mcp_client import (
    MAX_TOOL_TEXT_CHARS, TRUNCATION_MARKER, MCPClient, MCPToolResult, close_mcp_clients,
    convert_mcp_tools, sanitize_tool_result,
)
from unichat.tools import ToolRegistry, build_registry
from unichat.utils import create_tool, define_tool


def fake_mcp_client(name, tool_names, *, allowed_tools=None):
    client = MagicMock(spec=MCPClient)
    client.name = name
    client.allowed_tools = allowed_tools
    client.list_tools = AsyncMock(return_value=[create_tool(n, f"{n} tool", {}) for n in tool_names])
    client.call_tool = AsyncMock(return_value=MCPToolResult(text="from mcp"))
    return client


class TestRegistration:
    def test_local_tool_with_handler(self):
        registry = ToolRegistry()
        registry.add_local_tool(define_tool("echo", "Echo", {}, lambda args: args))

        assert "echo" in registry
        assert registry.get("echo").source == "local"
        assert registry.definitions()[0]["function"]["name"] == "echo"

    def test_handler_map_supplies_missing_handler(self):
        registry = ToolRegistry()
        registry.add_local_tools([create_tool("ping", "Ping", {})], {"ping": lambda args: "pong"})

        assert registry.names == ["ping"]

    @pytest.mark.parametrize(
        "tool, handler, message",
        [
            ({"type": "retrieval", "function": {"name": "x"}}, None, "Unsupported tool type: retrieval"),
            (create_tool("x", "", {}), None, "Missing local tool handler for x"),
            (create_tool("x", "", {}), "not callable", "Local tool handler for x is not callable"),
        ],
    )
    def test_invalid_local_tools(self, tool, handler, message):
        with pytest.raises(ToolRegistrationError, match=message):
            ToolRegistry().add_local_tool(tool, handler)

    def test_duplicate_local_tool(self):
        registry = ToolRegistry()
        registry.add_local_tool(define_tool("echo", "", {}, print))

        with pytest.raises(ToolRegistrationError, match="Duplicate local tool name: echo"):
            registry.add_local_tool(define_tool("echo", "", {}, print))

    @pytest.mark.asyncio
    async def test_mcp_local_collision(self):
        client = fake_mcp_client("fs", ["read_file"])

        with pytest.raises(ToolRegistrationError, match="between MCP and local tools: read_file"):
            await build_registry([define_tool("read_file", "", {}, print)], [client])

    @pytest.mark.asyncio
    async def test_collision_across_mcp_servers(self):
        first = fake_mcp_client("a", ["search"])
        second = fake_mcp_client("b", ["search"])

        with pytest.raises(ToolRegistrationError, match="across MCP servers: search"):
            await build_registry([], [first, second])

    @pytest.mark.asyncio
    async def test_allowed_tools_filters_mcp_definitions(self):
        client = fake_mcp_client("fs", ["read_file", "write_file"], allowed_tools=["read_file"])

        registry = await build_registry([], [client])

        assert registry.names == ["read_file"]
        assert registry.get("read_file").source == "mcp:fs"

    @pytest.mark.asyncio
    async def test_allowed_tools_avoids_collision(self):
        client = fake_mcp_client("fs", ["read_file", "echo"], allowed_tools=["read_file"])

        registry = await build_registry([define_tool("echo", "", {}, print)], [client])

        assert sorted(registry.names) == ["echo", "read_file"]


class TestExecute:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        async def add(args):
            return {"sum": args["a"] + args["b"]}

        registry = ToolRegistry()
        registry.add_local_tool(define_tool("add", "", {}, add))
        registry.add_local_tool(define_tool("greet", "", {}, lambda args: f"hi {args['who']}"))

        results = await registry.execute([
            {"name": "add", "call_id": "c1", "arguments": {"a": 1, "b": 2}},
            {"name": "greet", "call_id": "c2", "arguments": {"who": "bob"}},
        ])

        assert results == [
            {"name": "add", "call_id": "c1", "output": '{"sum": 3}', "is_error": False},
            {"name": "greet", "call_id": "c2", "output": "hi bob", "is_error": False},
        ]

    @pytest.mark.asyncio
    async def test_none_result_is_ok(self):
        registry = ToolRegistry()
        registry.add_local_tool(define_tool("noop", "", {}, lambda args: None))

        [result] = await registry.execute([{"name": "noop", "call_id": "c1", "arguments": {}}])

        assert json.loads(result["output"]) == {"ok": True}

    @pytest.mark.asyncio
    async def test_default_args_are_overridden_by_call(self):
        seen = {}
        registry = ToolRegistry()
        registry.add_local_tool(
            define_tool("search", "", {}, lambda args: seen.update(args), args={"limit": 5, "q": "default"})
        )

        await registry.execute([{"name": "search", "call_id": "c1", "arguments": {"q": "cats"}}])

        assert seen == {"limit": 5, "q": "cats"}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_result(self):
        def boom(args):
            raise RuntimeError("disk full")

        registry = ToolRegistry()
        registry.add_local_tool(define_tool("boom", "", {}, boom))

        [result] = await registry.execute([{"name": "boom", "call_id": "c1", "arguments": {}}])

        assert result["is_error"] is True
        assert json.loads(result["output"]) == {
            "ok": False,
            "error": {"name": "RuntimeError", "message": "disk full"},
        }

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        [result] = await ToolRegistry().execute([{"name": "ghost", "call_id": "c1", "arguments": {}}])

        assert result["is_error"] is True
        assert json.loads(result["output"])["error"]["name"] == "ToolNotFound"

    @pytest.mark.asyncio
    async def test_missing_call_id(self):
        registry = ToolRegistry()
        registry.add_local_tool(define_tool("echo", "", {}, lambda args: "x"))

        with pytest.raises(ToolCallError):
            await registry.execute([{"name": "echo", "call_id": "", "arguments": {}}])

    @pytest.mark.asyncio
    async def test_calls_run_concurrently(self):
        both_started = asyncio.Event()
        started = []

        async def wait_for_peer(args):
            started.append(args["n"])
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)
            return args["n"]

        registry = ToolRegistry()
        registry.add_local_tool(define_tool("wait", "", {}, wait_for_peer))

        results = await registry.execute([
            {"name": "wait", "call_id": "c1", "arguments": {"n": 1}},
            {"name": "wait", "call_id": "c2", "arguments": {"n": 2}},
        ])

        assert [r["output"] for r in results] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_mcp_dispatch(self):
        client = fake_mcp_client("fs", ["read_file"])
        client.call_tool.return_value = MCPToolResult(text="denied", is_error=True)
        registry = await build_registry([], [client])

        [result] = await registry.execute([{"name": "read_file", "call_id": "c1", "arguments": {"path": "/x"}}])

        client.call_tool.assert_awaited_once_with("read_file", {"path": "/x"})
        assert result == {"name": "read_file", "call_id": "c1", "output": "denied", "is_error": True}


class TestMCPHelpers:
    def test_convert_mcp_tools(self):
        tool = MCPTool(name="list_dir", description=None, inputSchema={"type": "object", "properties": {"path": {}}})

        [converted] = convert_mcp_tools([tool])

        assert converted == {
            "type": "function",
            "function": {
                "name": "list_dir",
                "description": "",
                "parameters": {"type": "object", "properties": {"path": {}}},
            },
        }

    def test_sanitize_joins_text_and_omits_images(self):
        result = CallToolResult(content=[
            TextContent(type="text", text="line one"),
            ImageContent(type="image", data="QUJD", mimeType="image/png"),
        ])

        sanitized = sanitize_tool_result(result)

        assert sanitized.text == "line one\n[image omitted: image/png, 4 chars]"
        assert sanitized.is_error is False

    def test_sanitize_truncates_long_text(self):
        result = CallToolResult(content=[TextContent(type="text", text="x" * (MAX_TOOL_TEXT_CHARS + 50))], isError=True)

        sanitized = sanitize_tool_result(result)

        assert sanitized.text.endswith(TRUNCATION_MARKER)
        assert len(sanitized.text) == MAX_TOOL_TEXT_CHARS + len(TRUNCATION_MARKER)
        assert sanitized.is_error is True

    def test_client_requires_name(self):
        with pytest.raises(ValueError):
            MCPClient({"transport": "stdio", "command": "npx"})

    @pytest.mark.asyncio
    async def test_close_continues_after_failure(self):
        first = MagicMock(spec=MCPClient)
        first.name = "first"
        first.close = AsyncMock()
        second = MagicMock(spec=MCPClient)
        second.name = "second"
        second.close = AsyncMock(side_effect=RuntimeError("already gone"))

        await close_mcp_clients([first, second])

        second.close.assert_awaited_once()
        first.close.assert_awaited_once()
