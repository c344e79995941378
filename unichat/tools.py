"""
Tool registry and dispatch.

Merges local tool handlers and tools discovered on MCP servers into one
name -> executor map. Registration fails fast on name collisions so a tool
call is never dispatched ambiguously.
"""
import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ToolCallError, ToolRegistrationError
from .mcp_client import MCPClient
from .types import NormalizedToolCall, NormalizedToolResult, Tool, ToolDefinition, ToolHandler

logger = logging.getLogger(__name__)


@dataclass
class RegisteredTool:
    """
    A tool the registry can dispatch to.

    Exactly one of `handler` (local tool) or `client` (MCP tool) is set.
    """
    definition: ToolDefinition
    handler: Optional[ToolHandler] = None
    default_args: Dict[str, Any] = field(default_factory=dict)
    client: Optional[MCPClient] = None

    @property
    def name(self) -> str:
        return self.definition["function"]["name"]

    @property
    def is_mcp(self) -> bool:
        return self.client is not None

    @property
    def source(self) -> str:
        return f"mcp:{self.client.name}" if self.client is not None else "local"


def serialize_output(result: Any) -> str:
    """
    Strings pass through; None becomes {"ok": true}; anything else is JSON encoded.
    """
    if isinstance(result, str):
        return result
    if result is None:
        return json.dumps({"ok": True})
    return json.dumps(result, default=str)


def serialize_error(exc: BaseException) -> str:
    return json.dumps({"ok": False, "error": {"name": type(exc).__name__, "message": str(exc)}})


class ToolRegistry:
    """
    Name -> executor map over local and MCP tools.
    """

    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def definitions(self) -> List[ToolDefinition]:
        """Wire definitions of every registered tool, in registration order."""
        return [tool.definition for tool in self._tools.values()]

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def add_local_tool(self, tool: Tool, handler: Optional[ToolHandler] = None) -> RegisteredTool:
        """
        Register a local tool.

        Args:
            tool (Tool): Definition, optionally carrying `handler` and default `args`.
            handler (Callable, optional): Handler, when not carried by `tool`.

        Raises:
            ToolRegistrationError: On an unsupported type, a missing or
                non-callable handler, or a name already registered.
        """
        if tool.get("type") != "function":
            raise ToolRegistrationError(f"Unsupported tool type: {tool.get('type')}")
        name = tool.get("function", {}).get("name")
        if not name:
            raise ToolRegistrationError("Local tool definition is missing a function name")

        handler = handler or tool.get("handler")
        if handler is None:
            raise ToolRegistrationError(f"Missing local tool handler for {name}")
        if not callable(handler):
            raise ToolRegistrationError(f"Local tool handler for {name} is not callable")

        existing = self._tools.get(name)
        if existing is not None:
            if existing.is_mcp:
                raise ToolRegistrationError(f"Tool name collision between MCP and local tools: {name}")
            raise ToolRegistrationError(f"Duplicate local tool name: {name}")

        registered = RegisteredTool(
            definition={"type": "function", "function": dict(tool["function"])},
            handler=handler,
            default_args=dict(tool.get("args") or {}),
        )
        self._tools[name] = registered
        return registered

    def add_local_tools(
        self,
        tools: Iterable[Tool],
        handlers: Optional[Mapping[str, ToolHandler]] = None,
    ) -> None:
        """
        Register several local tools; `handlers` maps tool names to handlers
        for definitions that do not carry one.
        """
        handlers = handlers or {}
        for tool in tools:
            name = tool.get("function", {}).get("name", "")
            self.add_local_tool(tool, handlers.get(name))

    def add_mcp_tools(self, client: MCPClient, definitions: List[ToolDefinition]) -> List[RegisteredTool]:
        """
        Register the tools discovered on one MCP server.

        The server's `allowed_tools` list, when present, filters the
        definitions first.

        Raises:
            ToolRegistrationError: If a name is already registered.
        """
        allowed = client.allowed_tools
        added = []
        for definition in definitions:
            name = definition["function"]["name"]
            if allowed is not None and name not in allowed:
                continue
            existing = self._tools.get(name)
            if existing is not None:
                if existing.is_mcp:
                    raise ToolRegistrationError(f"Tool name collision across MCP servers: {name}")
                raise ToolRegistrationError(f"Tool name collision between MCP and local tools: {name}")
            registered = RegisteredTool(definition=definition, client=client)
            self._tools[name] = registered
            added.append(registered)
        logger.info("Registered %d tool(s) from MCP server '%s'", len(added), client.name)
        return added

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def execute(self, calls: List[NormalizedToolCall]) -> List[NormalizedToolResult]:
        """
        Execute one turn's tool calls concurrently.

        Every call settles before this returns. A failing tool is captured
        as an `{"ok": false, "error": ...}` result with `is_error` set.

        Args:
            calls (List[NormalizedToolCall]): Calls emitted by the model.

        Returns:
            List[NormalizedToolResult]: One result per call, in call order.

        Raises:
            ToolCallError: If any call has no call id.
        """
        for call in calls:
            if not call.get("call_id"):
                raise ToolCallError(f"Tool call for '{call.get('name')}' is missing a call id")

        return list(await asyncio.gather(*(self._execute_one(call) for call in calls)))

    async def _execute_one(self, call: NormalizedToolCall) -> NormalizedToolResult:
        name = call["name"]
        call_id = call["call_id"]
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("tool.call.unknown name=%s call_id=%s", name, call_id)
            output = json.dumps({"ok": False, "error": {"name": "ToolNotFound", "message": f"Unknown tool: {name}"}})
            return {"name": name, "call_id": call_id, "output": output, "is_error": True}

        arguments = {**tool.default_args, **(call.get("arguments") or {})}
        logger.info("tool.call.request name=%s call_id=%s source=%s", name, call_id, tool.source)
        start = time.perf_counter()
        is_error = False
        try:
            if tool.client is not None:
                result = await tool.client.call_tool(name, arguments)
                output, is_error = result.text, result.is_error
            else:
                value = tool.handler(arguments)
                if inspect.isawaitable(value):
                    value = await value
                output = serialize_output(value)
        except Exception as exc:
            logger.warning("tool.call.failed name=%s call_id=%s", name, call_id, exc_info=True)
            output, is_error = serialize_error(exc), True

        logger.info(
            "tool.call.completed name=%s call_id=%s is_error=%s duration_ms=%.1f",
            name, call_id, is_error, (time.perf_counter() - start) * 1000.0,
        )
        return {"name": name, "call_id": call_id, "output": output, "is_error": is_error}


async def build_registry(
    local_tools: Optional[Iterable[Tool]] = None,
    mcp_clients: Optional[Iterable[MCPClient]] = None,
    handlers: Optional[Mapping[str, ToolHandler]] = None,
) -> ToolRegistry:
    """
    Build a registry from local tools and connected MCP clients.

    MCP tools are discovered with `list_tools()` on each client.
    """
    registry = ToolRegistry()
    registry.add_local_tools(local_tools or [], handlers)
    for client in mcp_clients or []:
        registry.add_mcp_tools(client, await client.list_tools())
    return registry
