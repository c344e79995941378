"""
MCP (Model Context Protocol) client wrapper.

Each `MCPClient` owns one session with one MCP server and exposes the two
operations the tool registry needs: listing the server's tools (converted to
OpenAI function format) and calling one of them.

Supported transports:
- stdio: Connect to local MCP servers via subprocess (most common)
- sse: Connect to HTTP/SSE-based MCP servers
- streamable_http: Connect to streamable HTTP MCP servers

Example Usage:
-------------
```python
clients = await connect_mcp_servers([
    {
        "name": "fs",
        "transport": "stdio",
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
        "allowed_tools": ["list_directory"],
    }
])
try:
    tools = await clients[0].list_tools()
    result = await clients[0].call_tool("list_directory", {"path": "/tmp"})
finally:
    await close_mcp_clients(clients)
```
"""
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, TypedDict

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import (
    AudioContent, CallToolResult, EmbeddedResource, ImageContent, ResourceLink,
    TextContent, TextResourceContents, Tool as MCPTool,
)

from .types import ToolDefinition

logger = logging.getLogger(__name__)

TransportType = Literal["stdio", "sse", "streamable_http"]

# Tool output beyond this many characters is cut before it reaches the model
MAX_TOOL_TEXT_CHARS = 12_000
TRUNCATION_MARKER = "…[[TRUNCATED]]"


class MCPServerConfig(TypedDict, total=False):
    """
    Configuration dictionary for connecting to an MCP server.

    Fields:
        name: Unique identifier for this server (used in logs and errors)
        transport: "stdio" (default), "sse" or "streamable_http"

        For stdio transport (subprocess-based):
            command: Executable to run (e.g., "npx", "python", "uv")
            args: Command-line arguments
            env: Environment variables to set for the subprocess

        For HTTP-based transports (sse, streamable_http):
            url: Server endpoint URL
            headers: HTTP headers (useful for authentication)

        allowed_tools: If given, only these tool names are registered
    """
    name: str
    transport: TransportType
    command: str
    args: List[str]
    env: Dict[str, str]
    url: str
    headers: Dict[str, str]
    allowed_tools: List[str]


@dataclass
class MCPToolResult:
    """Text rendering of a tool call result, ready to hand back to a model."""
    text: str
    is_error: bool = False


def truncate_text(text: str, limit: int = MAX_TOOL_TEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def sanitize_tool_result(result: CallToolResult) -> MCPToolResult:
    """
    Flatten an MCP tool result to text.

    Text content is joined with newlines; binary content (images, audio,
    blobs) is replaced by a short note so it does not flood the context.
    """
    pieces: List[str] = []
    for item in result.content or []:
        if isinstance(item, TextContent):
            pieces.append(item.text)
        elif isinstance(item, (ImageContent, AudioContent)):
            kind = "image" if isinstance(item, ImageContent) else "audio"
            pieces.append(f"[{kind} omitted: {item.mimeType}, {len(item.data)} chars]")
        elif isinstance(item, EmbeddedResource):
            resource = item.resource
            if isinstance(resource, TextResourceContents):
                pieces.append(resource.text)
            else:
                pieces.append(f"[blob omitted: {resource.mimeType or 'application/octet-stream'}, {resource.uri}]")
        elif isinstance(item, ResourceLink):
            pieces.append(f"[resource: {item.uri}]")
        else:
            pieces.append(str(item))

    if not pieces and result.structuredContent is not None:
        pieces.append(json.dumps(result.structuredContent, default=str))

    return MCPToolResult(text=truncate_text("\n".join(pieces)), is_error=bool(result.isError))


def convert_mcp_tools(mcp_tools: List[MCPTool]) -> List[ToolDefinition]:
    """
    Convert MCP tool definitions to OpenAI function format.

    MCP Tool Format:
        {"name": ..., "description": ..., "inputSchema": {...}}

    OpenAI Tool Format:
        {"type": "function", "function": {"name": ..., "description": ..., "parameters": {...}}}
    """
    converted: List[ToolDefinition] = []
    for tool in mcp_tools:
        converted.append({
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description or "",
                "parameters": tool.inputSchema or {"type": "object", "properties": {}},
            },
        })
    return converted


class MCPClient:
    """
    One session with one MCP server.

    The transport and session contexts are held in an AsyncExitStack, so
    `close()` must run in the task that called `connect()`.
    """

    def __init__(self, config: MCPServerConfig):
        if not config.get("name"):
            raise ValueError("MCP server config requires a 'name'")
        self.config = config
        self.name = config["name"]
        self.session: Optional[ClientSession] = None
        self._exit_stack: Optional[AsyncExitStack] = None

    @property
    def allowed_tools(self) -> Optional[List[str]]:
        return self.config.get("allowed_tools")

    @property
    def connected(self) -> bool:
        return self.session is not None

    async def connect(self) -> "MCPClient":
        """
        Open the transport, start the session and perform the MCP handshake.

        Raises:
            ValueError: If the transport is unknown or misconfigured.
        """
        if self.session is not None:
            return self

        transport = self.config.get("transport", "stdio")
        stack = AsyncExitStack()
        try:
            match transport:
                case "stdio":
                    if not self.config.get("command"):
                        raise ValueError(f"MCP server '{self.name}': stdio transport requires 'command'")
                    server_params = StdioServerParameters(
                        command=self.config["command"],
                        args=self.config.get("args", []),
                        env=self.config.get("env"),
                    )
                    read_stream, write_stream = await stack.enter_async_context(stdio_client(server_params))
                case "sse":
                    read_stream, write_stream = await stack.enter_async_context(
                        sse_client(self._require_url(), headers=self.config.get("headers"))
                    )
                case "streamable_http" | "streamable-http":
                    read_stream, write_stream, _ = await stack.enter_async_context(
                        streamablehttp_client(self._require_url(), headers=self.config.get("headers"))
                    )
                case _:
                    raise ValueError(f"Unsupported MCP transport: {transport}")

            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise

        self._exit_stack = stack
        self.session = session
        logger.info("Connected to MCP server '%s' over %s", self.name, transport)
        return self

    def _require_url(self) -> str:
        url = self.config.get("url")
        if not url:
            raise ValueError(f"MCP server '{self.name}': {self.config.get('transport')} transport requires 'url'")
        return url

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise RuntimeError(f"MCP server '{self.name}' is not connected")
        return self.session

    async def list_tools(self) -> List[ToolDefinition]:
        """
        Discover the server's tools, in OpenAI function format.
        """
        response = await self._require_session().list_tools()
        return convert_mcp_tools(response.tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> MCPToolResult:
        """
        Execute a tool on this server and return its sanitized result.
        """
        result = await self._require_session().call_tool(name, arguments)
        return sanitize_tool_result(result)

    async def close(self) -> None:
        stack, self._exit_stack, self.session = self._exit_stack, None, None
        if stack is not None:
            await stack.aclose()
            logger.info("Closed MCP server '%s'", self.name)

    async def __aenter__(self) -> "MCPClient":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


async def connect_mcp_servers(configs: List[MCPServerConfig]) -> List[MCPClient]:
    """
    Connect to every configured server.

    If one connection fails, the servers already connected are closed before
    the error propagates.
    """
    clients: List[MCPClient] = []
    try:
        for config in configs:
            clients.append(await MCPClient(config).connect())
    except BaseException:
        await close_mcp_clients(clients)
        raise
    return clients


async def close_mcp_clients(clients: List[MCPClient]) -> None:
    """
    Close every client, best effort: a failing close is logged and the rest still close.

    Sessions are closed one after another, in reverse connection order, in
    the calling task (anyio cancel scopes are bound to the task that opened them).
    """
    for client in reversed(clients):
        try:
            await client.close()
        except Exception:
            logger.warning("Failed to close MCP server '%s'", client.name, exc_info=True)
