import logging

from .client import UnifiedChatClient
from .config import ClientConfig
from .agent import ToolOrchestrationLoop
from .thread import Thread, RequestContext
from .tools import ToolRegistry, build_registry
from .mcp_client import MCPClient, MCPServerConfig, connect_mcp_servers, close_mcp_clients
from .streaming import StreamAggregator
from .errors import (
    UnichatError, UnifiedError, ValidationError, ProviderNotConfiguredError,
    ToolRegistrationError, ToolCallError, RequestAborted, normalize_error,
)
from .types import (
    Message, ContentBlock, Tool, ToolDefinition, UnifiedRequest, UnifiedResponse,
    UnifiedStreamEvent, Usage, Provider,
)
from .utils import (
    create_message, create_text_content, create_image_content, create_tool, define_tool,
    create_tool_result, create_tool_result_message, encode_image_file, encode_image_url,
)
from .printer import RichPrinter, RichStreamPrinter

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "UnifiedChatClient",
    "ClientConfig",
    "ToolOrchestrationLoop",
    "Thread",
    "RequestContext",
    "ToolRegistry",
    "build_registry",
    "MCPClient",
    "MCPServerConfig",
    "connect_mcp_servers",
    "close_mcp_clients",
    "StreamAggregator",
    "UnichatError",
    "UnifiedError",
    "ValidationError",
    "ProviderNotConfiguredError",
    "ToolRegistrationError",
    "ToolCallError",
    "RequestAborted",
    "normalize_error",
    "Message",
    "ContentBlock",
    "Tool",
    "ToolDefinition",
    "UnifiedRequest",
    "UnifiedResponse",
    "UnifiedStreamEvent",
    "Usage",
    "Provider",
    "create_message",
    "create_text_content",
    "create_image_content",
    "create_tool",
    "define_tool",
    "create_tool_result",
    "create_tool_result_message",
    "encode_image_file",
    "encode_image_url",
    "RichPrinter",
    "RichStreamPrinter",
]
