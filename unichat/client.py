import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from .agent import ToolOrchestrationLoop
from .config import ClientConfig
from .mcp_client import close_mcp_clients, connect_mcp_servers
from .providers import BaseLLMProvider, create_provider
from .thread import Thread
from .tools import ToolRegistry, build_registry
from .types import Provider, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent

logger = logging.getLogger(__name__)


class UnifiedChatClient:
    """
    Unified client over one configured provider, with tool calling.

    Each chat()/stream() call connects the configured MCP servers, merges
    their tools with the local tools into one registry, runs the
    tool-orchestration loop and closes the MCP sessions before returning.

    Example:
        client = UnifiedChatClient(ClientConfig.from_env("anthropic", model="claude-sonnet-4-5"))
        response = await client.chat({"messages": [{"role": "user", "content": "Hello"}]})
        print(response["text"])
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        provider: Optional[BaseLLMProvider] = None,
    ):
        """
        Initialize the client.

        Args:
            config (ClientConfig): Provider, credentials, tools and MCP servers.
            provider (BaseLLMProvider, optional): Pre-built adapter; built from
                `config` when omitted.
        """
        self.config = config
        self.provider = provider or create_provider(config)

    @classmethod
    def from_env(cls, provider: Provider, **overrides: Any) -> "UnifiedChatClient":
        return cls(ClientConfig.from_env(provider, **overrides))

    @property
    def provider_name(self) -> str:
        return self.provider.provider_name

    def _with_defaults(self, request: UnifiedRequest) -> UnifiedRequest:
        merged: Dict[str, Any] = dict(request)
        if self.config.model and not merged.get("model"):
            merged["model"] = self.config.model
        if self.config.generation_config:
            merged["generation_config"] = {
                **self.config.generation_config,
                **(request.get("generation_config") or {}),
            }
        return merged  # type: ignore[return-value]

    @asynccontextmanager
    async def _tool_session(self) -> AsyncIterator[ToolRegistry]:
        """
        Connect MCP servers and build the registry for the duration of one call.
        """
        clients = await connect_mcp_servers(self.config.mcp_servers) if self.config.mcp_servers else []
        try:
            registry = await build_registry(self.config.tools, clients)
            logger.debug("Tool registry ready: %d tool(s) from %d MCP server(s)", len(registry), len(clients))
            yield registry
        finally:
            await close_mcp_clients(clients)

    async def chat(
        self,
        request: UnifiedRequest,
        *,
        thread: Optional[Thread] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Send a chat request, executing any tool calls the model makes.

        Args:
            request (UnifiedRequest): Messages plus optional model, tools,
                tool_choice, generation_config and provider_config.
            thread (Thread, optional): Conversation to continue; it receives
                the new messages, assistant turns and tool results.
            cancel (asyncio.Event, optional): Set it to abort at the next
                network call, stream read or tool round.

        Returns:
            UnifiedResponse: The final model response. `usage` is summed over
            every model call made.

        Raises:
            ValidationError: If the request is malformed.
            ToolRegistrationError: If tool names collide.
            UnifiedError: If the provider call fails.
            RequestAborted: If `cancel` was set.
        """
        async with self._tool_session() as registry:
            loop = ToolOrchestrationLoop(self.provider, registry, max_iterations=self.config.max_iterations)
            return await loop.chat(self._with_defaults(request), thread=thread, cancel=cancel)

    async def stream(
        self,
        request: UnifiedRequest,
        *,
        thread: Optional[Thread] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[UnifiedStreamEvent]:
        """
        Stream a chat response, executing tool calls between rounds.

        Yields:
            UnifiedStreamEvent: start / text_delta / stop / error events.
            `output_index` is the round number.
        """
        async with self._tool_session() as registry:
            loop = ToolOrchestrationLoop(self.provider, registry, max_iterations=self.config.max_iterations)
            async for event in loop.stream(self._with_defaults(request), thread=thread, cancel=cancel):
                yield event

    async def list_models(self) -> List[str]:
        """
        Get the list of models available to the configured provider.
        """
        return await self.provider.get_models()

    async def aclose(self) -> None:
        await self.provider.aclose()

    async def __aenter__(self) -> "UnifiedChatClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
