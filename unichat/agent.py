"""
Tool-orchestration loop.

    awaiting model --(response has tool_use blocks)--> executing tools
    executing tools --(every call has a tool_result)--> awaiting model
    awaiting model --(no tool_use blocks)--> done

Each tool_use block is answered by exactly one tool_result block before the
next model call. Tool calls of one turn run concurrently.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from .providers.base import BaseLLMProvider
from .thread import Thread
from .tools import ToolRegistry
from .types import (
    Message, NormalizedToolCall, ToolDefinition, UnifiedRequest, UnifiedResponse,
    UnifiedStreamEvent, Usage,
)
from .utils import (
    create_tool_result, create_tool_result_message, normalize_content, raise_if_cancelled,
    strip_tool_definitions, tool_uses, validate_chat_request,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10


def add_usage(total: Optional[Usage], usage: Optional[Usage]) -> Optional[Usage]:
    """
    Sum two usage records key by key.
    """
    if not usage:
        return total
    if not total:
        return dict(usage)  # type: ignore[return-value]
    summed: Dict[str, int] = dict(total)
    for key, value in usage.items():
        if isinstance(value, int):
            summed[key] = summed.get(key, 0) + value
    return summed  # type: ignore[return-value]


def extract_tool_calls(message: Message) -> List[NormalizedToolCall]:
    return [
        {"name": block["name"], "call_id": block["id"], "arguments": block.get("input") or {}}
        for block in tool_uses(message)
    ]


class ToolOrchestrationLoop:
    """
    Runs call -> execute tools -> re-call until the model stops asking for tools.

    Args:
        provider (BaseLLMProvider): Adapter used for every model call.
        registry (ToolRegistry, optional): Tools available to the model.
        max_iterations (int): Upper bound on model calls per chat()/stream().
    """

    def __init__(
        self,
        provider: BaseLLMProvider,
        registry: Optional[ToolRegistry] = None,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.provider = provider
        self.registry = registry or ToolRegistry()
        self.max_iterations = max_iterations

    async def chat(
        self,
        request: UnifiedRequest,
        *,
        thread: Optional[Thread] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Run the loop with blocking model calls and return the final response.

        The returned `usage` is summed over every model call of the loop.
        """
        validate_chat_request(request)
        thread = self._prepare_thread(request, thread)
        pending = thread.build_request_context(request["messages"]).new_messages
        tools = self._merge_tools(request)

        response: Optional[UnifiedResponse] = None
        total_usage: Optional[Usage] = None
        for iteration in range(1, self.max_iterations + 1):
            raise_if_cancelled(cancel)
            logger.debug("loop iteration %d: provider=%s", iteration, self.provider.provider_name)

            response = await self.provider.chat(self._call_request(request, thread, pending, tools), cancel=cancel)
            total_usage = add_usage(total_usage, response.get("usage"))
            self._record(thread, response)

            calls = extract_tool_calls(response["message"])
            if not calls:
                break

            raise_if_cancelled(cancel)
            results_message = await self._run_tools(calls)
            thread.append_to_history(results_message)
            pending = [results_message]
            if iteration == self.max_iterations:
                logger.warning("Tool loop stopped after max_iterations=%d", self.max_iterations)

        if total_usage:
            response["usage"] = total_usage
        return response

    async def stream(
        self,
        request: UnifiedRequest,
        *,
        thread: Optional[Thread] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[UnifiedStreamEvent]:
        """
        Run the loop with streaming model calls.

        Events of every round are re-yielded with `output_index` set to the
        round number (0-based). The last `stop` event carries the usage
        summed over all rounds. An `error` event ends the loop.
        """
        validate_chat_request(request)
        thread = self._prepare_thread(request, thread)
        pending = thread.build_request_context(request["messages"]).new_messages
        tools = self._merge_tools(request)

        total_usage: Optional[Usage] = None
        for iteration in range(self.max_iterations):
            raise_if_cancelled(cancel)
            logger.debug("loop stream round %d: provider=%s", iteration, self.provider.provider_name)

            calls: List[NormalizedToolCall] = []
            finished = False
            call_request = self._call_request(request, thread, pending, tools)
            async for event in self.provider.stream(call_request, cancel=cancel):
                event = {**event, "output_index": iteration}
                match event.get("event_type"):
                    case "error":
                        yield event
                        return
                    case "stop":
                        finished = True
                        total_usage = add_usage(total_usage, event.get("usage"))
                        self._record(thread, event)
                        calls = extract_tool_calls(event["message"])
                        last_round = not calls or iteration == self.max_iterations - 1
                        if last_round and total_usage:
                            event["usage"] = total_usage
                yield event

            if not finished or not calls:
                return

            raise_if_cancelled(cancel)
            results_message = await self._run_tools(calls)
            thread.append_to_history(results_message)
            pending = [results_message]

        logger.warning("Tool loop stopped after max_iterations=%d", self.max_iterations)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _prepare_thread(request: UnifiedRequest, thread: Optional[Thread]) -> Thread:
        thread = thread if thread is not None else Thread()
        if request.get("previous_response_id") and not thread.previous_response_id:
            thread.previous_response_id = request["previous_response_id"]
        return thread

    def _merge_tools(self, request: UnifiedRequest) -> List[ToolDefinition]:
        tools = strip_tool_definitions(request.get("tools"))
        seen = {tool["function"]["name"] for tool in tools}
        for definition in self.registry.definitions():
            if definition["function"]["name"] not in seen:
                tools.append(definition)
        return tools

    def _call_request(
        self,
        request: UnifiedRequest,
        thread: Thread,
        pending: List[Message],
        tools: List[ToolDefinition],
    ) -> UnifiedRequest:
        call_request: Dict[str, Any] = {
            k: v for k, v in request.items() if k not in ("messages", "tools", "previous_response_id")
        }
        if self.provider.supports_continuation and thread.previous_response_id:
            # The provider already holds everything up to previous_response_id
            call_request["messages"] = list(pending)
            call_request["previous_response_id"] = thread.previous_response_id
        else:
            call_request["messages"] = thread.history
        if tools:
            call_request["tools"] = tools
        else:
            call_request.pop("tool_choice", None)
        return call_request  # type: ignore[return-value]

    def _record(self, thread: Thread, response: UnifiedResponse) -> None:
        message = response.get("message")
        if message and normalize_content(message.get("content")):
            thread.append_to_history(message)
        if self.provider.supports_continuation and response.get("id"):
            thread.update_previous_response_id(response["id"])

    async def _run_tools(self, calls: List[NormalizedToolCall]) -> Message:
        results = await self.registry.execute(calls)
        return create_tool_result_message([
            create_tool_result(result["call_id"], result["output"], result["is_error"])
            for result in results
        ])
