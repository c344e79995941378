import asyncio
import time
from typing import Dict, Any, List, AsyncIterator, Optional, Tuple

from anthropic import AsyncAnthropic

from .base import BaseLLMProvider
from ..errors import ProviderNotConfiguredError
from ..streaming import StreamAggregator
from ..types import ContentBlock, FinishReason, Message, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent, Usage
from ..utils import (
    extract_text, normalize_content, raise_if_cancelled, tool_result_text, unsupported_placeholder, as_int,
)

DEFAULT_MAX_TOKENS = 4096

STOP_REASONS: Dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}


def map_stop_reason(reason: Optional[str]) -> FinishReason:
    return STOP_REASONS.get(reason) if reason else None


def _convert_source(source: Dict[str, Any]) -> Dict[str, Any]:
    if source.get("type") == "url":
        return {"type": "url", "url": source.get("url", "")}
    return {
        "type": "base64",
        "media_type": source.get("media_type", "application/octet-stream"),
        "data": source.get("data", ""),
    }


class AnthropicProvider(BaseLLMProvider):
    """
    Provider for the Anthropic Messages API.
    """

    provider_name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        super().__init__(api_key, model=model)
        if client is not None:
            self.client = client
        elif api_key:
            client_kwargs = {"api_key": api_key}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            if max_retries is not None:
                client_kwargs["max_retries"] = max_retries
            self.client = AsyncAnthropic(**client_kwargs)
        else:
            self.client = None

    def _require_client(self) -> AsyncAnthropic:
        if not self.client:
            raise ProviderNotConfiguredError("Anthropic client not configured")
        return self.client

    def _build_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        system_text, converted_messages = self._convert_messages(request["messages"])
        config = request.get("generation_config") or {}

        request_kwargs: Dict[str, Any] = {
            "model": model,
            "messages": converted_messages,
            "max_tokens": config.get("max_tokens") or DEFAULT_MAX_TOKENS,
        }

        optional_params = {
            "system": system_text,
            "temperature": config.get("temperature"),
            "top_p": config.get("top_p"),
            "top_k": config.get("top_k"),
            "stop_sequences": config.get("stop_sequences"),
        }
        request_kwargs.update({k: v for k, v in optional_params.items() if v is not None})

        if request.get("tools"):
            request_kwargs["tools"] = self._convert_tools(request["tools"])
            tool_choice = self._convert_tool_choice(request.get("tool_choice"))
            if tool_choice is not None:
                request_kwargs["tool_choice"] = tool_choice

        provider_config = dict(request.get("provider_config") or {})
        budget = provider_config.pop("thinking_budget", None)
        if budget:
            request_kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
        request_kwargs.update({k: v for k, v in provider_config.items() if v is not None})
        return request_kwargs

    async def chat(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Send a chat request to the Messages API.

        Handles:
        - System/developer prompt extraction (sent as the `system` parameter).
        - tool_result blocks replayed inside user turns.
        - Thinking blocks returned as reasoning content.
        """
        model = self._prepare(request)
        client = self._require_client()
        request_kwargs = self._build_request(request, model)

        raise_if_cancelled(cancel)
        start = time.perf_counter()
        with self._vendor_errors():
            resp = await client.messages.create(**request_kwargs)
        raise_if_cancelled(cancel)

        content: List[ContentBlock] = []
        for block in resp.content:
            match getattr(block, "type", None):
                case "text":
                    content.append({"type": "text", "text": block.text})
                case "tool_use":
                    content.append({
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": block.input if isinstance(block.input, dict) else {},
                    })
                case "thinking":
                    content.append({"type": "reasoning", "text": block.thinking, "signature": block.signature})

        response = self._build_response(
            response_id=resp.id,
            model=resp.model or model,
            content=content,
            finish_reason=map_stop_reason(resp.stop_reason),
            usage=self._usage(resp.usage) if resp.usage else None,
            raw=resp,
        )
        self._log_completion(start, response)
        return response

    async def stream(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[UnifiedStreamEvent]:
        """
        Stream a chat response from the Messages API.

        Consumes the raw event stream; a tool call is completed on its
        `content_block_stop` event.
        """
        model = self._prepare(request)
        client = self._require_client()
        request_kwargs = self._build_request(request, model)
        request_kwargs["stream"] = True

        async def chunks():
            raise_if_cancelled(cancel)
            stream = await client.messages.create(**request_kwargs)
            async for event in stream:
                yield event

        aggregator = StreamAggregator(self.provider_name, model)
        async for event in self._stream_events(aggregator, chunks(), self._handle_event, cancel):
            yield event

    def _handle_event(self, aggregator: StreamAggregator, event: Any) -> List[UnifiedStreamEvent]:
        events: List[UnifiedStreamEvent] = []
        match event.type:
            case "message_start":
                events.extend(aggregator.start(event.message.id, event.message.model))
                if event.message.usage:
                    aggregator.set_usage(self._usage(event.message.usage))
            case "content_block_start":
                events.extend(aggregator.start())
                block = event.content_block
                if block.type == "tool_use":
                    aggregator.add_tool_call_delta(event.index, id=block.id, name=block.name)
                elif block.type == "text":
                    events.extend(aggregator.add_text(block.text))
            case "content_block_delta":
                events.extend(aggregator.start())
                delta = event.delta
                match delta.type:
                    case "text_delta":
                        events.extend(aggregator.add_text(delta.text))
                    case "input_json_delta":
                        aggregator.add_tool_call_delta(event.index, arguments=delta.partial_json)
                    case "thinking_delta":
                        aggregator.add_reasoning(delta.thinking)
                    case "signature_delta":
                        aggregator.add_reasoning(None, delta.signature)
            case "content_block_stop":
                aggregator.complete_tool_call(event.index)
            case "message_delta":
                events.extend(aggregator.start())
                aggregator.set_finish_reason(map_stop_reason(event.delta.stop_reason))
                if event.usage:
                    previous = aggregator.usage or {}
                    aggregator.set_usage(self.normalize_usage(
                        input_tokens=previous.get("input_tokens"),
                        output_tokens=as_int(event.usage.output_tokens),
                        cache_creation_input_tokens=previous.get("cache_creation_input_tokens"),
                        cache_read_input_tokens=previous.get("cache_read_input_tokens"),
                    ))
        return events

    def _usage(self, usage: Any) -> Usage:
        return self.normalize_usage(
            input_tokens=as_int(usage.input_tokens),
            output_tokens=as_int(usage.output_tokens),
            cache_creation_input_tokens=as_int(getattr(usage, "cache_creation_input_tokens", None)),
            cache_read_input_tokens=as_int(getattr(usage, "cache_read_input_tokens", None)),
        )

    def _convert_messages(
        self,
        messages: List[Message],
    ) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        """
        Convert messages to Anthropic format.

        System and developer messages are passed as a separate top-level
        parameter, not within the `messages` list. Tool results travel in
        user turns.

        Args:
            messages (List[Message]): Unified message list.

        Returns:
            Tuple containing:
            - system_text: Extracted system prompt string (or None)
            - converted: List of message dicts suitable for the API
        """
        system_parts = []
        converted = []

        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")

            if role in ("system", "developer"):
                system_parts.append(extract_text(content))
                continue

            claude_role = "assistant" if role == "assistant" else "user"
            if isinstance(content, str):
                converted.append({"role": claude_role, "content": content})
                continue

            claude_content = [self._convert_block(block) for block in normalize_content(content)]
            claude_content = [block for block in claude_content if block is not None]
            if claude_content:
                converted.append({"role": claude_role, "content": claude_content})

        system_text = "\n\n".join(part for part in system_parts if part) or None
        return system_text, converted

    @staticmethod
    def _convert_block(block: ContentBlock) -> Optional[Dict[str, Any]]:
        match block.get("type"):
            case "text":
                return {"type": "text", "text": block.get("text", "")}
            case "image":
                return {"type": "image", "source": _convert_source(block.get("source", {}))}
            case "file":
                source = block.get("source", {})
                if source.get("type") == "url" or source.get("media_type") == "application/pdf":
                    return {"type": "document", "source": _convert_source(source)}
                if source.get("type") == "file_id":
                    return {"type": "document", "source": {"type": "file", "file_id": source.get("file_id", "")}}
                return unsupported_placeholder(f"file ({source.get('media_type', 'unknown')})")
            case "tool_use":
                return {
                    "type": "tool_use",
                    "id": block["id"],
                    "name": block["name"],
                    "input": block.get("input") or {},
                }
            case "tool_result":
                result = {
                    "type": "tool_result",
                    "tool_use_id": block.get("tool_use_id", ""),
                    "content": tool_result_text(block.get("content", "")),
                }
                if block.get("is_error"):
                    result["is_error"] = True
                return result
            case "reasoning":
                # Thinking can only be replayed with its signature
                if not block.get("signature"):
                    return None
                return {"type": "thinking", "thinking": block.get("text", ""), "signature": block["signature"]}
            case other:
                return unsupported_placeholder(other)

    @staticmethod
    def _convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Convert OpenAI-format tools to Anthropic format.

        Anthropic uses 'input_schema' instead of 'parameters'.
        """
        claude_tools = []
        for tool in tools:
            func = tool.get("function", {})
            claude_tools.append({
                "name": func.get("name", ""),
                "description": func.get("description", ""),
                "input_schema": func.get("parameters") or {"type": "object", "properties": {}},
            })
        return claude_tools

    @staticmethod
    def _convert_tool_choice(tool_choice: Any) -> Optional[Dict[str, Any]]:
        if tool_choice is None:
            return None
        if isinstance(tool_choice, dict):
            name = tool_choice.get("function", {}).get("name") or tool_choice.get("name")
            return {"type": "tool", "name": name}
        match tool_choice:
            case "auto":
                return {"type": "auto"}
            case "required":
                return {"type": "any"}
            case "none":
                return {"type": "none"}
            case name:
                return {"type": "tool", "name": name}

    async def get_models(self) -> List[str]:
        """
        Get list of available model ids. Returns [] when no client is configured.
        """
        if not self.client:
            return []
        with self._vendor_errors():
            models = await self.client.models.list()
        return [m.id for m in models.data]

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
