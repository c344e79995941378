import asyncio
import json
import time
from typing import Dict, Any, List, AsyncIterator, Optional

from openai import AsyncOpenAI

from .base import BaseLLMProvider
from ..errors import ProviderNotConfiguredError
from ..streaming import StreamAggregator
from ..types import ContentBlock, FinishReason, Message, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent, Usage
from ..utils import (
    extract_text, normalize_content, raise_if_cancelled, safe_json_loads, unsupported_placeholder,
    source_to_data_uri, strip_tool_definitions, tool_result_text, as_int,
)

FINISH_REASONS: Dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}

# provider_config keys consumed by the client constructor rather than the request
CLIENT_OPTIONS = ("api_key", "base_url", "organization", "endpoint", "api_version")


def map_finish_reason(reason: Optional[str]) -> FinishReason:
    return FINISH_REASONS.get(reason) if reason else None


def convert_content_part(block: ContentBlock) -> Dict[str, Any]:
    """
    Convert one user-side content block into a Chat Completions content part.
    """
    match block.get("type"):
        case "text":
            return {"type": "text", "text": block.get("text", "")}
        case "image":
            image_url = {"url": source_to_data_uri(block.get("source", {}))}
            if block.get("detail"):
                image_url["detail"] = block["detail"]
            return {"type": "image_url", "image_url": image_url}
        case "audio":
            source = block.get("source", {})
            if source.get("type") != "base64":
                return unsupported_placeholder("audio (url)")
            fmt = block.get("format") or source.get("media_type", "audio/wav").split("/")[-1]
            return {"type": "input_audio", "input_audio": {"data": source.get("data", ""), "format": fmt}}
        case "file":
            source = block.get("source", {})
            if source.get("type") == "file_id":
                return {"type": "file", "file": {"file_id": source.get("file_id", "")}}
            file_part = {"file_data": source_to_data_uri(source)}
            if block.get("name"):
                file_part["filename"] = block["name"]
            return {"type": "file", "file": file_part}
        case other:
            return unsupported_placeholder(other)


def convert_messages(messages: List[Message], *, developer_role: str = "developer") -> List[Dict[str, Any]]:
    """
    Convert unified messages to the Chat Completions message list.

    Handles:
    - System/developer messages kept in-band (developer renamed when the
      vendor does not know that role).
    - tool_result blocks, sent as separate role="tool" messages.
    - Assistant tool_use blocks, sent as `tool_calls`.
    - Multimodal user content (images, audio, files).

    Args:
        messages (List[Message]): Unified message list.
        developer_role (str): Role name to use for developer messages.

    Returns:
        List[Dict]: OpenAI-compatible message list.
    """
    converted = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")

        if role in ("system", "developer"):
            converted.append({
                "role": developer_role if role == "developer" else "system",
                "content": extract_text(content),
            })
            continue

        blocks = normalize_content(content)

        # Tool results become one role="tool" message each
        results = [b for b in blocks if b.get("type") == "tool_result"]
        for result in results:
            converted.append({
                "role": "tool",
                "tool_call_id": result.get("tool_use_id", ""),
                "content": tool_result_text(result.get("content", "")),
            })
        if results:
            blocks = [b for b in blocks if b.get("type") != "tool_result"]
            if not blocks:
                continue

        if role == "assistant":
            text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
            assistant_msg: Dict[str, Any] = {"role": "assistant", "content": text or None}
            tool_calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                }
                for b in blocks if b.get("type") == "tool_use"
            ]
            if tool_calls:
                assistant_msg["tool_calls"] = tool_calls
            converted.append(assistant_msg)
            continue

        if isinstance(content, str) and not results:
            converted.append({"role": "user", "content": content})
        else:
            converted.append({
                "role": "user",
                "content": [
                    convert_content_part(b) for b in blocks if b.get("type") not in ("reasoning", "tool_use")
                ],
            })

    return converted


def convert_tool_choice(tool_choice: Any) -> Any:
    if tool_choice is None or isinstance(tool_choice, dict):
        return tool_choice
    if tool_choice in ("auto", "none", "required"):
        return tool_choice
    # Bare tool name
    return {"type": "function", "function": {"name": tool_choice}}


class OpenAIProvider(BaseLLMProvider):
    """
    Provider for the OpenAI Chat Completions API (also used for Azure OpenAI).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        provider_name: str = "openai",
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        super().__init__(api_key, model=model)
        self.provider_name = provider_name
        if client is not None:
            self.client = client
        elif api_key:
            client_kwargs = {"api_key": api_key, "base_url": base_url}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            if max_retries is not None:
                client_kwargs["max_retries"] = max_retries
            self.client = AsyncOpenAI(**client_kwargs)
        else:
            self.client = None

    def _require_client(self) -> AsyncOpenAI:
        if not self.client:
            raise ProviderNotConfiguredError(f"{self.provider_name.title()} client not configured")
        return self.client

    def _build_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        request_kwargs: Dict[str, Any] = {
            "model": model,
            "messages": convert_messages(request["messages"]),
        }

        config = request.get("generation_config") or {}
        optional_params = {
            "temperature": config.get("temperature"),
            "max_tokens": config.get("max_tokens"),
            "top_p": config.get("top_p"),
            "frequency_penalty": config.get("frequency_penalty"),
            "presence_penalty": config.get("presence_penalty"),
            "stop": config.get("stop_sequences"),
            "seed": config.get("seed"),
            "response_format": config.get("response_format"),
        }
        request_kwargs.update({k: v for k, v in optional_params.items() if v is not None})

        if request.get("tools"):
            request_kwargs["tools"] = strip_tool_definitions(request["tools"])
            if request.get("tool_choice") is not None:
                request_kwargs["tool_choice"] = convert_tool_choice(request["tool_choice"])

        # Remaining vendor options (parallel_tool_calls, user, reasoning_effort...)
        for key, value in (request.get("provider_config") or {}).items():
            if key not in CLIENT_OPTIONS and value is not None:
                request_kwargs[key] = value
        return request_kwargs

    async def chat(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Send a chat request using the Chat Completions API.

        Handles:
        - Message conversion to OpenAI format.
        - Option mapping (stop_sequences -> stop; top_k is not supported).
        - Tool call parsing into tool_use blocks.
        - Token usage and finish reason normalization.
        """
        model = self._prepare(request)
        client = self._require_client()
        request_kwargs = self._build_request(request, model)

        raise_if_cancelled(cancel)
        start = time.perf_counter()
        with self._vendor_errors():
            resp = await client.chat.completions.create(**request_kwargs)
        raise_if_cancelled(cancel)

        choice = resp.choices[0]
        content: List[ContentBlock] = []
        if choice.message.content:
            content.append({"type": "text", "text": choice.message.content})
        content.extend(self._parse_tool_calls(choice))

        usage = self._usage(resp.usage) if resp.usage else None
        response = self._build_response(
            response_id=resp.id,
            model=resp.model or model,
            content=content,
            finish_reason=map_finish_reason(choice.finish_reason),
            usage=usage,
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
        Stream a chat response using the Chat Completions API.

        Tool-call fragments are keyed by their `index` and completed when the
        stream ends. Usage arrives in the final chunk (`include_usage`).
        """
        model = self._prepare(request)
        client = self._require_client()
        request_kwargs = self._build_request(request, model)
        request_kwargs["stream"] = True
        request_kwargs["stream_options"] = {"include_usage": True}

        async def chunks():
            raise_if_cancelled(cancel)
            stream = await client.chat.completions.create(**request_kwargs)
            async for chunk in stream:
                yield chunk

        aggregator = StreamAggregator(self.provider_name, model)
        async for event in self._stream_events(aggregator, chunks(), self._handle_chunk, cancel):
            yield event

    def _handle_chunk(self, aggregator: StreamAggregator, chunk: Any) -> List[UnifiedStreamEvent]:
        events = aggregator.start(getattr(chunk, "id", None), getattr(chunk, "model", None))
        if getattr(chunk, "usage", None):
            aggregator.set_usage(self._usage(chunk.usage))

        for choice in chunk.choices or []:
            delta = choice.delta
            if delta is not None:
                events.extend(aggregator.add_text(delta.content))
                for tc in delta.tool_calls or []:
                    function = tc.function
                    aggregator.add_tool_call_delta(
                        tc.index,
                        id=tc.id,
                        name=function.name if function else None,
                        arguments=function.arguments if function else None,
                    )
            if choice.finish_reason:
                aggregator.set_finish_reason(map_finish_reason(choice.finish_reason))
        return events

    def _usage(self, usage: Any) -> Usage:
        prompt_details = getattr(usage, "prompt_tokens_details", None)
        completion_details = getattr(usage, "completion_tokens_details", None)
        return self.normalize_usage(
            input_tokens=as_int(usage.prompt_tokens),
            output_tokens=as_int(usage.completion_tokens),
            total_tokens=as_int(usage.total_tokens),
            cache_read_input_tokens=as_int(getattr(prompt_details, "cached_tokens", None)),
            reasoning_tokens=as_int(getattr(completion_details, "reasoning_tokens", None)),
        )

    @staticmethod
    def _parse_tool_calls(choice) -> List[ContentBlock]:
        """
        Parse tool calls from a Chat Completions choice into tool_use blocks.

        Malformed argument JSON becomes {}.
        """
        blocks: List[ContentBlock] = []
        for tc in getattr(choice.message, "tool_calls", None) or []:
            blocks.append({
                "type": "tool_use",
                "id": tc.id,
                "name": tc.function.name,
                "input": safe_json_loads(tc.function.arguments),
            })
        return blocks

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
