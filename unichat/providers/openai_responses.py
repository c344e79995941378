"""
Adapter for the OpenAI Responses API.

Unlike Chat Completions, the Responses API keeps conversation state on the
server: a request may carry `previous_response_id` and only the new input
items, which is what the orchestration loop does when a Thread holds a
continuation id.
"""
import asyncio
import json
import time
from typing import Dict, Any, List, AsyncIterator, Optional

from .openai import CLIENT_OPTIONS, OpenAIProvider
from ..errors import UnifiedError
from ..streaming import StreamAggregator
from ..types import ContentBlock, FinishReason, Message, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent, Usage
from ..utils import (
    extract_text, normalize_content, raise_if_cancelled, safe_json_loads,
    source_to_data_uri, tool_result_text, unsupported_placeholder, as_int,
)

INCOMPLETE_REASONS: Dict[str, FinishReason] = {
    "max_output_tokens": "length",
    "content_filter": "content_filter",
}


def convert_input_part(block: ContentBlock) -> Dict[str, Any]:
    match block.get("type"):
        case "text":
            return {"type": "input_text", "text": block.get("text", "")}
        case "image":
            part = {"type": "input_image", "image_url": source_to_data_uri(block.get("source", {}))}
            if block.get("detail"):
                part["detail"] = block["detail"]
            return part
        case "file":
            source = block.get("source", {})
            if source.get("type") == "file_id":
                return {"type": "input_file", "file_id": source.get("file_id", "")}
            if source.get("type") == "url":
                return {"type": "input_file", "file_url": source.get("url", "")}
            part = {"type": "input_file", "file_data": source_to_data_uri(source)}
            if block.get("name"):
                part["filename"] = block["name"]
            return part
        case other:
            placeholder = unsupported_placeholder(other)
            return {"type": "input_text", "text": placeholder["text"]}


def convert_input(messages: List[Message]) -> List[Dict[str, Any]]:
    """
    Convert unified messages to Responses API input items.

    tool_use blocks become `function_call` items and tool_result blocks
    become `function_call_output` items, paired by call id.
    """
    items: List[Dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")

        if role in ("system", "developer"):
            items.append({"role": role, "content": extract_text(content)})
            continue

        if isinstance(content, str):
            items.append({"role": "assistant" if role == "assistant" else "user", "content": content})
            continue

        if role == "assistant":
            text = extract_text(content)
            if text:
                items.append({"role": "assistant", "content": text})
            for block in content:
                if block.get("type") == "tool_use":
                    items.append({
                        "type": "function_call",
                        "call_id": block["id"],
                        "name": block["name"],
                        "arguments": json.dumps(block.get("input") or {}),
                    })
            continue

        parts = []
        for block in normalize_content(content):
            if block.get("type") == "tool_result":
                items.append({
                    "type": "function_call_output",
                    "call_id": block.get("tool_use_id", ""),
                    "output": tool_result_text(block.get("content", "")),
                })
            elif block.get("type") not in ("reasoning", "tool_use"):
                parts.append(convert_input_part(block))
        if parts:
            items.append({"role": "user", "content": parts})
    return items


def convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flatten OpenAI function tools to the Responses API shape.
    """
    converted = []
    for tool in tools:
        func = tool.get("function", {})
        converted.append({
            "type": "function",
            "name": func.get("name", ""),
            "description": func.get("description", ""),
            "parameters": func.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


def convert_text_format(response_format: Dict[str, Any]) -> Dict[str, Any]:
    if response_format.get("type") == "json_schema":
        schema = response_format.get("json_schema", {})
        text_format = {
            "type": "json_schema",
            "name": schema.get("name", "response"),
            "schema": schema.get("schema", {}),
        }
        if "strict" in schema:
            text_format["strict"] = schema["strict"]
        return {"format": text_format}
    return {"format": {"type": response_format.get("type", "text")}}


class OpenAIResponsesProvider(OpenAIProvider):
    """
    Provider for the OpenAI Responses API, with server-side continuation.
    """

    supports_continuation = True

    def _build_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        request_kwargs: Dict[str, Any] = {
            "model": model,
            "input": convert_input(request["messages"]),
        }

        config = request.get("generation_config") or {}
        optional_params = {
            "temperature": config.get("temperature"),
            "top_p": config.get("top_p"),
            "max_output_tokens": config.get("max_tokens"),
            "previous_response_id": request.get("previous_response_id"),
        }
        request_kwargs.update({k: v for k, v in optional_params.items() if v is not None})
        if config.get("response_format"):
            request_kwargs["text"] = convert_text_format(config["response_format"])

        if request.get("tools"):
            request_kwargs["tools"] = convert_tools(request["tools"])
            tool_choice = request.get("tool_choice")
            if isinstance(tool_choice, dict):
                name = tool_choice.get("function", {}).get("name") or tool_choice.get("name")
                request_kwargs["tool_choice"] = {"type": "function", "name": name}
            elif tool_choice in ("auto", "none", "required"):
                request_kwargs["tool_choice"] = tool_choice
            elif tool_choice:
                request_kwargs["tool_choice"] = {"type": "function", "name": tool_choice}

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
        Send one request to the Responses API.

        The response id doubles as the continuation token for the next turn.
        """
        model = self._prepare(request)
        client = self._require_client()
        request_kwargs = self._build_request(request, model)

        raise_if_cancelled(cancel)
        start = time.perf_counter()
        with self._vendor_errors():
            resp = await client.responses.create(**request_kwargs)
        raise_if_cancelled(cancel)

        content = self._parse_output(resp.output or [])
        response = self._build_response(
            response_id=resp.id,
            model=resp.model or model,
            content=content,
            finish_reason=self._finish_reason(resp, content),
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
        Stream a response from the Responses API.

        Function calls are keyed by their output index and completed on
        `response.output_item.done`.
        """
        model = self._prepare(request)
        client = self._require_client()
        request_kwargs = self._build_request(request, model)
        request_kwargs["stream"] = True

        async def chunks():
            raise_if_cancelled(cancel)
            stream = await client.responses.create(**request_kwargs)
            async for event in stream:
                yield event

        aggregator = StreamAggregator(self.provider_name, model)
        async for event in self._stream_events(aggregator, chunks(), self._handle_event, cancel):
            yield event

    def _handle_event(self, aggregator: StreamAggregator, event: Any) -> List[UnifiedStreamEvent]:
        events: List[UnifiedStreamEvent] = []
        match event.type:
            case "response.created" | "response.in_progress":
                events.extend(aggregator.start(event.response.id, event.response.model))
            case "response.output_text.delta":
                events.extend(aggregator.start())
                events.extend(aggregator.add_text(event.delta))
            case "response.output_item.added":
                events.extend(aggregator.start())
                item = event.item
                if item.type == "function_call":
                    aggregator.add_tool_call_delta(
                        event.output_index, id=item.call_id, name=item.name, arguments=item.arguments,
                    )
            case "response.function_call_arguments.delta":
                aggregator.add_tool_call_delta(event.output_index, arguments=event.delta)
            case "response.output_item.done":
                item = event.item
                if item.type == "function_call":
                    aggregator.add_tool_call_delta(event.output_index, id=item.call_id, name=item.name)
                    aggregator.complete_tool_call(event.output_index, arguments=item.arguments)
            case "response.reasoning_summary_text.delta":
                aggregator.add_reasoning(event.delta)
            case "response.completed" | "response.incomplete":
                events.extend(aggregator.start(event.response.id, event.response.model))
                resp = event.response
                if resp.usage:
                    aggregator.set_usage(self._usage(resp.usage))
                aggregator.set_finish_reason(self._finish_reason(resp, aggregator.tool_calls()))
            case "response.failed":
                error = event.response.error
                raise UnifiedError(
                    code=getattr(error, "code", None) or "openai_error",
                    message=getattr(error, "message", None) or "Response failed",
                    type="api_error",
                    provider=self.provider_name,
                    details=error,
                )
            case "error":
                raise UnifiedError(
                    code=event.code or "openai_error",
                    message=event.message,
                    type="api_error",
                    provider=self.provider_name,
                    details=event,
                )
        return events

    @staticmethod
    def _parse_output(output: List[Any]) -> List[ContentBlock]:
        content: List[ContentBlock] = []
        for item in output:
            match item.type:
                case "message":
                    text = "".join(
                        part.text for part in item.content if getattr(part, "type", None) == "output_text"
                    )
                    if text:
                        content.append({"type": "text", "text": text})
                case "function_call":
                    content.append({
                        "type": "tool_use",
                        "id": item.call_id,
                        "name": item.name,
                        "input": safe_json_loads(item.arguments),
                    })
                case "reasoning":
                    summary = "".join(part.text for part in getattr(item, "summary", None) or [])
                    if summary:
                        content.append({"type": "reasoning", "text": summary})
        return content

    @staticmethod
    def _finish_reason(resp: Any, content: List[ContentBlock]) -> FinishReason:
        match resp.status:
            case "completed":
                if any(block.get("type") == "tool_use" for block in content):
                    return "tool_calls"
                return "stop"
            case "incomplete":
                details = getattr(resp, "incomplete_details", None)
                return INCOMPLETE_REASONS.get(getattr(details, "reason", None))
            case _:
                return None

    def _usage(self, usage: Any) -> Usage:
        input_details = getattr(usage, "input_tokens_details", None)
        output_details = getattr(usage, "output_tokens_details", None)
        return self.normalize_usage(
            input_tokens=as_int(usage.input_tokens),
            output_tokens=as_int(usage.output_tokens),
            total_tokens=as_int(usage.total_tokens),
            cache_read_input_tokens=as_int(getattr(input_details, "cached_tokens", None)),
            reasoning_tokens=as_int(getattr(output_details, "reasoning_tokens", None)),
        )
