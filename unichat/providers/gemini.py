import asyncio
import base64
import json
import time
import uuid
from typing import Dict, Any, List, AsyncIterator, Optional, Tuple

from google import genai
from google.genai import types

from .base import BaseLLMProvider
from ..errors import ProviderNotConfiguredError
from ..streaming import StreamAggregator
from ..types import ContentBlock, FinishReason, Message, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent, Usage
from ..utils import (
    as_int, extract_text, normalize_content, raise_if_cancelled, resolve_source_to_base64,
    tool_result_text, unsupported_placeholder,
)

FINISH_REASONS: Dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}

TOOL_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}


def map_finish_reason(reason: Any) -> FinishReason:
    if reason is None:
        return None
    # google-genai returns an enum; its name is the wire value
    return FINISH_REASONS.get(getattr(reason, "name", None) or str(reason))


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class GeminiProvider(BaseLLMProvider):
    """
    Provider for Google Gemini (using the google-genai SDK).
    """

    provider_name = "google"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        client: Optional[genai.Client] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        super().__init__(api_key, model=model)
        if client is not None:
            self.client = client
        elif api_key:
            http_options = {}
            if timeout is not None:
                # google-genai takes milliseconds
                http_options["timeout"] = int(timeout * 1000)
            if max_retries is not None:
                http_options["retry_options"] = types.HttpRetryOptions(attempts=max_retries + 1)
            self.client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(**http_options) if http_options else None,
            )
        else:
            self.client = None

    def _require_client(self) -> genai.Client:
        if not self.client:
            raise ProviderNotConfiguredError("Gemini client not configured")
        return self.client

    async def _build_request(self, request: UnifiedRequest) -> Tuple[List[types.Content], types.GenerateContentConfig]:
        system_instruction, contents = await self._convert_messages(request["messages"])
        config = request.get("generation_config") or {}

        config_kwargs: Dict[str, Any] = {"system_instruction": system_instruction}
        optional_params = {
            "temperature": config.get("temperature"),
            "top_p": config.get("top_p"),
            "top_k": config.get("top_k"),
            "max_output_tokens": config.get("max_tokens"),
            "stop_sequences": config.get("stop_sequences"),
            "frequency_penalty": config.get("frequency_penalty"),
            "presence_penalty": config.get("presence_penalty"),
            "seed": config.get("seed"),
        }
        config_kwargs.update({k: v for k, v in optional_params.items() if v is not None})

        response_format = config.get("response_format")
        if response_format and response_format.get("type") in ("json_object", "json_schema"):
            config_kwargs["response_mime_type"] = "application/json"
            schema = response_format.get("json_schema", {}).get("schema")
            if schema:
                config_kwargs["response_json_schema"] = schema

        if request.get("tools"):
            config_kwargs["tools"] = self._convert_tools(request["tools"])
            tool_config = self._convert_tool_choice(request.get("tool_choice"))
            if tool_config is not None:
                config_kwargs["tool_config"] = tool_config

        provider_config = dict(request.get("provider_config") or {})
        budget = provider_config.pop("thinking_budget", None)
        if budget is not None:
            config_kwargs["thinking_config"] = types.ThinkingConfig(
                thinking_budget=budget, include_thoughts=True,
            )
        config_kwargs.update({k: v for k, v in provider_config.items() if v is not None})

        return contents, types.GenerateContentConfig(**config_kwargs)

    async def chat(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Send a chat request to the Gemini API.

        Handles:
        - Role mapping (assistant -> model).
        - System instruction extraction.
        - Function calls and function responses.
        - Safety-related finish reasons (mapped to content_filter).
        """
        model = self._prepare(request)
        client = self._require_client()
        with self._vendor_errors():
            contents, config = await self._build_request(request)

        raise_if_cancelled(cancel)
        start = time.perf_counter()
        with self._vendor_errors():
            resp = await client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        raise_if_cancelled(cancel)

        content: List[ContentBlock] = []
        finish_reason: FinishReason = None
        if resp.candidates:
            candidate = resp.candidates[0]
            parts = candidate.content.parts if candidate.content and candidate.content.parts else []
            content = self._parse_parts(parts)
            finish_reason = map_finish_reason(candidate.finish_reason)
            if finish_reason == "stop" and any(b.get("type") == "tool_use" for b in content):
                finish_reason = "tool_calls"

        response = self._build_response(
            response_id=getattr(resp, "response_id", None),
            model=getattr(resp, "model_version", None) or model,
            content=content,
            finish_reason=finish_reason,
            usage=self._usage(resp.usage_metadata) if resp.usage_metadata else None,
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
        Stream a chat response from Gemini.

        Gemini sends each function call whole, so it is completed as soon as
        it arrives.
        """
        model = self._prepare(request)
        client = self._require_client()
        with self._vendor_errors():
            contents, config = await self._build_request(request)

        async def chunks():
            raise_if_cancelled(cancel)
            stream = await client.aio.models.generate_content_stream(
                model=model,
                contents=contents,
                config=config,
            )
            async for chunk in stream:
                yield chunk

        aggregator = StreamAggregator(self.provider_name, model)
        async for event in self._stream_events(aggregator, chunks(), self._handle_chunk, cancel):
            yield event

    def _handle_chunk(self, aggregator: StreamAggregator, chunk: Any) -> List[UnifiedStreamEvent]:
        events = aggregator.start(getattr(chunk, "response_id", None), getattr(chunk, "model_version", None))
        if chunk.usage_metadata:
            aggregator.set_usage(self._usage(chunk.usage_metadata))

        for candidate in (chunk.candidates or [])[:1]:
            parts = candidate.content.parts if candidate.content and candidate.content.parts else []
            for part in parts:
                if part.function_call:
                    index = aggregator.tool_call_count
                    fc = part.function_call
                    aggregator.add_tool_call_delta(
                        index, id=fc.id or new_call_id(), name=fc.name, arguments=json.dumps(fc.args or {}),
                    )
                    aggregator.complete_tool_call(index)
                elif part.text and part.thought:
                    aggregator.add_reasoning(part.text)
                elif part.text:
                    events.extend(aggregator.add_text(part.text))
            aggregator.set_finish_reason(map_finish_reason(candidate.finish_reason))
        return events

    def _usage(self, um: Any) -> Usage:
        return self.normalize_usage(
            input_tokens=as_int(um.prompt_token_count),
            output_tokens=as_int(um.candidates_token_count),
            total_tokens=as_int(um.total_token_count),
            cache_read_input_tokens=as_int(getattr(um, "cached_content_token_count", None)),
            reasoning_tokens=as_int(getattr(um, "thoughts_token_count", None)),
        )

    @staticmethod
    def _parse_parts(parts: List[Any]) -> List[ContentBlock]:
        content: List[ContentBlock] = []
        for part in parts:
            if part.function_call:
                fc = part.function_call
                content.append({
                    "type": "tool_use",
                    # Gemini does not always provide call ids
                    "id": fc.id or new_call_id(),
                    "name": fc.name,
                    "input": dict(fc.args or {}),
                })
            elif part.text and part.thought:
                content.append({"type": "reasoning", "text": part.text})
            elif part.text:
                if content and content[-1].get("type") == "text":
                    content[-1]["text"] += part.text
                else:
                    content.append({"type": "text", "text": part.text})
        return content

    async def _convert_messages(
        self,
        messages: List[Message],
    ) -> Tuple[Optional[str], List[types.Content]]:
        """
        Convert messages to Gemini contents.

        Tool results become function_response parts in a user turn; the
        function name is recovered from the tool_use block with the same id.
        """
        system_parts = []
        contents = []
        call_names: Dict[str, str] = {}

        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")

            if role in ("system", "developer"):
                system_parts.append(extract_text(content))
                continue

            gemini_role = "model" if role == "assistant" else "user"

            parts = []
            for block in normalize_content(content):
                part = await self._convert_block(block, call_names)
                if part is not None:
                    parts.append(part)

            if parts:
                contents.append(types.Content(role=gemini_role, parts=parts))

        system_instruction = "\n\n".join(p for p in system_parts if p) or None
        return system_instruction, contents

    @staticmethod
    async def _convert_block(block: ContentBlock, call_names: Dict[str, str]) -> Optional[Dict[str, Any]]:
        match block.get("type"):
            case "text":
                return {"text": block.get("text", "")}
            case "image":
                data, mime_type = await resolve_source_to_base64(block)
                return {"inline_data": {"mime_type": mime_type, "data": base64.b64decode(data)}}
            case "audio" | "video" | "file":
                source = block.get("source", {})
                if source.get("type") == "base64":
                    data, mime_type = await resolve_source_to_base64(block)
                    return {"inline_data": {"mime_type": mime_type, "data": base64.b64decode(data)}}
                if source.get("type") == "url":
                    return {"file_data": {"file_uri": source.get("url", ""), "mime_type": source.get("media_type")}}
                return {"text": unsupported_placeholder(f"{block['type']} ({source.get('type')})")["text"]}
            case "tool_use":
                call_names[block["id"]] = block["name"]
                return {"function_call": {"id": block["id"], "name": block["name"], "args": block.get("input") or {}}}
            case "tool_result":
                call_id = block.get("tool_use_id", "")
                key = "error" if block.get("is_error") else "output"
                return {
                    "function_response": {
                        "id": call_id,
                        "name": call_names.get(call_id, call_id),
                        "response": {key: tool_result_text(block.get("content", ""))},
                    }
                }
            case "reasoning":
                return None
            case other:
                return {"text": unsupported_placeholder(other)["text"]}

    @staticmethod
    def _convert_tools(tools: List[Dict[str, Any]]) -> List[types.Tool]:
        """
        Convert OpenAI-format tools to Gemini function declarations.

        The JSON Schema is passed through untouched as `parameters_json_schema`.
        """
        function_declarations = []
        for tool in tools:
            func = tool.get("function", {})
            function_declarations.append(types.FunctionDeclaration(
                name=func.get("name", ""),
                description=func.get("description", ""),
                parameters_json_schema=func.get("parameters") or {"type": "object", "properties": {}},
            ))
        return [types.Tool(function_declarations=function_declarations)]

    @staticmethod
    def _convert_tool_choice(tool_choice: Any) -> Optional[types.ToolConfig]:
        if tool_choice is None:
            return None
        if isinstance(tool_choice, dict):
            name = tool_choice.get("function", {}).get("name") or tool_choice.get("name")
            mode, allowed = "ANY", [name]
        elif tool_choice in TOOL_MODES:
            mode, allowed = TOOL_MODES[tool_choice], None
        else:
            mode, allowed = "ANY", [tool_choice]
        return types.ToolConfig(
            function_calling_config=types.FunctionCallingConfig(mode=mode, allowed_function_names=allowed)
        )

    async def get_models(self) -> List[str]:
        """
        Get list of models that support generateContent.
        """
        if not self.client:
            return []
        names = []
        with self._vendor_errors():
            async for m in await self.client.aio.models.list():
                actions = getattr(m, "supported_actions", None)
                if not actions or "generateContent" in actions:
                    names.append(m.name)
        return names

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aio.aclose()
