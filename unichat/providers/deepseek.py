"""
Adapter for the DeepSeek chat API.

DeepSeek speaks a Chat Completions dialect over plain HTTPS; this adapter
talks to it directly with `httpx` (JSON request/response, and SSE lines for
streaming) instead of going through the OpenAI SDK, so DeepSeek's own error
bodies and `reasoning_content` field are visible.
"""
import asyncio
import json
import logging
import time
from typing import Dict, Any, List, AsyncIterator, Optional

import httpx

from .base import BaseLLMProvider
from .openai import convert_messages, convert_tool_choice, map_finish_reason
from ..errors import ProviderNotConfiguredError, normalize_deepseek_error
from ..streaming import StreamAggregator
from ..types import ContentBlock, Message, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent, Usage
from ..utils import as_int, raise_if_cancelled, safe_json_loads, strip_tool_definitions, unsupported_placeholder

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.deepseek.com"


def flatten_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """
    Convert unified messages for DeepSeek, which only accepts text content.

    Non-text parts (images, audio, files) degrade to placeholder text and
    developer messages are sent as system messages.
    """
    converted = convert_messages(messages, developer_role="system")
    for msg in converted:
        content = msg.get("content")
        if isinstance(content, list):
            pieces = []
            for part in content:
                if part.get("type") == "text":
                    pieces.append(part.get("text", ""))
                else:
                    pieces.append(unsupported_placeholder(part.get("type"))["text"])
            msg["content"] = "\n".join(pieces)
    return converted


class DeepSeekProvider(BaseLLMProvider):
    """
    Provider for DeepSeek (deepseek-chat, deepseek-reasoner).
    """

    provider_name = "deepseek"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        super().__init__(api_key, model=model)
        self.base_url = base_url.rstrip("/")
        if http_client is not None:
            self.http = http_client
        elif api_key:
            self.http = httpx.AsyncClient(timeout=timeout)
        else:
            self.http = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self.http:
            raise ProviderNotConfiguredError("Deepseek client not configured")
        return self.http

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": flatten_messages(request["messages"]),
        }

        config = request.get("generation_config") or {}
        optional_params = {
            "temperature": config.get("temperature"),
            "max_tokens": config.get("max_tokens"),
            "top_p": config.get("top_p"),
            "frequency_penalty": config.get("frequency_penalty"),
            "presence_penalty": config.get("presence_penalty"),
            "stop": config.get("stop_sequences"),
            "response_format": config.get("response_format"),
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})

        if request.get("tools"):
            body["tools"] = strip_tool_definitions(request["tools"])
            if request.get("tool_choice") is not None:
                body["tool_choice"] = convert_tool_choice(request["tool_choice"])

        body.update({k: v for k, v in (request.get("provider_config") or {}).items() if v is not None})
        return body

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        await resp.aread()
        try:
            payload = resp.json()
        except ValueError:
            payload = {"error": {"message": resp.text}}
        error = payload.get("error") if isinstance(payload, dict) else None
        raise normalize_deepseek_error({"status": resp.status_code, "error": error or resp.text})

    async def chat(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Send a chat request to DeepSeek.

        Non-2xx replies are normalized from DeepSeek's JSON error body.
        """
        model = self._prepare(request)
        http = self._require_client()
        body = self._build_request(request, model)

        raise_if_cancelled(cancel)
        start = time.perf_counter()
        with self._vendor_errors():
            resp = await http.post(f"{self.base_url}/chat/completions", json=body, headers=self._headers)
            await self._raise_for_status(resp)
            data = resp.json()
        raise_if_cancelled(cancel)

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        content: List[ContentBlock] = []
        if message.get("reasoning_content"):
            content.append({"type": "reasoning", "text": message["reasoning_content"]})
        if message.get("content"):
            content.append({"type": "text", "text": message["content"]})
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            content.append({
                "type": "tool_use",
                "id": tc.get("id", ""),
                "name": function.get("name", ""),
                "input": safe_json_loads(function.get("arguments")),
            })

        response = self._build_response(
            response_id=data.get("id"),
            model=data.get("model") or model,
            content=content,
            finish_reason=map_finish_reason(choice.get("finish_reason")),
            usage=self._usage(data["usage"]) if data.get("usage") else None,
            raw=data,
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
        Stream a chat response from DeepSeek over Server-Sent Events.
        """
        model = self._prepare(request)
        http = self._require_client()
        body = self._build_request(request, model)
        body["stream"] = True
        body["stream_options"] = {"include_usage": True}

        async def chunks():
            raise_if_cancelled(cancel)
            async with http.stream(
                "POST", f"{self.base_url}/chat/completions", json=body, headers=self._headers,
            ) as resp:
                await self._raise_for_status(resp)
                async for payload in self._iter_sse(resp):
                    yield payload

        aggregator = StreamAggregator(self.provider_name, model)
        async for event in self._stream_events(aggregator, chunks(), self._handle_chunk, cancel):
            yield event

    @staticmethod
    async def _iter_sse(resp: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield the JSON payload of each `data:` line until `[DONE]`.
        """
        async for line in resp.aiter_lines():
            line = line.strip()
            # Blank separators and ": keep-alive" comments
            if not line or line.startswith(":") or not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if payload == "[DONE]":
                return
            try:
                yield json.loads(payload)
            except ValueError:
                logger.debug("Skipping non-JSON SSE line from deepseek: %r", payload)

    def _handle_chunk(self, aggregator: StreamAggregator, chunk: Dict[str, Any]) -> List[UnifiedStreamEvent]:
        if chunk.get("error"):
            raise normalize_deepseek_error({"status": None, "error": chunk["error"]})

        events = aggregator.start(chunk.get("id"), chunk.get("model"))
        if chunk.get("usage"):
            aggregator.set_usage(self._usage(chunk["usage"]))

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            aggregator.add_reasoning(delta.get("reasoning_content"))
            events.extend(aggregator.add_text(delta.get("content")))
            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                aggregator.add_tool_call_delta(
                    tc.get("index", 0),
                    id=tc.get("id"),
                    name=function.get("name"),
                    arguments=function.get("arguments"),
                )
            if choice.get("finish_reason"):
                aggregator.set_finish_reason(map_finish_reason(choice["finish_reason"]))
        return events

    def _usage(self, usage: Dict[str, Any]) -> Usage:
        details = usage.get("completion_tokens_details") or {}
        return self.normalize_usage(
            input_tokens=as_int(usage.get("prompt_tokens")),
            output_tokens=as_int(usage.get("completion_tokens")),
            total_tokens=as_int(usage.get("total_tokens")),
            cache_read_input_tokens=as_int(usage.get("prompt_cache_hit_tokens")),
            reasoning_tokens=as_int(details.get("reasoning_tokens")),
        )

    async def get_models(self) -> List[str]:
        if not self.http:
            return []
        with self._vendor_errors():
            resp = await self.http.get(f"{self.base_url}/models", headers=self._headers)
            await self._raise_for_status(resp)
        return [m["id"] for m in resp.json().get("data", [])]

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()
