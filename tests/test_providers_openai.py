from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from unichat.errors import ProviderNotConfiguredError, UnifiedError, ValidationError
from unichat.providers.azure import create_azure_provider
from unichat.providers.openai import OpenAIProvider, convert_messages, convert_tool_choice

REQUEST = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}


def completion(content="response", *, tool_calls=None, finish_reason="stop", usage=True):
    return SimpleNamespace(
        id="chatcmpl-1",
        model="gpt-4o-2024-08-06",
        choices=[SimpleNamespace(
            message=SimpleNamespace(content=content, tool_calls=tool_calls),
            finish_reason=finish_reason,
        )],
        usage=SimpleNamespace(
            prompt_tokens=10, completion_tokens=20, total_tokens=30,
            prompt_tokens_details=SimpleNamespace(cached_tokens=4),
            completion_tokens_details=None,
        ) if usage else None,
    )


def chunk(content=None, *, tool_calls=None, finish_reason=None, usage=None):
    choices = [] if content is None and tool_calls is None and finish_reason is None else [
        SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls), finish_reason=finish_reason)
    ]
    return SimpleNamespace(id="chatcmpl-9", model="gpt-4o", choices=choices, usage=usage)


def tool_call_delta(index, *, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


def stream_of(*items):
    async def generate():
        for item in items:
            if isinstance(item, Exception):
                raise item
            yield item
    return generate()


def provider_with(create):
    client = MagicMock()
    client.chat.completions.create = create
    return OpenAIProvider(client=client), client


class TestConvertMessages:
    def test_plain_text(self):
        assert convert_messages([{"role": "user", "content": "hello"}]) == [{"role": "user", "content": "hello"}]

    def test_developer_role_rename(self):
        messages = [{"role": "developer", "content": "rules"}]

        assert convert_messages(messages)[0]["role"] == "developer"
        assert convert_messages(messages, developer_role="system")[0]["role"] == "system"

    def test_tool_round_trip_shapes(self):
        messages = [
            {"role": "assistant", "content": [
                {"type": "text", "text": "Checking."},
                {"type": "tool_use", "id": "call_1", "name": "get_time", "input": {"tz": "UTC"}},
            ]},
            {"role": "tool", "content": [{"type": "tool_result", "tool_use_id": "call_1", "content": "12:00"}]},
        ]

        converted = convert_messages(messages)

        assert converted[0]["content"] == "Checking."
        assert converted[0]["tool_calls"] == [
            {"id": "call_1", "type": "function", "function": {"name": "get_time", "arguments": '{"tz": "UTC"}'}}
        ]
        assert converted[1] == {"role": "tool", "tool_call_id": "call_1", "content": "12:00"}

    def test_image_and_unsupported_blocks(self):
        messages = [{"role": "user", "content": [
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAA"}, "detail": "low"},
            {"type": "video", "source": {"type": "url", "url": "https://x/v.mp4"}},
        ]}]

        [converted] = convert_messages(messages)

        assert converted["content"][0] == {
            "type": "image_url", "image_url": {"url": "data:image/png;base64,AAA", "detail": "low"},
        }
        assert converted["content"][1] == {"type": "text", "text": "[Unsupported content type: video]"}

    @pytest.mark.parametrize(
        "choice, expected",
        [
            ("auto", "auto"),
            ("required", "required"),
            ("get_time", {"type": "function", "function": {"name": "get_time"}}),
        ],
    )
    def test_tool_choice(self, choice, expected):
        assert convert_tool_choice(choice) == expected


class TestOpenAIChat:
    @pytest.mark.asyncio
    @patch("unichat.providers.openai.AsyncOpenAI")
    async def test_client_built_from_api_key(self, mock_openai_cls):
        client_mock = MagicMock()
        client_mock.chat.completions.create = AsyncMock(return_value=completion())
        mock_openai_cls.return_value = client_mock

        provider = OpenAIProvider(api_key="fake-key", timeout=5.0)
        response = await provider.chat(REQUEST)

        mock_openai_cls.assert_called_once_with(api_key="fake-key", base_url=None, timeout=5.0)
        assert response["text"] == "response"
        assert response["provider"] == "openai"
        assert response["message"]["content"] == [{"type": "text", "text": "response"}]
        assert response["finish_reason"] == "stop"
        assert response["usage"] == {
            "input_tokens": 10, "output_tokens": 20, "total_tokens": 30, "cache_read_input_tokens": 4,
        }

    @pytest.mark.asyncio
    async def test_request_mapping(self):
        provider, client = provider_with(AsyncMock(return_value=completion()))
        request = {
            **REQUEST,
            "generation_config": {"temperature": 0.2, "stop_sequences": ["END"], "top_k": 5},
            "tools": [{"type": "function", "function": {"name": "f", "parameters": {}}, "handler": print}],
            "tool_choice": "f",
            "provider_config": {"parallel_tool_calls": False, "base_url": "ignored"},
        }

        await provider.chat(request)

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["stop"] == ["END"]
        assert kwargs["temperature"] == 0.2
        assert "top_k" not in kwargs
        assert kwargs["tools"] == [{"type": "function", "function": {"name": "f", "parameters": {}}}]
        assert kwargs["tool_choice"] == {"type": "function", "function": {"name": "f"}}
        assert kwargs["parallel_tool_calls"] is False
        assert "base_url" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_calls_become_tool_use_blocks(self):
        tool_calls = [
            SimpleNamespace(id="call_1", function=SimpleNamespace(name="get_time", arguments='{"tz": "UTC"}')),
            SimpleNamespace(id="call_2", function=SimpleNamespace(name="get_time", arguments="{oops")),
        ]
        provider, _ = provider_with(AsyncMock(return_value=completion(None, tool_calls=tool_calls, finish_reason="tool_calls")))

        response = await provider.chat(REQUEST)

        assert response["finish_reason"] == "tool_calls"
        assert response["message"]["content"] == [
            {"type": "tool_use", "id": "call_1", "name": "get_time", "input": {"tz": "UTC"}},
            {"type": "tool_use", "id": "call_2", "name": "get_time", "input": {}},
        ]

    @pytest.mark.asyncio
    async def test_vendor_error_is_normalized(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        err = openai.RateLimitError(
            "Slow down", response=httpx.Response(429, request=request), body={"code": "rate_limit_exceeded"}
        )
        provider, _ = provider_with(AsyncMock(side_effect=err))

        with pytest.raises(UnifiedError) as exc_info:
            await provider.chat(REQUEST)

        assert exc_info.value.type == "rate_limit"
        assert exc_info.value.code == "rate_limit_exceeded"
        assert exc_info.value.__cause__ is err

    @pytest.mark.asyncio
    async def test_programming_errors_propagate_raw(self):
        provider, _ = provider_with(AsyncMock(side_effect=KeyError("choices")))

        with pytest.raises(KeyError):
            await provider.chat(REQUEST)

    @pytest.mark.asyncio
    async def test_unconfigured_and_invalid(self):
        with pytest.raises(ProviderNotConfiguredError):
            await OpenAIProvider().chat(REQUEST)
        provider, _ = provider_with(AsyncMock())
        with pytest.raises(ValidationError):
            await provider.chat({"model": "gpt-4o", "messages": []})
        with pytest.raises(ValidationError):
            await provider.chat({"messages": [{"role": "user", "content": "hi"}]})


class TestOpenAIStream:
    @pytest.mark.asyncio
    async def test_text_and_tool_fragments(self):
        chunks = stream_of(
            chunk("Hel"),
            chunk("lo"),
            chunk(tool_calls=[tool_call_delta(0, id="call_1", name="get_time", arguments='{"tz"')]),
            chunk(tool_calls=[tool_call_delta(0, arguments=': "UTC"}')]),
            chunk(finish_reason="tool_calls"),
            chunk(usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4, total_tokens=7)),
        )
        provider, client = provider_with(AsyncMock(return_value=chunks))

        events = [e async for e in provider.stream(REQUEST)]

        assert client.chat.completions.create.call_args.kwargs["stream_options"] == {"include_usage": True}
        assert [e["event_type"] for e in events] == ["start", "text_delta", "text_delta", "stop"]
        stop = events[-1]
        assert stop["text"] == "Hello"
        assert stop["finish_reason"] == "tool_calls"
        assert stop["message"]["content"][1] == {
            "type": "tool_use", "id": "call_1", "name": "get_time", "input": {"tz": "UTC"},
        }
        assert stop["usage"]["total_tokens"] == 7

    @pytest.mark.asyncio
    async def test_error_before_first_chunk_raises(self):
        err = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))
        provider, _ = provider_with(AsyncMock(side_effect=err))

        with pytest.raises(UnifiedError):
            [e async for e in provider.stream(REQUEST)]

    @pytest.mark.asyncio
    async def test_error_mid_stream_becomes_error_event(self):
        err = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))
        provider, _ = provider_with(AsyncMock(return_value=stream_of(chunk("partial"), err)))

        events = [e async for e in provider.stream(REQUEST)]

        assert [e["event_type"] for e in events] == ["start", "text_delta", "error"]
        assert events[-1]["delta"]["err_type"] == "api_error"
        assert events[-1]["text"] == "partial"


@patch("unichat.providers.azure.AsyncAzureOpenAI")
def test_azure_factory(mock_azure_cls):
    provider = create_azure_provider("azure-key", endpoint="https://res.openai.azure.com", model="my-deploy")

    assert provider.provider_name == "azure"
    assert provider.default_model == "my-deploy"
    assert provider.client is mock_azure_cls.return_value
    assert mock_azure_cls.call_args.kwargs["azure_endpoint"] == "https://res.openai.azure.com"
