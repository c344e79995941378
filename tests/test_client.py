import os

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from unichat.client import UnifiedChatClient
from unichat.config import ClientConfig
from unichat.errors import ProviderNotConfiguredError, ToolRegistrationError
from unichat.mcp_client import MCPClient
from unichat.providers import (
    AnthropicProvider, DeepSeekProvider, GeminiProvider, OpenAIProvider, OpenAIResponsesProvider,
    create_provider,
)
from unichat.utils import define_tool

from conftest import ScriptedProvider, assistant_response, tool_use


@pytest.fixture
def no_dotenv(tmp_path):
    """Path of an empty dotenv file so a developer's .env does not leak into tests."""
    env_file = tmp_path / ".env"
    env_file.write_text("")
    return str(env_file)


class TestClientConfig:
    def test_from_env(self, mock_env, no_dotenv):
        config = ClientConfig.from_env("anthropic", env_file=no_dotenv, model="claude-sonnet-4-5")

        assert config.api_key == "sk-test-anthropic"
        assert config.model == "claude-sonnet-4-5"
        assert "sk-test" not in repr(config)

    def test_azure_reads_endpoint_and_deployment(self, mock_env, no_dotenv, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-prod")

        config = ClientConfig.from_env("azure", env_file=no_dotenv)

        assert config.endpoint == "https://test-resource.openai.azure.com"
        assert config.model == "gpt-4o-prod"

    def test_dotenv_file_is_loaded(self, monkeypatch, tmp_path):
        monkeypatch.delenv("DEEPSEEK_API_KEY", raising=False)
        monkeypatch.delenv("UNICHAT_MAX_ITERATIONS", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("DEEPSEEK_API_KEY=sk-from-file\nUNICHAT_MAX_ITERATIONS=3\n")

        try:
            config = ClientConfig.from_env("deepseek", env_file=str(env_file))
        finally:
            # load_dotenv writes os.environ directly
            os.environ.pop("DEEPSEEK_API_KEY", None)
            os.environ.pop("UNICHAT_MAX_ITERATIONS", None)

        assert config.api_key == "sk-from-file"
        assert config.max_iterations == 3

    def test_unknown_provider(self):
        with pytest.raises(ProviderNotConfiguredError, match="not supported"):
            ClientConfig(provider="mistral")

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            ClientConfig(provider="openai", max_iterations=0)
        with pytest.raises(ValueError):
            ClientConfig(provider="openai", api="assistants")


class TestCreateProvider:
    @pytest.mark.parametrize(
        "provider, api, expected",
        [
            ("openai", "chat", OpenAIProvider),
            ("openai", "responses", OpenAIResponsesProvider),
            ("anthropic", "chat", AnthropicProvider),
            ("google", "chat", GeminiProvider),
            ("deepseek", "chat", DeepSeekProvider),
        ],
    )
    @patch("unichat.providers.gemini.genai")
    @patch("unichat.providers.anthropic.AsyncAnthropic")
    @patch("unichat.providers.openai.AsyncOpenAI")
    def test_selection(self, mock_openai, mock_anthropic, mock_genai, provider, api, expected):
        adapter = create_provider(ClientConfig(provider=provider, api_key="key", api=api))

        assert type(adapter) is expected

    @patch("unichat.providers.azure.AsyncAzureOpenAI")
    def test_azure(self, mock_azure_cls):
        adapter = create_provider(ClientConfig(provider="azure", api_key="key", endpoint="https://res.openai.azure.com"))

        assert adapter.provider_name == "azure"

    @patch("unichat.providers.gemini.genai")
    def test_google_receives_timeout_and_retries(self, mock_genai):
        create_provider(ClientConfig(provider="google", api_key="key", timeout=5, max_retries=2))

        http_options = mock_genai.Client.call_args.kwargs["http_options"]
        assert http_options.timeout == 5000
        assert http_options.retry_options.attempts == 3

    @patch("unichat.providers.gemini.genai")
    def test_google_without_transport_options(self, mock_genai):
        create_provider(ClientConfig(provider="google", api_key="key"))

        mock_genai.Client.assert_called_once_with(api_key="key", http_options=None)

    def test_azure_requires_endpoint(self):
        with pytest.raises(ProviderNotConfiguredError, match="endpoint"):
            create_provider(ClientConfig(provider="azure", api_key="key"))

    def test_missing_key(self):
        with pytest.raises(ProviderNotConfiguredError, match="no API key"):
            create_provider(ClientConfig(provider="google"))


class TestUnifiedChatClient:
    @pytest.mark.asyncio
    async def test_chat_with_local_tool(self):
        provider = ScriptedProvider([
            assistant_response([tool_use("call_1", "add", a=2, b=3)], finish_reason="tool_calls"),
            assistant_response([{"type": "text", "text": "5"}]),
        ])
        config = ClientConfig(
            provider="openai",
            model="gpt-4o",
            tools=[define_tool("add", "Add numbers", {}, lambda args: args["a"] + args["b"])],
            generation_config={"temperature": 0},
        )
        client = UnifiedChatClient(config, provider=provider)

        response = await client.chat({"messages": [{"role": "user", "content": "2+3?"}]})

        assert response["text"] == "5"
        assert provider.requests[0]["model"] == "gpt-4o"
        assert provider.requests[0]["generation_config"] == {"temperature": 0}
        assert provider.requests[1]["messages"][-1]["content"][0]["content"] == "5"

    @pytest.mark.asyncio
    async def test_request_generation_config_wins(self):
        provider = ScriptedProvider([assistant_response([{"type": "text", "text": "ok"}])])
        client = UnifiedChatClient(
            ClientConfig(provider="openai", generation_config={"temperature": 0, "max_tokens": 10}),
            provider=provider,
        )

        await client.chat({
            "model": "gpt-4o-mini",
            "messages": [{"role": "user", "content": "hi"}],
            "generation_config": {"temperature": 1},
        })

        assert provider.requests[0]["model"] == "gpt-4o-mini"
        assert provider.requests[0]["generation_config"] == {"temperature": 1, "max_tokens": 10}

    @pytest.mark.asyncio
    async def test_mcp_sessions_closed_after_failure(self):
        mcp_client = MagicMock(spec=MCPClient)
        mcp_client.name = "fs"
        mcp_client.allowed_tools = None
        mcp_client.list_tools = AsyncMock(return_value=[
            {"type": "function", "function": {"name": "add", "description": "", "parameters": {}}},
        ])
        config = ClientConfig(
            provider="openai",
            model="gpt-4o",
            tools=[define_tool("add", "Add", {}, lambda args: 0)],
            mcp_servers=[{"name": "fs", "transport": "stdio", "command": "npx"}],
        )
        client = UnifiedChatClient(config, provider=ScriptedProvider([]))

        with patch("unichat.client.connect_mcp_servers", AsyncMock(return_value=[mcp_client])) as connect, \
                patch("unichat.client.close_mcp_clients", AsyncMock()) as close:
            with pytest.raises(ToolRegistrationError):
                await client.chat({"messages": [{"role": "user", "content": "hi"}]})

        connect.assert_awaited_once_with(config.mcp_servers)
        close.assert_awaited_once_with([mcp_client])

    @pytest.mark.asyncio
    async def test_stream(self):
        provider = ScriptedProvider([assistant_response([{"type": "text", "text": "streamed"}])])
        client = UnifiedChatClient(ClientConfig(provider="openai", model="gpt-4o"), provider=provider)

        events = [e async for e in client.stream({"messages": [{"role": "user", "content": "hi"}]})]

        assert [e["event_type"] for e in events] == ["start", "text_delta", "stop"]
        assert events[-1]["text"] == "streamed"

    @pytest.mark.asyncio
    async def test_list_models_and_close(self):
        provider = MagicMock()
        provider.get_models = AsyncMock(return_value=["model-a", "model-b"])
        provider.aclose = AsyncMock()

        async with UnifiedChatClient(ClientConfig(provider="openai"), provider=provider) as client:
            assert await client.list_models() == ["model-a", "model-b"]

        provider.aclose.assert_awaited_once()

    def test_from_env_without_key(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("")

        with pytest.raises(ProviderNotConfiguredError):
            UnifiedChatClient.from_env("google", env_file=str(env_file))
