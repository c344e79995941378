import pytest
from typing import Any, Dict, List, Optional

from unichat.providers.base import BaseLLMProvider


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for API keys."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test-google")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "azure-test-key")
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://test-resource.openai.azure.com")
    monkeypatch.delenv("UNICHAT_MAX_ITERATIONS", raising=False)


def assistant_response(
    content: List[Dict[str, Any]],
    *,
    finish_reason: Optional[str] = "stop",
    response_id: str = "resp_1",
    usage: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    """Build a UnifiedResponse the way an adapter would."""
    response = {
        "id": response_id,
        "model": "test-model",
        "provider": "openai",
        "message": {"id": response_id, "role": "assistant", "content": content, "created_at": 0},
        "text": "".join(b.get("text", "") for b in content if b.get("type") == "text"),
        "finish_reason": finish_reason,
        "created_at": 0,
    }
    if usage is not None:
        response["usage"] = usage
    return response


def tool_use(call_id: str, name: str, **arguments) -> Dict[str, Any]:
    return {"type": "tool_use", "id": call_id, "name": name, "input": arguments}


class ScriptedProvider(BaseLLMProvider):
    """
    Provider double that replays canned responses and records every request.

    For stream(), each scripted response is replayed as start / text_delta / stop.
    """

    provider_name = "openai"

    def __init__(self, responses: List[Dict[str, Any]], *, supports_continuation: bool = False):
        super().__init__("test-key", model="test-model")
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.supports_continuation = supports_continuation

    async def chat(self, request, *, cancel=None):
        self.requests.append(request)
        return self.responses.pop(0)

    async def stream(self, request, *, cancel=None):
        self.requests.append(request)
        response = self.responses.pop(0)
        base = {k: v for k, v in response.items() if k not in ("message", "text", "usage", "finish_reason")}
        yield {**base, "event_type": "start", "output_index": 0}
        if response.get("error"):
            yield {**base, "event_type": "error", "output_index": 0, "delta": response["error"]}
            return
        if response["text"]:
            yield {
                **base,
                "event_type": "text_delta",
                "output_index": 0,
                "text": response["text"],
                "delta": {"type": "text", "text": response["text"]},
            }
        yield {**response, "event_type": "stop", "output_index": 0}


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def make_response():
    return assistant_response


@pytest.fixture
def make_tool_use():
    return tool_use
