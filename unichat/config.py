"""
Client configuration.

`ClientConfig` is the one place credentials and defaults enter unichat.
`ClientConfig.from_env()` reads them from the environment (and a `.env`
file via python-dotenv); nothing below the client looks at the environment.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import dotenv

from .errors import ProviderNotConfiguredError
from .types import GenerationConfig, Provider, Tool

PROVIDERS = ("openai", "anthropic", "google", "azure", "deepseek")

API_KEY_VARS: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "azure": "AZURE_OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

DEFAULT_MAX_ITERATIONS = 10


@dataclass
class ClientConfig:
    """
    Everything needed to build a UnifiedChatClient.

    Attributes:
        provider: Which vendor adapter to use.
        model: Default model (deployment name for Azure).
        api_key: Vendor API key.
        endpoint: Base URL override (required for Azure).
        api_version: Azure OpenAI API version.
        api: "chat" (Chat Completions) or "responses" (OpenAI Responses API).
        tools: Local tools (definitions with handlers).
        mcp_servers: MCP server configurations.
        generation_config: Defaults merged under each request's generation_config.
        max_iterations: Upper bound on model calls per chat()/stream().
        timeout: Request timeout in seconds.
        max_retries: SDK retry count.
    """
    provider: Provider
    model: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)
    endpoint: Optional[str] = None
    api_version: Optional[str] = None
    api: Literal["chat", "responses"] = "chat"
    tools: List[Tool] = field(default_factory=list)
    mcp_servers: List[Dict[str, Any]] = field(default_factory=list)
    generation_config: GenerationConfig = field(default_factory=dict)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    timeout: Optional[float] = None
    max_retries: Optional[int] = None

    def __post_init__(self):
        if self.provider not in PROVIDERS:
            raise ProviderNotConfiguredError(
                f"Provider '{self.provider}' not supported. Expected one of {', '.join(PROVIDERS)}"
            )
        if self.api not in ("chat", "responses"):
            raise ValueError(f"Unknown api '{self.api}', expected 'chat' or 'responses'")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    @classmethod
    def from_env(
        cls,
        provider: Provider,
        *,
        env_file: Optional[str] = None,
        **overrides: Any,
    ) -> "ClientConfig":
        """
        Build a config from environment variables.

        Loads `.env` (or `env_file`) first without overriding variables that
        are already set. Explicit keyword overrides win over the environment.

        Args:
            provider (str): One of openai, anthropic, google, azure, deepseek.
            env_file (str, optional): Path of the dotenv file to load.
            **overrides: Any ClientConfig field.

        Returns:
            ClientConfig: The resolved configuration.
        """
        dotenv.load_dotenv(env_file or dotenv.find_dotenv(usecwd=True))

        values: Dict[str, Any] = {
            "provider": provider,
            "api_key": os.getenv(API_KEY_VARS.get(provider, "")),
        }
        if provider == "azure":
            values["endpoint"] = os.getenv("AZURE_OPENAI_ENDPOINT")
            values["api_version"] = os.getenv("AZURE_OPENAI_API_VERSION")
            values["model"] = os.getenv("AZURE_OPENAI_DEPLOYMENT")
        if os.getenv("UNICHAT_MAX_ITERATIONS"):
            values["max_iterations"] = int(os.environ["UNICHAT_MAX_ITERATIONS"])

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
