from .base import BaseLLMProvider
from .openai import OpenAIProvider
from .openai_responses import OpenAIResponsesProvider
from .azure import create_azure_provider
from .anthropic import AnthropicProvider
from .gemini import GeminiProvider
from .deepseek import DeepSeekProvider
from ..config import ClientConfig
from ..errors import ProviderNotConfiguredError


def create_provider(config: ClientConfig) -> BaseLLMProvider:
    """
    Select and build the adapter named by `config.provider`.

    Raises:
        ProviderNotConfiguredError: If the provider has no credentials.
    """
    if not config.api_key:
        raise ProviderNotConfiguredError(f"Provider '{config.provider}' has no API key configured")

    match config.provider:
        case "openai":
            cls = OpenAIResponsesProvider if config.api == "responses" else OpenAIProvider
            return cls(
                config.api_key,
                base_url=config.endpoint,
                model=config.model,
                timeout=config.timeout,
                max_retries=config.max_retries,
            )
        case "azure":
            if not config.endpoint:
                raise ProviderNotConfiguredError("Azure OpenAI requires an endpoint")
            return create_azure_provider(
                config.api_key,
                endpoint=config.endpoint,
                model=config.model,
                api_version=config.api_version,
                timeout=config.timeout,
                max_retries=config.max_retries,
            )
        case "anthropic":
            return AnthropicProvider(
                config.api_key,
                model=config.model,
                timeout=config.timeout,
                max_retries=config.max_retries,
            )
        case "google":
            return GeminiProvider(
                config.api_key,
                model=config.model,
                timeout=config.timeout,
                max_retries=config.max_retries,
            )
        case "deepseek":
            kwargs = {"model": config.model}
            if config.endpoint:
                kwargs["base_url"] = config.endpoint
            if config.timeout is not None:
                kwargs["timeout"] = config.timeout
            return DeepSeekProvider(config.api_key, **kwargs)
        case other:
            raise ProviderNotConfiguredError(f"Provider '{other}' not supported")


__all__ = [
    "BaseLLMProvider",
    "OpenAIProvider",
    "OpenAIResponsesProvider",
    "create_azure_provider",
    "AnthropicProvider",
    "GeminiProvider",
    "DeepSeekProvider",
    "create_provider",
]
