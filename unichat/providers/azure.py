from typing import Optional

from openai import AsyncAzureOpenAI

from .openai import OpenAIProvider

DEFAULT_API_VERSION = "2024-10-21"


def create_azure_provider(
    api_key: Optional[str],
    *,
    endpoint: Optional[str],
    model: Optional[str] = None,
    api_version: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
) -> OpenAIProvider:
    """
    Build an adapter for Azure-hosted OpenAI deployments.

    Azure speaks the Chat Completions protocol, so this composes the OpenAI
    adapter with an `AsyncAzureOpenAI` client. The model name is the
    deployment name.

    Args:
        api_key (str, optional): Azure OpenAI key.
        endpoint (str, optional): Resource endpoint, e.g. https://my-res.openai.azure.com.
        model (str, optional): Default deployment name.
        api_version (str, optional): Azure API version.
        timeout (float, optional): Request timeout in seconds.
        max_retries (int, optional): SDK retry count.

    Returns:
        OpenAIProvider: An adapter reporting provider "azure".
    """
    client = None
    if api_key and endpoint:
        client_kwargs = {
            "api_key": api_key,
            "azure_endpoint": endpoint,
            "api_version": api_version or DEFAULT_API_VERSION,
        }
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        if max_retries is not None:
            client_kwargs["max_retries"] = max_retries
        client = AsyncAzureOpenAI(**client_kwargs)

    # Without an endpoint there is no usable client; chat() then reports it as not configured
    return OpenAIProvider(
        api_key if client else None, model=model, client=client, provider_name="azure"
    )
