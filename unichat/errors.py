"""
Error taxonomy and per-provider error normalization.

Every vendor failure that unichat recognizes is turned into a `UnifiedError`
carrying `{code, message, type, status_code, provider, details}`. The `type`
is derived from the HTTP status alone:

    401 -> authentication
    429 -> rate_limit
    4xx -> invalid_request
    5xx -> server_error
    no status -> api_error

`code` is the vendor's own error code when it supplies one, otherwise
`"<provider>_error"`. Exceptions that match none of the known vendor shapes
(programming errors, cancellation) are not wrapped; adapters let them
propagate unchanged.
"""
from typing import Any, Dict, Optional

import anthropic
import httpx
import openai
from google.genai import errors as genai_errors

from .types import ErrorType


class UnichatError(Exception):
    """Base class for every error raised by unichat itself."""


class UnifiedError(UnichatError):
    """
    A vendor failure normalized to one shape.

    Attributes:
        code (str): Vendor error code, or "<provider>_error".
        message (str): Human readable message.
        type (str): One of api_error, rate_limit, invalid_request,
            authentication, server_error.
        status_code (int, optional): HTTP status, when there was one.
        provider (str): Provider that produced the failure.
        details (Any): The original error object or body.
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        type: ErrorType,
        provider: str,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.type = type
        self.provider = provider
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "status_code": self.status_code,
            "provider": self.provider,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"UnifiedError(provider={self.provider!r}, code={self.code!r}, "
            f"type={self.type!r}, status_code={self.status_code!r})"
        )


class ValidationError(UnichatError, ValueError):
    """A request, message or thread value is malformed."""


class ProviderNotConfiguredError(UnichatError, ValueError):
    """The requested provider is unknown or has no credentials."""


class ToolRegistrationError(UnichatError):
    """Tools could not be merged into one registry (collision, missing handler...)."""


class ToolCallError(UnichatError):
    """A tool call emitted by the model cannot be dispatched at all."""


class RequestAborted(UnichatError):
    """The caller's cancellation signal was set."""


# =============================================================================
# Normalization
# =============================================================================

def classify_status(status_code: Optional[int]) -> ErrorType:
    """
    Map an HTTP status code onto the error taxonomy.

    Args:
        status_code (int, optional): HTTP status of the failed call.

    Returns:
        ErrorType: The taxonomy bucket.
    """
    if status_code is None:
        return "api_error"
    if status_code == 401:
        return "authentication"
    if status_code == 429:
        return "rate_limit"
    if 400 <= status_code < 500:
        return "invalid_request"
    if status_code >= 500:
        return "server_error"
    return "api_error"


def _build(
    provider: str,
    raw: Any,
    *,
    code: Optional[str],
    message: Optional[str],
    status_code: Optional[int],
) -> UnifiedError:
    return UnifiedError(
        code=code or f"{provider}_error",
        message=message or str(raw) or f"{provider} request failed",
        type=classify_status(status_code),
        provider=provider,
        status_code=status_code,
        details=raw,
    )


def _httpx_fields(raw: httpx.HTTPError):
    status_code = None
    code = None
    message = str(raw)
    if isinstance(raw, httpx.HTTPStatusError):
        status_code = raw.response.status_code
        try:
            body = raw.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            code = body["error"].get("code") or body["error"].get("type")
            message = body["error"].get("message") or message
    return code, message, status_code


def normalize_openai_error(raw: Any, provider: str = "openai") -> UnifiedError:
    """
    Normalize a failure raised by the `openai` SDK.

    Also used for Azure OpenAI (pass `provider="azure"`), which shares the SDK.
    """
    code = None
    status_code = None
    message = None
    if isinstance(raw, openai.APIError):
        code = raw.code
        message = raw.message
        if isinstance(raw, openai.APIStatusError):
            status_code = raw.status_code
    elif isinstance(raw, httpx.HTTPError):
        code, message, status_code = _httpx_fields(raw)
    return _build(provider, raw, code=code, message=message, status_code=status_code)


def normalize_anthropic_error(raw: Any, provider: str = "anthropic") -> UnifiedError:
    """
    Normalize a failure raised by the `anthropic` SDK.

    Anthropic reports its error code as `body["error"]["type"]`
    (e.g. "rate_limit_error", "overloaded_error").
    """
    code = None
    status_code = None
    message = None
    if isinstance(raw, anthropic.APIError):
        message = raw.message
        body = raw.body
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            code = body["error"].get("type")
            message = body["error"].get("message") or message
        if isinstance(raw, anthropic.APIStatusError):
            status_code = raw.status_code
    elif isinstance(raw, httpx.HTTPError):
        code, message, status_code = _httpx_fields(raw)
    return _build(provider, raw, code=code, message=message, status_code=status_code)


def normalize_google_error(raw: Any, provider: str = "google") -> UnifiedError:
    """
    Normalize a failure raised by the `google-genai` SDK.

    `APIError.code` is the HTTP status; `APIError.status` is the RPC status
    string (e.g. "RESOURCE_EXHAUSTED"), which is kept as the error code.
    """
    code = None
    status_code = None
    message = None
    if isinstance(raw, genai_errors.APIError):
        status_code = raw.code if isinstance(raw.code, int) else None
        code = raw.status
        message = raw.message
    elif isinstance(raw, httpx.HTTPError):
        code, message, status_code = _httpx_fields(raw)
    return _build(provider, raw, code=code, message=message, status_code=status_code)


def normalize_deepseek_error(raw: Any, provider: str = "deepseek") -> UnifiedError:
    """
    Normalize a DeepSeek failure.

    Accepts either an `httpx` error or the dict the DeepSeek adapter builds
    from a non-2xx reply: `{"status": <int>, "error": {"code", "message"}}`.
    """
    code = None
    status_code = None
    message = None
    if isinstance(raw, dict):
        status_code = raw.get("status")
        error = raw.get("error")
        if isinstance(error, dict):
            code = error.get("code") or error.get("type")
            message = error.get("message")
        elif isinstance(error, str):
            message = error
    elif isinstance(raw, httpx.HTTPError):
        code, message, status_code = _httpx_fields(raw)
    if code is not None:
        code = str(code)
    return _build(provider, raw, code=code, message=message, status_code=status_code)


_NORMALIZERS = {
    "openai": normalize_openai_error,
    "azure": normalize_openai_error,
    "anthropic": normalize_anthropic_error,
    "google": normalize_google_error,
    "deepseek": normalize_deepseek_error,
}

_VENDOR_ERRORS = {
    "openai": (openai.APIError, httpx.HTTPError),
    "azure": (openai.APIError, httpx.HTTPError),
    "anthropic": (anthropic.APIError, httpx.HTTPError),
    "google": (genai_errors.APIError, httpx.HTTPError),
    "deepseek": (httpx.HTTPError,),
}


def normalize_error(provider: str, raw: Any) -> UnifiedError:
    """
    Normalize any raw failure for `provider` into a `UnifiedError`.

    Total: unknown providers and unknown shapes still yield a
    `"<provider>_error"` / `api_error` value.
    """
    if isinstance(raw, UnifiedError):
        return raw
    normalizer = _NORMALIZERS.get(provider)
    if normalizer is None:
        return _build(provider, raw, code=None, message=None, status_code=None)
    return normalizer(raw, provider)


def is_vendor_error(provider: str, exc: BaseException) -> bool:
    """
    Whether `exc` is a recognized vendor failure shape for `provider`.

    Only these are wrapped into `UnifiedError` by the adapters; anything
    else propagates unchanged.
    """
    return isinstance(exc, _VENDOR_ERRORS.get(provider, ()))
