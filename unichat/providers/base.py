import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Any, List, AsyncIterator, Callable, Iterator, Optional

from ..errors import UnifiedError, ValidationError, is_vendor_error, normalize_error
from ..streaming import StreamAggregator
from ..types import ContentBlock, FinishReason, UnifiedRequest, UnifiedResponse, UnifiedStreamEvent, Usage
from ..utils import extract_text, generate_message_id, raise_if_cancelled, validate_chat_request

logger = logging.getLogger(__name__)


class BaseLLMProvider(ABC):
    """
    Abstract base class for provider adapters.

    An adapter turns a Unified Request into one vendor call and the vendor's
    reply (or stream) back into a Unified Response (or Unified Stream Events).
    """

    provider_name: str = "base"
    # Whether the vendor keeps conversation state server-side (previous_response_id)
    supports_continuation: bool = False

    def __init__(self, api_key: Optional[str] = None, *, model: Optional[str] = None):
        self.api_key = api_key
        self.default_model = model

    @abstractmethod
    async def chat(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> UnifiedResponse:
        """
        Send a blocking chat request to the provider.

        Args:
            request (UnifiedRequest): Messages, tools and generation options.
            cancel (asyncio.Event, optional): Cooperative cancellation signal.

        Returns:
            UnifiedResponse: The normalized reply.

        Raises:
            ValidationError: If the request is malformed.
            UnifiedError: If the vendor call fails.
            RequestAborted: If `cancel` is set.
        """

    @abstractmethod
    def stream(
        self,
        request: UnifiedRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[UnifiedStreamEvent]:
        """
        Stream a chat response from the provider.

        Yields:
            UnifiedStreamEvent: start, text_delta..., then stop (or error).
        """

    async def get_models(self) -> List[str]:
        """
        Get list of available models from the provider.
        """
        return []

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def _prepare(self, request: UnifiedRequest) -> str:
        """
        Validate `request` and return the model to use.
        """
        validate_chat_request(request)
        model = request.get("model") or self.default_model
        if not model:
            raise ValidationError(f"No model given for provider '{self.provider_name}'")
        logger.debug(
            "%s request: model=%s, messages=%d, tools=%d",
            self.provider_name, model, len(request["messages"]), len(request.get("tools") or []),
        )
        return model

    @contextmanager
    def _vendor_errors(self) -> Iterator[None]:
        """
        Turn recognized vendor failures raised inside the block into UnifiedError.

        Anything else propagates unchanged.
        """
        try:
            yield
        except Exception as exc:
            if not is_vendor_error(self.provider_name, exc):
                raise
            err = normalize_error(self.provider_name, exc)
            logger.error(
                "%s call failed: code=%s, type=%s, status=%s",
                self.provider_name, err.code, err.type, err.status_code, exc_info=True,
            )
            raise err from exc

    async def _stream_events(
        self,
        aggregator: StreamAggregator,
        chunks: AsyncIterator[Any],
        handle_chunk: Callable[[StreamAggregator, Any], List[UnifiedStreamEvent]],
        cancel: Optional[asyncio.Event],
    ) -> AsyncIterator[UnifiedStreamEvent]:
        """
        Drive a vendor chunk iterator through `handle_chunk`, one chunk at a time.

        A failure before the first event is raised to the caller; a failure
        after it is reported as an `error` event that ends the stream.
        """
        try:
            with self._vendor_errors():
                async for chunk in chunks:
                    raise_if_cancelled(cancel)
                    for event in handle_chunk(aggregator, chunk):
                        yield event
        except UnifiedError as err:
            if not aggregator.started:
                raise
            for event in aggregator.error(err):
                yield event
            return

        for event in aggregator.finalize():
            yield event

    def _build_response(
        self,
        *,
        response_id: Optional[str],
        model: str,
        content: List[ContentBlock],
        finish_reason: FinishReason,
        usage: Optional[Usage],
        raw: Any,
    ) -> UnifiedResponse:
        created_at = int(time.time())
        response: UnifiedResponse = {
            "id": response_id or generate_message_id(),
            "model": model,
            "provider": self.provider_name,  # type: ignore[typeddict-item]
            "message": {
                "id": response_id or generate_message_id(),
                "role": "assistant",
                "content": content,
                "created_at": created_at,
            },
            "text": extract_text(content),
            "finish_reason": finish_reason,
            "created_at": created_at,
            "raw_response": raw,
        }
        if usage:
            response["usage"] = usage
        return response

    @staticmethod
    def normalize_usage(
        *,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        total_tokens: Optional[int] = None,
        cache_creation_input_tokens: Optional[int] = None,
        cache_read_input_tokens: Optional[int] = None,
        reasoning_tokens: Optional[int] = None,
    ) -> Usage:
        """
        Normalize token usage information across providers.

        Calculates the total when the vendor does not supply one and drops
        counters the vendor did not report.

        Args:
            input_tokens (int, optional): Number of prompt tokens.
            output_tokens (int, optional): Number of generated tokens.
            total_tokens (int, optional): Total token count.
            cache_creation_input_tokens (int, optional): Tokens written to a prompt cache.
            cache_read_input_tokens (int, optional): Tokens served from a prompt cache.
            reasoning_tokens (int, optional): Hidden reasoning tokens.

        Returns:
            Usage: Standardized usage dictionary.
        """
        input_tokens = input_tokens or 0
        output_tokens = output_tokens or 0
        if total_tokens is None:
            total_tokens = input_tokens + output_tokens

        usage: Usage = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": total_tokens,
        }
        optional = {
            "cache_creation_input_tokens": cache_creation_input_tokens,
            "cache_read_input_tokens": cache_read_input_tokens,
            "reasoning_tokens": reasoning_tokens,
        }
        usage.update({k: v for k, v in optional.items() if v is not None})  # type: ignore[typeddict-item]
        return usage

    def _log_completion(self, start: float, response: UnifiedResponse) -> None:
        logger.debug(
            "%s chat done: model=%s, finish_reason=%s, latency_ms=%.1f",
            self.provider_name, response["model"], response["finish_reason"],
            (time.perf_counter() - start) * 1000.0,
        )
