"""
Streaming aggregator shared by every provider adapter.

Vendors split one logical tool call across many chunks: an id and a name
first, then argument-string fragments keyed by a position index. The
aggregator concatenates those fragments per index, passes text through as
`text_delta` events as soon as it arrives, and produces the final `stop`
event with the assembled assistant message.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import UnifiedError
from .types import (
    ContentBlock, FinishReason, Message, ToolUseBlock, UnifiedStreamEvent, Usage,
)
from .utils import generate_message_id, safe_json_loads

logger = logging.getLogger(__name__)


@dataclass
class ToolCallAccumulator:
    """Partial state of one streamed tool call."""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_text: str = ""
    completed: Optional[ToolUseBlock] = None


@dataclass
class StreamAggregator:
    """
    Per-stream accumulator of text and tool-call fragments.

    Adapters feed it vendor fragments and yield the events it returns. It
    never buffers text: `add_text` returns a `text_delta` immediately.
    """
    provider: str
    model: str
    output_index: int = 0
    response_id: Optional[str] = None
    finish_reason: FinishReason = None
    usage: Optional[Usage] = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    _text_parts: List[str] = field(default_factory=list)
    _reasoning_parts: List[str] = field(default_factory=list)
    _reasoning_signature: Optional[str] = None
    _tool_calls: Dict[int, ToolCallAccumulator] = field(default_factory=dict)
    _started: bool = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def tool_call_count(self) -> int:
        return len(self._tool_calls)

    def _event(self, event_type: str, **extra: Any) -> UnifiedStreamEvent:
        event: UnifiedStreamEvent = {
            "id": self.response_id or "",
            "model": self.model,
            "provider": self.provider,  # type: ignore[typeddict-item]
            "created_at": self.created_at,
            "event_type": event_type,  # type: ignore[typeddict-item]
            "output_index": self.output_index,
        }
        event.update(extra)  # type: ignore[typeddict-item]
        return event

    # -------------------------------------------------------------------------
    # Lifecycle events
    # -------------------------------------------------------------------------

    def start(self, response_id: Optional[str] = None, model: Optional[str] = None) -> List[UnifiedStreamEvent]:
        """
        Return the `start` event the first time it is called, nothing afterwards.
        """
        if response_id:
            self.response_id = response_id
        if model:
            self.model = model
        if self._started:
            return []
        self._started = True
        return [self._event("start")]

    def add_text(self, text: Optional[str]) -> List[UnifiedStreamEvent]:
        if not text:
            return []
        self._text_parts.append(text)
        return [self._event("text_delta", delta={"type": "text", "text": text}, text=text)]

    def add_reasoning(self, text: Optional[str], signature: Optional[str] = None) -> None:
        if text:
            self._reasoning_parts.append(text)
        if signature:
            self._reasoning_signature = signature

    # -------------------------------------------------------------------------
    # Tool call fragments
    # -------------------------------------------------------------------------

    def add_tool_call_delta(
        self,
        index: int,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> None:
        """
        Merge one tool-call fragment into the accumulator at `index`.

        The first non-empty id and name win; argument fragments are
        concatenated in arrival order.
        """
        acc = self._tool_calls.get(index)
        if acc is None:
            acc = self._tool_calls[index] = ToolCallAccumulator(index=index)
        if id and not acc.id:
            acc.id = id
        if name and not acc.name:
            acc.name = name
        if arguments:
            acc.arguments_text += arguments

    def complete_tool_call(self, index: int, arguments: Optional[str] = None) -> Optional[ToolUseBlock]:
        """
        Finalize the tool call at `index` once the vendor signals it is complete.

        `arguments`, when the vendor repeats the full argument string on
        completion, replaces the concatenated fragments. Returns None when no
        fragment was seen for that index.
        """
        acc = self._tool_calls.get(index)
        if acc is None:
            return None
        if arguments and acc.completed is None:
            acc.arguments_text = arguments
        if acc.completed is None:
            acc.completed = {
                "type": "tool_use",
                "id": acc.id or "",
                "name": acc.name or "",
                "input": safe_json_loads(acc.arguments_text),
            }
            if acc.arguments_text and not acc.completed["input"]:
                logger.debug(
                    "Tool call %s arguments did not parse as a JSON object: %r",
                    acc.name, acc.arguments_text,
                )
        return acc.completed

    def tool_calls(self) -> List[ToolUseBlock]:
        """
        All tool calls, finalized best-effort, in index order.
        """
        return [self.complete_tool_call(index) for index in sorted(self._tool_calls)]

    # -------------------------------------------------------------------------
    # Final state
    # -------------------------------------------------------------------------

    def set_finish_reason(self, reason: FinishReason) -> None:
        if reason is not None:
            self.finish_reason = reason

    def set_usage(self, usage: Optional[Usage]) -> None:
        if usage:
            self.usage = usage

    def build_message(self) -> Message:
        content: List[ContentBlock] = []
        if self._reasoning_parts or self._reasoning_signature:
            reasoning: Dict[str, Any] = {"type": "reasoning", "text": "".join(self._reasoning_parts)}
            if self._reasoning_signature:
                reasoning["signature"] = self._reasoning_signature
            content.append(reasoning)  # type: ignore[arg-type]
        if self._text_parts:
            content.append({"type": "text", "text": self.text})
        content.extend(self.tool_calls())
        return {
            "id": self.response_id or generate_message_id(),
            "role": "assistant",
            "content": content,
            "created_at": self.created_at,
        }

    def finalize(self) -> List[UnifiedStreamEvent]:
        """
        Build the closing `stop` event (and the `start` event if nothing came before).
        """
        events = self.start()
        message = self.build_message()
        finish_reason = self.finish_reason
        if finish_reason in (None, "stop") and any(
            block.get("type") == "tool_use" for block in message["content"]
        ):
            finish_reason = "tool_calls"
        stop = self._event(
            "stop",
            message=message,
            text=self.text,
            finish_reason=finish_reason,
        )
        if self.usage:
            stop["usage"] = self.usage
        events.append(stop)
        return events

    def error(self, err: UnifiedError) -> List[UnifiedStreamEvent]:
        """
        Build an `error` event for a failure reported after the stream started.
        """
        return [
            self._event(
                "error",
                delta={
                    "type": "error",
                    "code": err.code,
                    "message": err.message,
                    "err_type": err.type,
                    "details": err.details,
                },
                text=self.text,
            )
        ]
