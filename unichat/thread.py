"""
Conversation thread: ordered history plus an optional provider-side
continuation token (`previous_response_id`).
"""
import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .types import Message
from .utils import normalize_content

INSTRUCTION_ROLES = ("system", "developer")


@dataclass
class RequestContext:
    """
    What one model call needs from the thread.

    Attributes:
        messages: Full history followed by the new messages (deduplicated).
        new_messages: Only the new messages (deduplicated), for providers
            that continue from `previous_response_id`.
        previous_response_id: Continuation token, if any.
    """
    messages: List[Message]
    new_messages: List[Message]
    previous_response_id: Optional[str] = None


def _same_instruction(a: Message, b: Message) -> bool:
    return (
        a.get("role") in INSTRUCTION_ROLES
        and a.get("role") == b.get("role")
        and normalize_content(a.get("content")) == normalize_content(b.get("content"))
    )


class Thread:
    """
    Ordered conversation history owned by one chat()/stream() call at a time.

    Example:
        thread = Thread()
        response = await client.chat({"messages": [{"role": "user", "content": "Hi"}]}, thread=thread)
        snapshot = thread.to_dict()          # store it anywhere JSON goes
        thread = Thread.from_dict(snapshot)  # and resume later
    """

    def __init__(
        self,
        previous_response_id: Optional[str] = None,
        history: Optional[List[Message]] = None,
    ):
        self._previous_response_id: Optional[str] = None
        self.previous_response_id = previous_response_id
        self._history: List[Message] = list(history or [])

    @property
    def previous_response_id(self) -> Optional[str]:
        return self._previous_response_id

    @previous_response_id.setter
    def previous_response_id(self, value: Optional[str]) -> None:
        if value is not None and (not isinstance(value, str) or not value.strip()):
            raise ValidationError("previous_response_id must be a non-empty string.")
        self._previous_response_id = value

    def update_previous_response_id(self, value: Optional[str]) -> None:
        self.previous_response_id = value

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    def set_history(self, history: List[Message]) -> None:
        self._history = list(history)

    def append_to_history(self, *messages: Message) -> None:
        self._history.extend(messages)

    def build_request_context(self, new_messages: List[Message]) -> RequestContext:
        """
        Combine stored history with `new_messages` and make it the new history.

        If the history starts with a system (or developer) message and the
        first new message is the same kind with identical text, the new one
        is dropped.
        """
        new_messages = list(new_messages)
        if self._history and new_messages and _same_instruction(self._history[0], new_messages[0]):
            new_messages = new_messages[1:]

        combined = self._history + new_messages
        self._history = list(combined)
        return RequestContext(
            messages=combined,
            new_messages=new_messages,
            previous_response_id=self._previous_response_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_response_id": self._previous_response_id,
            "history": copy.deepcopy(self._history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thread":
        if not isinstance(data, dict):
            raise ValidationError("Thread snapshot must be an object")
        return cls(
            previous_response_id=data.get("previous_response_id"),
            history=copy.deepcopy(data.get("history") or []),
        )

    def __repr__(self) -> str:
        return f"Thread(previous_response_id={self._previous_response_id!r}, messages={len(self._history)})"
