from typing import Literal, List, Dict, Any, Union, TypedDict, Optional, Callable, Awaitable

# =============================================================================
# Type Definitions
# =============================================================================

# Supported LLM providers
Provider = Literal["openai", "anthropic", "google", "azure", "deepseek"]

MessageRole = Literal["system", "user", "assistant", "tool", "function", "developer"]

FinishReason = Optional[Literal["stop", "length", "tool_calls", "content_filter"]]

ErrorType = Literal["api_error", "rate_limit", "invalid_request", "authentication", "server_error"]

StreamEventType = Literal["start", "text_delta", "stop", "error"]


# =============================================================================
# Content Blocks
# =============================================================================

class MediaSource(TypedDict, total=False):
    """
    Where the bytes of an image/audio/video/file block come from.

    `type` is "base64" (inline `data` + `media_type`), "url" (remote `url`)
    or, for files only, "file_id" (a vendor-side upload id).
    """
    type: Literal["base64", "url", "file_id"]
    media_type: str
    data: str
    url: str
    file_id: str


class TextBlock(TypedDict, total=False):
    type: Literal["text"]
    text: str


class ImageBlock(TypedDict, total=False):
    type: Literal["image"]
    source: MediaSource
    alt_text: str
    detail: Literal["auto", "low", "high"]  # OpenAI-specific


class AudioBlock(TypedDict, total=False):
    type: Literal["audio"]
    source: MediaSource
    format: str


class VideoBlock(TypedDict, total=False):
    type: Literal["video"]
    source: MediaSource


class FileBlock(TypedDict, total=False):
    type: Literal["file"]
    source: MediaSource
    name: str


class ToolUseBlock(TypedDict):
    """
    A call the model wants executed.
    """
    type: Literal["tool_use"]
    id: str
    name: str
    input: Dict[str, Any]


class ToolResultBlock(TypedDict, total=False):
    """
    The outcome of a tool call, fed back to the model.
    """
    type: Literal["tool_result"]
    tool_use_id: str
    is_error: bool
    content: Union[str, List["ContentBlock"]]


class ReasoningBlock(TypedDict, total=False):
    type: Literal["reasoning"]
    text: str
    signature: str


ContentBlock = Union[
    TextBlock, ImageBlock, AudioBlock, VideoBlock, FileBlock,
    ToolUseBlock, ToolResultBlock, ReasoningBlock,
]
MessageContent = Union[str, List[ContentBlock]]


# =============================================================================
# Messages
# =============================================================================

class Message(TypedDict, total=False):
    """
    Chat message with optional multimodal content and tool support.

    Roles:
    - "system" / "developer": Instructions, kept at the head of a conversation
    - "user": User message
    - "assistant": Model response (may carry tool_use blocks)
    - "tool" / "function": Tool execution results (tool_result blocks)
    """
    id: str
    role: MessageRole
    content: MessageContent
    name: str
    created_at: int
    metadata: Dict[str, Any]


# =============================================================================
# Tool Calling Type Definitions
# =============================================================================

class FunctionParameters(TypedDict, total=False):
    """
    JSON Schema for function parameters.
    """
    type: Literal["object"]
    properties: Dict[str, Any]
    required: List[str]


class FunctionDefinition(TypedDict, total=False):
    name: str
    description: str
    parameters: FunctionParameters


class ToolDefinition(TypedDict):
    """
    Tool definition in OpenAI format.
    """
    type: Literal["function"]
    function: FunctionDefinition


ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class Tool(TypedDict, total=False):
    """
    A tool definition that also owns its handler.

    `args` holds default arguments merged under the ones the model supplies.
    """
    type: Literal["function"]
    function: FunctionDefinition
    handler: ToolHandler
    args: Dict[str, Any]


ToolChoice = Union[Literal["auto", "none", "required"], Dict[str, Any]]


class NormalizedToolCall(TypedDict):
    name: str
    call_id: str
    arguments: Dict[str, Any]


class NormalizedToolResult(TypedDict):
    name: str
    call_id: str
    output: str
    is_error: bool


# =============================================================================
# Requests
# =============================================================================

class GenerationConfig(TypedDict, total=False):
    """
    Superset of sampling options across vendors.

    Adapters rename fields for their vendor and drop the ones it does not support.
    """
    temperature: float
    top_p: float
    top_k: int
    max_tokens: int
    stop_sequences: List[str]
    frequency_penalty: float
    presence_penalty: float
    seed: int
    response_format: Dict[str, Any]


class UnifiedRequest(TypedDict, total=False):
    messages: List[Message]
    model: str
    stream: bool
    tools: List[ToolDefinition]
    tool_choice: ToolChoice
    generation_config: GenerationConfig
    provider_config: Dict[str, Any]
    previous_response_id: str


# =============================================================================
# Responses & Stream Events
# =============================================================================

class Usage(TypedDict, total=False):
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_creation_input_tokens: int
    cache_read_input_tokens: int
    reasoning_tokens: int


class UnifiedResponse(TypedDict, total=False):
    id: str
    model: str
    provider: Provider
    message: Message
    text: str
    usage: Usage
    finish_reason: FinishReason
    created_at: int
    raw_response: Any


class TextDelta(TypedDict):
    type: Literal["text"]
    text: str


class ErrorDelta(TypedDict, total=False):
    type: Literal["error"]
    code: str
    message: str
    err_type: ErrorType
    details: Any


class UnifiedStreamEvent(UnifiedResponse, total=False):
    event_type: StreamEventType
    output_index: int
    delta: Union[TextDelta, ErrorDelta]
