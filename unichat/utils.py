import asyncio
import base64
import json
import time
import uuid
import httpx
from pathlib import Path
from typing import Union, List, Optional, Dict, Any, Literal, Tuple

from .errors import RequestAborted, ValidationError
from .types import (
    Message, ContentBlock, TextBlock, ImageBlock, Tool, ToolDefinition,
    ToolHandler, ToolResultBlock, ToolUseBlock, MessageRole,
)

VALID_ROLES = ("system", "user", "assistant", "tool", "function", "developer")

# =============================================================================
# Image Helpers
# =============================================================================

def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
    """
    Encode a local image file to base64 for LLM usage.

    Args:
        image_path (Union[str, Path]): Path to the image file.

    Returns:
        Tuple[str, str]: (base64 data, MIME type such as 'image/png').

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    mime_types = {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".gif": "image/gif",
        ".webp": "image/webp",
        ".bmp": "image/bmp",
    }
    mime_type = mime_types.get(path.suffix.lower(), "image/jpeg")

    with open(path, "rb") as f:
        b64_data = base64.b64encode(f.read()).decode("utf-8")

    return b64_data, mime_type


async def encode_image_url(url: str) -> Tuple[str, str]:
    """
    Fetch an image from a URL and encode it to base64.

    Args:
        url (str): The publicly accessible URL of the image.

    Returns:
        Tuple[str, str]: (base64 data, MIME type from the Content-Type header).

    Raises:
        httpx.HTTPError: If the download fails (timeout, 404, etc.).
    """
    # Some hosts reject requests without a browser-like User-Agent
    headers = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    }

    async with httpx.AsyncClient(timeout=30.0, headers=headers, follow_redirects=True) as http_client:
        response = await http_client.get(url)
        response.raise_for_status()

        content_type = response.headers.get("content-type", "image/jpeg")
        mime_type = content_type.split(";")[0].strip()
        b64_data = base64.b64encode(response.content).decode("utf-8")

    return b64_data, mime_type


async def resolve_image_to_base64(url: str) -> Tuple[str, str]:
    """
    Resolve an image reference (URL or data URI) to base64 data.

    Args:
        url (str): HTTP/HTTPS URL or Data URI (data:image/...).

    Returns:
        Tuple[str, str]: (base64_data, mime_type).
    """
    if url.startswith("data:"):
        # data:[<mediatype>][;base64],<data>
        header, data = url.split(",", 1)
        mime_type = header.split(":")[1].split(";")[0]
        return data, mime_type
    return await encode_image_url(url)


async def resolve_source_to_base64(block: Dict[str, Any]) -> Tuple[str, str]:
    """
    Return (base64 data, media type) for a media block, downloading url sources.
    """
    source = block.get("source", {})
    if source.get("type") == "base64":
        return source.get("data", ""), source.get("media_type", "application/octet-stream")
    return await resolve_image_to_base64(source.get("url", ""))


def source_to_data_uri(source: Dict[str, Any]) -> str:
    """
    Render a media source as something a URL field accepts (remote URL or data URI).
    """
    if source.get("type") == "url":
        return source.get("url", "")
    return f"data:{source.get('media_type', 'application/octet-stream')};base64,{source.get('data', '')}"


# =============================================================================
# Content & Message Helpers
# =============================================================================

def create_image_content(
    source: str,
    *,
    mime_type: Optional[str] = None,
    detail: Optional[Literal["auto", "low", "high"]] = None,
    alt_text: Optional[str] = None,
) -> ImageBlock:
    """
    Create an image content block.

    Args:
        source (str): Can be:
            - A local file path (e.g., "/path/to/image.png")
            - A remote URL (e.g., "https://example.com/image.jpg")
            - A data URI (e.g., "data:image/png;base64,...")
            - Raw base64 data (requires `mime_type` kwarg)
        mime_type (str, optional): Required if `source` is raw base64 data.
        detail (str, optional): Detail level for OpenAI vision ('auto', 'low', 'high').
        alt_text (str, optional): Text description of the image.

    Returns:
        ImageBlock: {"type": "image", "source": {...}}.

    Raises:
        ValueError: If the source type cannot be determined.
    """
    if source.startswith("data:"):
        header, data = source.split(",", 1)
        media_source = {
            "type": "base64",
            "media_type": header.split(":")[1].split(";")[0],
            "data": data,
        }
    elif source.startswith(("http://", "https://")):
        media_source = {"type": "url", "url": source}
    elif mime_type:
        media_source = {"type": "base64", "media_type": mime_type, "data": source}
    elif len(source) < 260 and Path(source).exists():
        b64_data, detected_mime = encode_image_file(source)
        media_source = {"type": "base64", "media_type": detected_mime, "data": b64_data}
    else:
        raise ValueError(
            f"Cannot determine image source type for: {source[:50]}... "
            "Provide mime_type for raw base64 data."
        )

    block: ImageBlock = {"type": "image", "source": media_source}
    if detail:
        block["detail"] = detail
    if alt_text:
        block["alt_text"] = alt_text
    return block


def create_text_content(text: str) -> TextBlock:
    return {"type": "text", "text": text}


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def create_message(
    role: MessageRole,
    content: Union[str, List[Union[str, ContentBlock]]],
    **extra: Any,
) -> Message:
    """
    Create a Message with a fresh id and timestamp.

    String elements within a content list are turned into text blocks.

    Args:
        role (str): The role of the message sender.
        content (Union[str, List]): The content of the message.
        **extra: Optional `name` or `metadata`.

    Returns:
        Message: A dictionary matching the Message type definition.
    """
    if isinstance(content, str):
        body: Union[str, List[ContentBlock]] = content
    else:
        body = [create_text_content(item) if isinstance(item, str) else item for item in content]

    message: Message = {
        "id": generate_message_id(),
        "role": role,
        "content": body,
        "created_at": int(time.time()),
    }
    message.update({k: v for k, v in extra.items() if v is not None})
    return message


def normalize_content(content: Any) -> List[ContentBlock]:
    """
    Return message content as a list of content blocks.
    """
    if content is None:
        return []
    if isinstance(content, str):
        return [create_text_content(content)] if content else []
    return list(content)


def extract_text(content: Any) -> str:
    """
    Concatenate the text blocks of a message content value.
    """
    if isinstance(content, str):
        return content
    return "".join(
        block.get("text", "") for block in content or [] if block.get("type") == "text"
    )


def tool_uses(message: Message) -> List[ToolUseBlock]:
    """
    Return the tool_use blocks of a message, in order.
    """
    return [b for b in normalize_content(message.get("content")) if b.get("type") == "tool_use"]


# =============================================================================
# Tool Calling Helpers
# =============================================================================

def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> ToolDefinition:
    """
    Create a Tool definition in the OpenAI function calling schema.

    Args:
        name (str): The name of the function/tool to be called.
        description (str): A clear description of what the tool does.
        parameters (Dict): JSON Schema `properties` for the expected arguments.
        required (List[str], optional): A list of parameter names that are required.

    Returns:
        ToolDefinition: A dictionary representing the tool definition.
    """
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": parameters,
                "required": required or [],
            },
        },
    }


def define_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    handler: ToolHandler,
    *,
    required: Optional[List[str]] = None,
    args: Optional[Dict[str, Any]] = None,
) -> Tool:
    """
    Create a local Tool: a definition bundled with its handler.

    Args:
        name (str): Tool name.
        description (str): What the tool does.
        parameters (Dict): JSON Schema `properties`.
        handler (Callable): Sync or async function receiving the arguments dict.
        required (List[str], optional): Required parameter names.
        args (Dict, optional): Default arguments, filled in for keys the model omits.

    Returns:
        Tool: The definition plus `handler` (and `args` when given).
    """
    tool: Tool = create_tool(name, description, parameters, required)  # type: ignore[assignment]
    tool["handler"] = handler
    if args:
        tool["args"] = dict(args)
    return tool


def create_tool_result(
    tool_use_id: str,
    content: Union[str, List[ContentBlock]],
    is_error: bool = False,
) -> ToolResultBlock:
    """
    Create a tool_result content block answering the tool_use with `tool_use_id`.
    """
    block: ToolResultBlock = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        block["is_error"] = True
    return block


def create_tool_result_message(results: List[ToolResultBlock]) -> Message:
    """
    Wrap tool_result blocks into a single role='tool' message.
    """
    return create_message("tool", list(results))


def safe_json_loads(text: Optional[str]) -> Dict[str, Any]:
    """
    Parse tool-call arguments, returning {} when they are empty, malformed or not an object.
    """
    if not text:
        return {}
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


# =============================================================================
# Validation
# =============================================================================

def validate_chat_request(request: Any) -> None:
    """
    Check the structure of a Unified Request before it is sent to a vendor.

    Raises:
        ValidationError: With the index of the first offending message.
    """
    if not isinstance(request, dict):
        raise ValidationError("Request must be a valid object")

    messages = request.get("messages")
    if not isinstance(messages, list):
        raise ValidationError("Messages must be a list in the request")
    if not messages:
        raise ValidationError("Messages list cannot be empty")

    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise ValidationError(f"Message at index {index} must be an object")
        role = message.get("role")
        if role not in VALID_ROLES:
            raise ValidationError(
                f"Message at index {index} has invalid role: {role!r}. "
                f"Expected one of {', '.join(VALID_ROLES)}"
            )
        if "content" not in message or message["content"] is None:
            raise ValidationError(f"Message at index {index} must have content")
        content = message["content"]
        if isinstance(content, str):
            if not content.strip():
                raise ValidationError(f"Message at index {index} cannot have empty content")
        elif isinstance(content, list):
            if not content:
                raise ValidationError(f"Message at index {index} cannot have empty content array")
        else:
            raise ValidationError(
                f"Message at index {index} content must be a string or a list of content blocks"
            )


def raise_if_cancelled(cancel: Optional[asyncio.Event]) -> None:
    """
    Raise RequestAborted when the caller's cancellation event is set.
    """
    if cancel is not None and cancel.is_set():
        raise RequestAborted("Request aborted by caller")


def strip_tool_definitions(tools: Optional[List[Dict[str, Any]]]) -> List[ToolDefinition]:
    """
    Reduce tools to their wire definition, dropping handlers and default args.
    """
    return [{"type": "function", "function": dict(tool["function"])} for tool in tools or []]


def tool_result_text(content: Any) -> str:
    """
    Render tool_result content as the plain string most vendors expect.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return extract_text(content) or json.dumps(content, default=str)
    return json.dumps(content, default=str)


def unsupported_placeholder(block_type: Any) -> TextBlock:
    """
    Visible stand-in for a content block the vendor cannot accept.
    """
    return {"type": "text", "text": f"[Unsupported content type: {block_type}]"}


def as_int(value: Any) -> Optional[int]:
    """Keep token counters that are real integers; anything else counts as missing."""
    return value if isinstance(value, int) and not isinstance(value, bool) else None
