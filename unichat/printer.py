"""
Rich console rendering of unified responses and stream events.
"""
import json
from typing import Any, AsyncIterator, Dict, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text

from .types import UnifiedResponse, UnifiedStreamEvent


def _metadata(response: Dict[str, Any]) -> Dict[str, Any]:
    meta = {
        "model": response.get("model"),
        "finish_reason": response.get("finish_reason"),
        "usage": response.get("usage"),
    }
    tool_calls = [
        {"name": block.get("name"), "input": block.get("input")}
        for block in (response.get("message") or {}).get("content") or []
        if isinstance(block, dict) and block.get("type") == "tool_use"
    ]
    if tool_calls:
        meta["tool_calls"] = tool_calls
    return {k: v for k, v in meta.items() if v is not None}


def _metadata_panel(meta: Dict[str, Any]) -> Panel:
    metadata_display = Syntax(
        json.dumps(meta, indent=2, default=str),
        "json",
        theme="lightbulb",
        background_color="default",
    )
    return Panel(metadata_display, title="[bold]Metadata[/bold]", border_style="dim")


class RichStreamPrinter:
    """
    Live display of a unified event stream.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show model, finish reason and usage at the end
        code_theme: Theme for code blocks
        refresh_rate: Refresh rate for Live display
        show_provider_info: Whether to show the provider in the title
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        show_provider_info: bool = True,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.show_provider_info = show_provider_info
        self.border_style = border_style
        self.console = console or Console()
        self._full_text = ""
        self._final_event: Optional[UnifiedStreamEvent] = None
        self._error: Optional[Dict[str, Any]] = None
        self._provider: Optional[str] = None

    async def print_stream(self, event_stream: AsyncIterator[UnifiedStreamEvent]) -> Dict[str, Any]:
        """
        Render events as they arrive.

        Args:
            event_stream: Events from `UnifiedChatClient.stream()`.

        Returns:
            The last `stop` event (or `error` event), or {} if there was none.
        """
        self._full_text = ""
        self._final_event = None
        self._error = None
        self._provider = None

        with Live(Panel("", border_style=self.border_style), refresh_per_second=self.refresh_rate,
                  console=self.console) as live:
            async for event in event_stream:
                self._process_event(event, live)

        return self._final_event or {}

    def _process_event(self, event: UnifiedStreamEvent, live: Live) -> None:
        if self._provider is None and event.get("provider"):
            self._provider = event["provider"]

        match event.get("event_type"):
            case "text_delta":
                self._full_text += event.get("delta", {}).get("text", "")
                self._update_display(live, is_final=False)
            case "stop":
                self._final_event = event
                # A tool round ends with a stop event too; later rounds keep appending
                self._update_display(live, is_final=not _metadata(event).get("tool_calls"))
            case "error":
                self._final_event = event
                self._error = event.get("delta")
                self._update_display(live, is_final=True)

    def _update_display(self, live: Live, is_final: bool) -> None:
        if self._error:
            border = "red"
        elif is_final:
            border = "green"
        else:
            border = self.border_style
        live.update(Panel(self._build_content(is_final), title=self._build_title(is_final),
                          border_style=border, padding=(1, 2)))

    def _build_title(self, is_final: bool) -> str:
        title_parts = ["[bold]Final Response[/bold]" if is_final else f"[bold]{self.title}[/bold]"]
        if self.show_provider_info and self._provider:
            title_parts.append(f"[dim]({self._provider})[/dim]")
        return " ".join(title_parts)

    def _build_content(self, is_final: bool) -> Any:
        parts = []
        if self._full_text.strip():
            parts.append(Markdown(self._full_text, code_theme=self.code_theme,
                                  inline_code_theme=self.inline_code_theme))
        elif not self._error:
            parts.append(Text("(waiting for response...)", style="dim italic"))

        if self._error:
            parts.append(Text(
                f"Error [{self._error.get('code')}]: {self._error.get('message')}", style="bold red",
            ))
        elif is_final and self.show_metadata and self._final_event:
            parts.append(_metadata_panel(_metadata(self._final_event)))

        return Group(*parts)

    def get_full_text(self) -> str:
        return self._full_text

    def get_final_event(self) -> Optional[UnifiedStreamEvent]:
        return self._final_event


class RichPrinter:
    """
    Panel display of a non-streaming unified response.
    """

    def __init__(
        self,
        title: str = "Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        show_provider_info: bool = True,
        border_style: str = "green",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.show_provider_info = show_provider_info
        self.border_style = border_style
        self.console = console or Console()

    def print_chat(self, response: UnifiedResponse) -> UnifiedResponse:
        """
        Display a chat response.

        Args:
            response: Response from `UnifiedChatClient.chat()`.

        Returns:
            The same response, for chaining.
        """
        title_parts = [f"[bold]{self.title}[/bold]"]
        if self.show_provider_info and response.get("provider"):
            title_parts.append(f"[dim]({response['provider']})[/dim]")

        text = response.get("text", "")
        if text.strip():
            body: Any = Markdown(text, code_theme=self.code_theme, inline_code_theme=self.inline_code_theme)
        else:
            body = Text("(empty response)", style="dim italic")
        if self.show_metadata:
            body = Group(body, _metadata_panel(_metadata(response)))

        self.console.print(Panel(body, title=" ".join(title_parts), border_style=self.border_style, padding=(1, 2)))
        return response
