import io

import pytest
from rich.console import Console

from unichat.printer import RichPrinter, RichStreamPrinter

from conftest import assistant_response, tool_use


def recording_console():
    return Console(file=io.StringIO(), record=True, width=100, force_terminal=False)


def events_from(*items):
    async def generate():
        for item in items:
            yield item
    return generate()


class TestRichPrinter:
    def test_print_chat(self):
        console = recording_console()
        response = assistant_response([{"type": "text", "text": "Hello **there**"}], usage={"total_tokens": 3})

        returned = RichPrinter(console=console).print_chat(response)

        output = console.export_text()
        assert returned is response
        assert "Hello" in output
        assert "(openai)" in output
        assert "total_tokens" in output

    def test_empty_response(self):
        console = recording_console()

        RichPrinter(console=console, show_metadata=False).print_chat(assistant_response([]))

        assert "(empty response)" in console.export_text()


class TestRichStreamPrinter:
    @pytest.mark.asyncio
    async def test_collects_text_and_final_event(self):
        stop = {**assistant_response([{"type": "text", "text": "Hi there"}]), "event_type": "stop"}
        printer = RichStreamPrinter(console=recording_console())

        final = await printer.print_stream(events_from(
            {"event_type": "start", "provider": "anthropic"},
            {"event_type": "text_delta", "delta": {"type": "text", "text": "Hi "}},
            {"event_type": "text_delta", "delta": {"type": "text", "text": "there"}},
            stop,
        ))

        assert final is stop
        assert printer.get_full_text() == "Hi there"
        assert printer.get_final_event() is stop

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self):
        tool_round = {
            **assistant_response([tool_use("call_1", "lookup")], finish_reason="tool_calls"),
            "event_type": "stop",
        }
        answer = {**assistant_response([{"type": "text", "text": "done"}]), "event_type": "stop", "output_index": 1}
        printer = RichStreamPrinter(console=recording_console())

        final = await printer.print_stream(events_from(
            tool_round,
            {"event_type": "text_delta", "delta": {"type": "text", "text": "done"}},
            answer,
        ))

        assert final is answer
        assert printer.get_full_text() == "done"

    @pytest.mark.asyncio
    async def test_error_event(self):
        console = recording_console()
        printer = RichStreamPrinter(console=console)
        error = {
            "event_type": "error",
            "delta": {"type": "error", "code": "rate_limit_exceeded", "message": "Slow down"},
        }

        final = await printer.print_stream(events_from(error))

        assert final is error
        assert "rate_limit_exceeded" in console.export_text()
