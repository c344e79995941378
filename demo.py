"""
Demo: tool calling, streaming and threads with unichat

Credentials come from the environment or a .env file
(OPENAI_API_KEY, ANTHROPIC_API_KEY, GOOGLE_API_KEY, DEEPSEEK_API_KEY, ...).
"""

import asyncio
import logging
import sys

from rich.console import Console

from unichat import (
    ClientConfig, RichPrinter, RichStreamPrinter, Thread, UnifiedChatClient, UnifiedError, define_tool,
)

console = Console()


# =============================================================================
# Local tools (mock implementations)
# =============================================================================

def get_weather(args: dict) -> dict:
    """Mock weather lookup."""
    weather_data = {
        "Paris": {"temp": 18, "condition": "Partly cloudy"},
        "London": {"temp": 14, "condition": "Rainy"},
        "Tokyo": {"temp": 22, "condition": "Sunny"},
    }
    data = weather_data.get(args["location"], {"temp": 15, "condition": "Unknown"})
    temp = data["temp"]
    if args.get("unit") == "fahrenheit":
        temp = int(temp * 9 / 5 + 32)
    return {"location": args["location"], "temperature": temp, "unit": args.get("unit"), "condition": data["condition"]}


async def percentage(args: dict) -> dict:
    return {"result": args["value"] * args["percent"] / 100}


TOOLS = [
    define_tool(
        "get_weather",
        "Get the current weather for a city",
        {
            "location": {"type": "string", "description": "City name, e.g. 'Paris'"},
            "unit": {"type": "string", "enum": ["celsius", "fahrenheit"]},
        },
        get_weather,
        required=["location"],
        args={"unit": "celsius"},
    ),
    define_tool(
        "percentage",
        "Compute a percentage of a value",
        {"value": {"type": "number"}, "percent": {"type": "number"}},
        percentage,
        required=["value", "percent"],
    ),
]

# Uncomment to expose an MCP server's tools as well
MCP_SERVERS = [
    # {
    #     "name": "fs",
    #     "transport": "stdio",
    #     "command": "npx",
    #     "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
    #     "allowed_tools": ["list_directory"],
    # },
]


async def demo_chat(client: UnifiedChatClient):
    console.print("[bold cyan]=== Tool calling (chat) ===")
    response = await client.chat({
        "messages": [{"role": "user", "content": "What's 15% of 200, and what's the weather in Tokyo?"}],
    })
    RichPrinter(title="Tool Calling").print_chat(response)


async def demo_thread_stream(client: UnifiedChatClient):
    console.print("[bold cyan]\n=== Streaming conversation (thread) ===")
    thread = Thread()
    printer = RichStreamPrinter(title="Assistant", border_style="cyan")
    system = {"role": "system", "content": "You are a concise assistant. Answer in markdown."}

    for question in ("Is it warmer in Paris or London right now?", "And in fahrenheit?"):
        console.print(f"[bold]User:[/bold] {question}")
        await printer.print_stream(client.stream(
            {"messages": [system, {"role": "user", "content": question}]},
            thread=thread,
        ))

    console.print(f"[dim]{thread!r}[/dim]")


async def main():
    logging.basicConfig(level=logging.WARNING)
    provider = sys.argv[1] if len(sys.argv) > 1 else "openai"
    model = sys.argv[2] if len(sys.argv) > 2 else "gpt-4o-mini"

    config = ClientConfig.from_env(provider, model=model, tools=TOOLS, mcp_servers=MCP_SERVERS)
    async with UnifiedChatClient(config) as client:
        try:
            await demo_chat(client)
            await demo_thread_stream(client)
        except UnifiedError as err:
            console.print(f"[bold red]{err.provider} error [{err.code}] ({err.type}): {err.message}")


if __name__ == "__main__":
    asyncio.run(main())
