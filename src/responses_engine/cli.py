"""Command-line interface: stream one prompt through the Responses API."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import httpx
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from responses_engine.config import EngineConfig, load_config
from responses_engine.errors import ModelClientError
from responses_engine.limits.rate_limits import format_window
from responses_engine.llm.client import ResponsesClient
from responses_engine.types import (
    Completed,
    Created,
    OutputItemDone,
    OutputTextDelta,
    Prompt,
    RateLimits,
    ReasoningContentDelta,
    ReasoningSummaryDelta,
    ReasoningSummaryPartAdded,
    ResponseEvent,
    WebSearchCallBegin,
)

console = Console()


class StreamingDisplay:
    """Renders response events to the terminal as they arrive."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False
        self.response_id: str | None = None

    def handle(self, event: ResponseEvent) -> None:
        match event:
            case OutputTextDelta(delta=delta):
                self._streaming = True
                self.con.print(delta, end="", highlight=False, markup=False)
            case ReasoningSummaryDelta(delta=delta) | ReasoningContentDelta(delta=delta):
                self.con.print(f"[dim italic]{escape(delta)}[/dim italic]", end="", highlight=False)
            case ReasoningSummaryPartAdded():
                self.con.print()
            case WebSearchCallBegin(call_id=call_id):
                self._flush()
                self.con.print(f"[yellow]> web search[/yellow] [dim]{escape(call_id)}[/dim]")
            case OutputItemDone(item=item):
                if item.get("type") in ("function_call", "custom_tool_call"):
                    self._flush()
                    self.con.print(
                        f"[yellow]> {escape(str(item.get('name', '?')))}[/yellow] "
                        f"[dim]{escape(str(item.get('arguments', ''))[:120])}[/dim]"
                    )
            case Completed(response_id=response_id):
                self._flush()
                self.response_id = response_id
            case Created() | RateLimits():
                pass

    def _flush(self) -> None:
        if self._streaming:
            self.con.print()
            self._streaming = False


def usage_table(client: ResponsesClient) -> Table:
    """Token usage and rate-limit summary for the session."""
    table = Table(title="Usage", show_lines=False, border_style="dim")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    info = client.token_usage.get_session_info()
    total = info.total_token_usage
    table.add_row("Input tokens", str(total.input_tokens))
    table.add_row("Cached input tokens", str(total.cached_input_tokens))
    table.add_row("Output tokens", str(total.output_tokens))
    table.add_row("Reasoning tokens", str(total.reasoning_output_tokens))
    table.add_row("Total tokens", str(total.total_tokens))
    if info.model_context_window:
        table.add_row(
            "Context used",
            f"{client.token_usage.get_usage_percentage():.1f}% of {info.model_context_window}",
        )

    summary = client.rate_limits.get_summary()
    snapshot = client.rate_limits.current_snapshot
    if summary.has_limits and snapshot is not None:
        if snapshot.primary is not None:
            table.add_row("Primary limit", format_window(snapshot.primary))
        if snapshot.secondary is not None:
            table.add_row("Secondary limit", format_window(snapshot.secondary))
    return table


async def run_prompt(
    config: EngineConfig,
    text: str,
    con: Console,
    show_usage: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """Send *text* as a single user message and render the response.

    Returns the response id.
    """
    prompt = Prompt(input=[{
        "type": "message",
        "role": "user",
        "content": [{"type": "input_text", "text": text}],
    }])
    display = StreamingDisplay(con)
    async with ResponsesClient.from_config(config, transport=transport) as client:
        stream = await client.stream(prompt)
        async for event in stream:
            display.handle(event)
        if show_usage:
            con.print(usage_table(client))
    return display.response_id


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to responses_engine.yaml (auto-detected from CWD or ~/.config/responses-engine/)")
@click.option("--model", "-m", default=None, help="Model name override")
@click.option("--show-usage", is_flag=True, help="Print token usage and rate limits at the end")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.argument("prompt")
def main(config_path: str | None, model: str | None, show_usage: bool,
         verbose: bool, prompt: str):
    """Stream PROMPT through the OpenAI Responses API."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    config = load_config(config_path)
    if model:
        config.model = model

    try:
        asyncio.run(run_prompt(config, prompt, console, show_usage=show_usage))
    except ModelClientError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        sys.exit(130)


if __name__ == "__main__":
    main()
