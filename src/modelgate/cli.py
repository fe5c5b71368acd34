"""Command-line entry point for modelgate."""

from __future__ import annotations

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from modelgate import __version__
from modelgate.config import GatewayConfig, load_config
from modelgate.errors import ConfigError, ProviderError
from modelgate.llm.capabilities import CapabilityRegistry
from modelgate.llm.client import AsyncProviderClient
from modelgate.types import (
    CompletionEnd,
    CompletionRequest,
    CompletionResponse,
    StreamWarning,
    TextDelta,
    ToolCall,
    ToolCallAssembled,
)

console = Console()


def _load(config_path: str | None) -> GatewayConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(2) from e


def _print_tool_call(tc: ToolCall) -> None:
    args = json.dumps(tc.arguments) if tc.arguments else tc.raw_arguments
    console.print(f"\n[cyan]tool call[/cyan] [bold]{tc.name}[/bold] {args}")


def _print_response(response: CompletionResponse) -> None:
    if response.content:
        console.print(response.content)
    for tc in response.tool_calls:
        _print_tool_call(tc)
    console.print(
        f"[dim]finish={response.finish_reason} usage={response.usage} "
        f"latency={response.latency_ms:.0f}ms[/dim]"
    )


async def _run_chat(
    config: GatewayConfig,
    request: CompletionRequest,
) -> None:
    async with AsyncProviderClient.from_config(config) as client:
        if not request.stream:
            _print_response(await client.complete(request))
            return

        async for delta in client.stream(request):
            if isinstance(delta, TextDelta):
                console.print(delta.text, end="", markup=False, highlight=False)
            elif isinstance(delta, ToolCallAssembled):
                _print_tool_call(delta.tool_call)
            elif isinstance(delta, StreamWarning):
                console.print(
                    f"\n[yellow]warning: {delta.malformed} malformed frame(s) "
                    f"(last: {delta.last_reason})[/yellow]"
                )
            elif isinstance(delta, CompletionEnd):
                console.print(
                    f"\n[dim]finish={delta.finish_reason} usage={delta.usage}[/dim]"
                )


@click.group()
@click.version_option(__version__, prog_name="modelgate")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(verbose: bool) -> None:
    """modelgate - capability-aware chat completion adapter."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument("prompt")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to modelgate.yaml (auto-detected from CWD or ~/.config/modelgate/)")
@click.option("--model", "-m", default="gpt-4o", show_default=True,
              help="Model or deployment name")
@click.option("--max-tokens", default=1024, show_default=True, type=int)
@click.option("--system", "system_prompt", default=None, help="System message")
@click.option("--no-stream", is_flag=True, help="Request a complete response")
def chat(prompt: str, config_path: str | None, model: str, max_tokens: int,
         system_prompt: str | None, no_stream: bool) -> None:
    """Send PROMPT to the active profile and print the reply."""
    config = _load(config_path)
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    request = CompletionRequest(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        stream=not no_stream,
    )
    try:
        asyncio.run(_run_chat(config, request))
    except ProviderError as e:
        console.print(Panel(str(e), title=e.record.kind.value, style="red"))
        raise SystemExit(1) from e


@main.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to modelgate.yaml")
def models(config_path: str | None) -> None:
    """List known models and their capabilities."""
    config = _load(config_path)
    registry = CapabilityRegistry(config.models)

    table = Table(title="Model capabilities")
    table.add_column("Model", style="bold")
    table.add_column("Tools")
    table.add_column("Parallel tools")
    table.add_column("Reasoning")
    table.add_column("Token field")
    table.add_column("Streaming")
    table.add_column("Context", justify="right")

    def _yn(flag: bool) -> str:
        return "[green]yes[/green]" if flag else "[dim]no[/dim]"

    for name in registry.known_models():
        try:
            caps = registry.lookup(name)
        except ProviderError as e:
            table.add_row(name, f"[red]{e.record.message}[/red]", "", "", "", "", "")
            continue
        table.add_row(
            name,
            _yn(caps.supports_tools),
            _yn(caps.supports_parallel_tool_calls),
            _yn(caps.is_reasoning_model),
            caps.token_parameter.field_name,
            _yn(caps.supports_streaming),
            f"{caps.max_token_count:,}" if caps.max_token_count else "-",
        )
    console.print(table)


if __name__ == "__main__":
    main()
