"""Command line interface for open-channel."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import NoReturn

import click
import yaml
from rich.console import Console
from rich.table import Table

from open_channel.cancel import CancelToken
from open_channel.channel.accumulator import StreamAccumulator
from open_channel.channel.dispatcher import ChannelDispatcher
from open_channel.channel.stream import ChunkStream
from open_channel.config import ChannelStore, load_config
from open_channel.errors import ChannelError, ErrorType
from open_channel.tools import ToolCatalog
from open_channel.types import (
    Content,
    GenerateRequest,
    ModelInfo,
    RetryEventType,
    RetryStatus,
    StreamChunk,
    TextPart,
)

console = Console()


def _print_retry(status: RetryStatus) -> None:
    if status.type is RetryEventType.RETRYING:
        console.print(
            f"[yellow]Request failed ({status.error}); retry {status.attempt}/"
            f"{status.max_attempts} in {status.next_retry_in:g}s[/yellow]"
        )
    elif status.type is RetryEventType.RETRY_SUCCESS:
        console.print(f"[green]Succeeded on attempt {status.attempt}[/green]")
    else:
        console.print(
            f"[red]Giving up after {status.attempt} attempts: {status.error}[/red]"
        )


def _print_part(part: object) -> None:
    if isinstance(part, TextPart):
        console.print(
            part.text, end="", style="dim" if part.thought else None,
            markup=False, highlight=False,
        )


def _print_summary(content: Content) -> None:
    for fc in content.function_calls:
        console.print(
            f"[bold cyan]tool call[/bold cyan] {fc.name} "
            f"{json.dumps(fc.args, ensure_ascii=False)}"
        )
    if content.usage is None:
        return
    table = Table(title="Usage", show_header=False)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in content.usage.to_dict().items():
        if isinstance(value, int):
            table.add_row(key, str(value))
    if content.response_duration_ms is not None:
        table.add_row("responseDuration", f"{content.response_duration_ms:.0f} ms")
    if content.thinking_duration_ms is not None:
        table.add_row("thinkingDuration", f"{content.thinking_duration_ms:.0f} ms")
    console.print(table)


def _exit_with(error: ChannelError) -> NoReturn:
    if error.type is ErrorType.CANCELLED_ERROR:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    console.print(f"\n[red]{error.type.value}: {error.message}[/red]")
    if error.details is not None and not isinstance(error.details, BaseException):
        console.print(f"[dim]{json.dumps(error.details, ensure_ascii=False, default=str)[:500]}[/dim]")
    sys.exit(1)


async def _consume_stream(stream: ChunkStream, accumulator: StreamAccumulator) -> Content:
    def print_chunk(chunk: StreamChunk) -> None:
        for part in chunk.delta:
            _print_part(part)

    def print_restart(attempt: int) -> None:
        console.print(f"\n[yellow]Stream restarted (attempt {attempt}), discarding partial answer[/yellow]")

    content = await stream.collect(accumulator, on_chunk=print_chunk, on_restart=print_restart)
    console.print()
    return content


async def _run_chat(
    store: ChannelStore,
    catalog: ToolCatalog | None,
    request: GenerateRequest,
) -> Content:
    dispatcher = ChannelDispatcher(store, tools=catalog, settings=store.settings)
    dispatcher.on_retry_status(_print_retry)
    cancel = request.cancel or CancelToken()
    request.cancel = cancel

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        result = await dispatcher.generate(request)
        if isinstance(result, ChunkStream):
            return await _consume_stream(result, dispatcher.create_accumulator(request.config_id))
        for part in result.parts:
            _print_part(part)
        console.print()
        return result
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await dispatcher.close()


async def _run_models(store: ChannelStore, config_id: str) -> list[ModelInfo]:
    dispatcher = ChannelDispatcher(store, settings=store.settings)
    try:
        return await dispatcher.list_models(config_id)
    finally:
        await dispatcher.close()


def _load_catalog(path: str | None) -> ToolCatalog | None:
    if path is None:
        return None
    with open(path) as f:
        raw = yaml.safe_load(f) or []
    if isinstance(raw, dict):
        raw = raw.get("tools") or []
    return ToolCatalog(raw)


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              type=click.Path(dir_okay=False), help="Path to open_channel.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Talk to any configured LLM channel through one interface."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = load_config(Path(config_path) if config_path else None)


@main.command()
@click.pass_obj
def channels(store: ChannelStore) -> None:
    """List configured channels."""
    if not len(store):
        console.print("[dim]No channels configured.[/dim]")
        return
    table = Table(title="Channels")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Model")
    table.add_column("Stream")
    table.add_column("Tool mode")
    table.add_column("Retry")
    table.add_column("Enabled")
    default_mode = store.settings.get_default_tool_mode()
    for cfg in store.list_configs():
        retry = f"{cfg.retry_count} x {cfg.retry_interval:g}s" if cfg.retry_enabled else "off"
        table.add_row(
            cfg.id,
            cfg.type,
            cfg.model,
            "yes" if cfg.prefer_stream else "no",
            cfg.tool_mode or f"{default_mode} (default)",
            retry,
            "[green]yes[/green]" if cfg.enabled else "[red]no[/red]",
        )
    console.print(table)


@main.command()
@click.argument("config_id")
@click.pass_obj
def models(store: ChannelStore, config_id: str) -> None:
    """List the models channel CONFIG_ID's provider offers."""
    try:
        found = asyncio.run(_run_models(store, config_id))
    except ChannelError as e:
        _exit_with(e)
    if not found:
        console.print(f"[dim]No models reported for {config_id}.[/dim]")
        return
    table = Table(title=f"Models ({config_id})")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Context", justify="right")
    table.add_column("Max output", justify="right")
    table.add_column("Description", overflow="fold")
    for model in found:
        table.add_row(
            model.id,
            model.name or "",
            str(model.context_window or ""),
            str(model.max_output_tokens or ""),
            model.description or "",
        )
    console.print(table)


@main.command()
@click.argument("config_id")
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Override the channel's model")
@click.option("--system", "-s", "system_instruction", default=None, help="System instruction")
@click.option("--tools", "tools_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="YAML file with tool declarations")
@click.option("--no-tools", is_flag=True, help="Do not declare any tools")
@click.option("--no-retry", is_flag=True, help="Single attempt only")
@click.option("--stream/--no-stream", default=None, help="Force streaming on or off")
@click.pass_obj
def chat(
    store: ChannelStore,
    config_id: str,
    prompt: str,
    model: str | None,
    system_instruction: str | None,
    tools_path: str | None,
    no_tools: bool,
    no_retry: bool,
    stream: bool | None,
) -> None:
    """Send PROMPT to channel CONFIG_ID and print the answer."""
    request = GenerateRequest(
        config_id=config_id,
        history=[Content(role="user", parts=[TextPart(text=prompt)])],
        model_override=model,
        skip_tools=no_tools,
        skip_retry=no_retry,
        stream=stream,
        system_instruction=system_instruction,
    )
    try:
        content = asyncio.run(_run_chat(store, _load_catalog(tools_path), request))
    except ChannelError as e:
        _exit_with(e)
    _print_summary(content)


if __name__ == "__main__":
    main()
