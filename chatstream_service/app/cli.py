"""
Replay a recorded model reply through the streaming pipeline.
"""
import asyncio
import sys
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from chatstream_service.core.config import deep_merge, load_settings, section
from chatstream_service.core.factory import ServiceFactory
from chatstream_service.core.interfaces import ChunkSource
from chatstream_service.core.logging import configure_logging, logger
from chatstream_service.core.types import (
    ContentToken,
    StreamEvent,
    ThinkingEnd,
    ThinkingStart,
    ThinkingToken,
    ToolCall,
)
from chatstream_service.protocol.orchestration.orchestrator import ReplyStream, orchestrate
from chatstream_service.providers.replay.provider import ReplayProvider

console = Console()
app = typer.Typer(
    name="chatstream",
    help="Replay recorded model replies through the chatstream parser.",
    add_completion=False,
)


def _read_input(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    p = Path(path)
    if not p.is_file():
        console.print(f"[bold red]Error:[/bold red] no such file: {path}")
        raise typer.Exit(1)
    return p.read_text(encoding="utf-8")


def _render(evt: StreamEvent, show_thinking: bool) -> None:
    if isinstance(evt, ContentToken):
        console.print(evt.text, end="", markup=False, highlight=False)
    elif isinstance(evt, ThinkingStart):
        if show_thinking:
            console.print("[dim]<thinking>[/dim]", end="")
    elif isinstance(evt, ThinkingToken):
        if show_thinking:
            console.print(evt.text, style="dim italic", end="", markup=False, highlight=False)
    elif isinstance(evt, ThinkingEnd):
        if show_thinking:
            console.print("[dim]</thinking>[/dim]")
    elif isinstance(evt, ToolCall):
        console.print()
        console.print(
            Panel(
                f"[bold]{escape(evt.server)}[/bold].[bold]{escape(evt.tool)}[/bold]\n{escape(str(evt.arguments or {}))}",
                title="tool call",
                border_style="cyan",
            )
        )


def _print_cards(reply: ReplyStream) -> None:
    if not reply.lifecycle.cards:
        return
    table = Table(title="Tool cards")
    table.add_column("id", style="yellow")
    table.add_column("server")
    table.add_column("tool")
    table.add_column("status", style="bold")
    for card in reply.lifecycle.cards.values():
        table.add_row(card.id, card.server, card.tool, card.status.value)
    console.print(table)


async def _render_reply(source: ChunkSource, reply: ReplyStream, show_thinking: bool) -> bool:
    """Render a reply to the console; returns False when the source failed. The reply is always flushed."""
    ok = True
    try:
        async for chunk in source.stream():
            for evt in reply.push(chunk):
                _render(evt, show_thinking)
    except Exception as e:
        logger.exception(f"Replay of message {reply.message_id} failed: {e}")
        ok = False
    finally:
        for evt in reply.flush():
            _render(evt, show_thinking)
        console.print()
    if not ok:
        console.print("[bold red]Error:[/bold red] the reply source failed, output is partial")
    _print_cards(reply)
    return ok


async def _replay(source: ChunkSource, reply: ReplyStream, ndjson: bool, show_thinking: bool) -> None:
    ok = True
    if ndjson:
        async for line in orchestrate(source, reply):
            sys.stdout.write(line.decode("utf-8"))
        sys.stdout.flush()
    else:
        ok = await _render_reply(source, reply, show_thinking)
    await reply.drain()
    if not ok:
        raise typer.Exit(1)


@app.command()
def replay(
    path: str = typer.Argument(..., help="File holding the raw model reply ('-' for stdin)."),
    chunk_size: int = typer.Option(8, "--chunk-size", "-c", min=1, help="Chunk size (upper bound when --seed is set)."),
    seed: Optional[int] = typer.Option(None, "--seed", help="Use random chunk sizes from this seed."),
    auto_authorize: bool = typer.Option(False, "--auto-authorize", help="Auto-authorize every server."),
    ndjson: bool = typer.Option(False, "--ndjson", help="Print NDJSON events instead of rendering."),
    show_thinking: bool = typer.Option(False, "--show-thinking", help="Render thinking segments dimmed."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override logging.level from config."),
):
    """Stream a recorded reply through tokenizer, valve and lifecycle manager."""
    cfg = load_settings()
    level = log_level or section(cfg, "logging").get("level", "WARNING")
    configure_logging(level, RichHandler(console=Console(stderr=True), show_path=False))

    text = _read_input(path)
    if auto_authorize:
        cfg = deep_merge(cfg, {"authorization": {"default_auto_authorize": True, "sensitive_servers": [], "servers": {}}})
    reply = ServiceFactory(cfg).new_reply(str(uuid.uuid4()))
    provider = ReplayProvider(text, chunk_size=chunk_size, seed=seed)

    asyncio.run(_replay(provider, reply, ndjson, show_thinking))


@app.command()
def version():
    """Print the package version."""
    from importlib.metadata import PackageNotFoundError, version as pkg_version

    try:
        console.print(pkg_version("chatstream-service"))
    except PackageNotFoundError:
        console.print("unknown")
