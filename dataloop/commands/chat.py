"""dataloop chat command.

Interactive REPL over one dataset: streams the model, asks for approval
before running code, shows results and follows up automatically.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from dataloop.approval import ConsoleApprovalChannel
from dataloop.config import GlobalConfig
from dataloop.controller import (
    ChainFinished,
    Controller,
    ControllerEvent,
    Notice,
    ResultsReady,
    RoundCompleted,
    TextChunk,
)
from dataloop.llm import CancellationToken, OpenRouterModel
from dataloop.models import DatasetHandle
from dataloop.sandbox import LocalSandbox
from dataloop.store import ConversationStore, InMemoryConversationStore, JsonlConversationStore
from dataloop.utils import id_generate

__all__ = ["cmd_chat"]

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /clear   forget this chat (transcript, counters, sandbox variables)
  /stats   show controller metrics
  /help    show this help
  /quit    exit
Ctrl-C while the model is working cancels the current chain."""


class EventPrinter:
    """Renders controller events to a rich console."""

    def __init__(self, console: Console) -> None:
        self.console = console
        self._mid_line = False

    def __call__(self, event: ControllerEvent) -> None:
        if isinstance(event, TextChunk):
            self.console.print(event.text, end="", markup=False, highlight=False)
            self._mid_line = not event.text.endswith("\n")
            return

        if self._mid_line:
            self.console.print()
            self._mid_line = False

        if isinstance(event, ResultsReady):
            self.console.print(Panel(Markdown(event.text), title="Execution", border_style="green"))
        elif isinstance(event, Notice):
            self.console.print(f"[yellow]{escape(event.text)}[/yellow]")
        elif isinstance(event, RoundCompleted):
            if event.depth:
                self.console.print(f"[dim]-- automatic follow-up {event.depth} --[/dim]")
        elif isinstance(event, ChainFinished):
            outcome = event.outcome
            self.console.print(
                f"[dim]({outcome.stop_reason.value}, {outcome.rounds} round(s))[/dim]"
            )


def _print_stats(console: Console, controller: Controller) -> None:
    table = Table(title="Metrics", show_header=False)
    for key, value in controller.metrics.to_dict().items():
        table.add_row(key, str(value))
    table.add_row("success_rate", f"{controller.metrics.success_rate:.0%}")
    console.print(table)


async def _run_chain(
    controller: Controller,
    chat_id: str,
    message: str,
    printer: EventPrinter,
) -> None:
    """Send one message; SIGINT cancels the chain at the next boundary."""
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        await controller.send(chat_id, message, cancel=cancel, on_event=printer)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _repl(
    console: Console,
    controller: Controller,
    sandbox: LocalSandbox,
    chat_id: str,
    message: Optional[str],
) -> int:
    printer = EventPrinter(console)

    if message is not None:
        await _run_chain(controller, chat_id, message, printer)
        return 0

    console.print(f"[dim]chat {chat_id} - /help for commands[/dim]")
    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold green]you>[/bold green] ")
        except (EOFError, KeyboardInterrupt):
            console.print()
            return 0

        line = line.strip()
        if not line:
            continue
        if line in ("/quit", "/exit"):
            return 0
        if line == "/help":
            console.print(HELP_TEXT)
            continue
        if line == "/stats":
            _print_stats(console, controller)
            continue
        if line == "/clear":
            controller.clear_chat(chat_id)
            sandbox.reset()
            console.print("[dim]chat cleared[/dim]")
            continue

        await _run_chain(controller, chat_id, line, printer)


def _open_store(gcfg: GlobalConfig, store_dir: Optional[str], no_save: bool) -> ConversationStore:
    if no_save:
        return InMemoryConversationStore()
    root = Path(store_dir).expanduser() if store_dir else gcfg.store_path
    return JsonlConversationStore(root)


def cmd_chat(gcfg: GlobalConfig, args, console: Optional[Console] = None) -> int:
    """Start a chat over ``args.data``.

    Returns:
        Exit code (0 for success, 1 for usage/configuration errors).
    """
    console = console or Console()
    data_path = Path(args.data)
    if not data_path.exists():
        console.print(f"[red]Error:[/red] dataset not found: {data_path}")
        return 1
    if not gcfg.model:
        console.print(
            "[red]Error:[/red] no model configured. Set `model` in "
            "~/.config/dataloop/config.toml, DATALOOP_MODEL, or pass --model."
        )
        return 1

    dataset = DatasetHandle.from_path(data_path, description=getattr(args, "describe", "") or "")
    try:
        sandbox = LocalSandbox(dataset, timeout_s=gcfg.execution_timeout_s)
    except (ValueError, OSError, ImportError) as e:
        console.print(f"[red]Error:[/red] could not load {data_path}: {e}")
        return 1

    store = _open_store(gcfg, getattr(args, "store", None), getattr(args, "no_save", False))
    model = OpenRouterModel(
        gcfg.model,
        api_key=gcfg.api_key(),
        base_url=gcfg.api_base_url,
        timeout=gcfg.request_timeout_s,
    )
    controller = Controller(
        model=model,
        sandbox=sandbox,
        store=store,
        config=gcfg,
        approval_channel=ConsoleApprovalChannel(console),
        dataset_description=sandbox.describe(),
    )
    chat_id = getattr(args, "chat_id", None) or id_generate("c")
    logger.debug("Starting chat %s on %s with %s", chat_id, data_path, gcfg.model)

    async def run() -> int:
        try:
            return await _repl(console, controller, sandbox, chat_id, getattr(args, "message", None))
        finally:
            await model.aclose()

    return asyncio.run(run())
