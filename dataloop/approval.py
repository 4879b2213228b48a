"""Human approval of proposed code before anything is executed."""

import asyncio
import logging
import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax

from dataloop.errors import ApprovalError, ApprovalReason
from dataloop.models import ApprovalDecision, CodeBlock

logger = logging.getLogger(__name__)

NO_CHANNEL_NOTICE = (
    "*[Code execution requires user approval - run the code manually to continue]*"
)
REJECTED_NOTICE = "*[Code execution cancelled by user]*"


class ApprovalChannel(Protocol):
    """Asks a human (or a stand-in) whether a round's blocks may run."""

    def __call__(self, blocks: list[CodeBlock]) -> Awaitable[ApprovalDecision]: ...


class ApprovalGate:
    """Suspends a round until its blocks are approved.

    Any outcome other than a plausible approval raises ApprovalError, so a
    caller that gets a decision back may execute it.

    Args:
        channel: Approval channel, or None when no human is reachable.
        min_approval_ms: Approvals faster than this are treated as refused.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        channel: Optional[ApprovalChannel],
        min_approval_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.min_approval_ms = min_approval_ms
        self.clock = clock

    async def request_approval(self, blocks: list[CodeBlock]) -> ApprovalDecision:
        """Ask the channel about *blocks* and vet its answer.

        Returns:
            An approved decision whose ``edited_blocks`` is either None or a
            non-empty replacement list.

        Raises:
            ApprovalError: No channel, rejection, a too-fast answer, or a
                channel failure.
        """
        if self.channel is None:
            raise ApprovalError("No approval channel configured", ApprovalReason.NO_CHANNEL)

        started = self.clock()
        try:
            decision = await self.channel(blocks)
        except ApprovalError:
            raise
        except Exception as e:
            logger.error("Approval channel failed: %s", e)
            raise ApprovalError(
                f"Approval channel failed: {e}", ApprovalReason.CHANNEL_ERROR
            ) from e
        elapsed_ms = (self.clock() - started) * 1000

        if not decision.approved:
            logger.warning("Execution of %d block(s) rejected", len(blocks))
            raise ApprovalError("Execution rejected", ApprovalReason.REJECTED)

        if elapsed_ms < self.min_approval_ms:
            logger.error(
                "Approval resolved in %.1fms (< %dms); refusing to execute",
                elapsed_ms,
                self.min_approval_ms,
            )
            raise ApprovalError(
                f"Approval resolved too quickly ({elapsed_ms:.0f}ms)",
                ApprovalReason.TOO_FAST,
            )

        if not decision.edited_blocks:
            decision.edited_blocks = None
        return decision


# =========================================================================
# Terminal channel
# =========================================================================


def _edit_in_editor(code: str, suffix: str = ".py") -> str:
    """Open *code* in $EDITOR and return the saved text."""
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    with tempfile.NamedTemporaryFile("w", suffix=suffix, delete=False) as f:
        f.write(code)
        path = Path(f.name)
    try:
        subprocess.run([*shlex.split(editor), str(path)], check=False)
        return path.read_text()
    finally:
        path.unlink(missing_ok=True)


class ConsoleApprovalChannel:
    """Shows proposed blocks with rich and asks run / skip / edit."""

    def __init__(
        self,
        console: Optional[Console] = None,
        editor: Callable[[str, str], str] = _edit_in_editor,
    ) -> None:
        self.console = console or Console()
        self.editor = editor

    async def __call__(self, blocks: list[CodeBlock]) -> ApprovalDecision:
        return await asyncio.to_thread(self._ask, blocks)

    def _show(self, blocks: list[CodeBlock]) -> None:
        for i, block in enumerate(blocks, 1):
            lexer = "sql" if block.language == "sql" else "python"
            self.console.print(
                Panel(
                    Syntax(block.code, lexer, line_numbers=True),
                    title=f"Proposed block {i}/{len(blocks)}",
                    border_style="cyan",
                )
            )

    def _ask(self, blocks: list[CodeBlock]) -> ApprovalDecision:
        self._show(blocks)
        answer = Prompt.ask(
            "Execute? [bold]y[/bold]es / [bold]n[/bold]o / [bold]e[/bold]dit",
            choices=["y", "n", "e"],
            default="y",
            console=self.console,
        )
        if answer == "n":
            return ApprovalDecision(approved=False)
        if answer == "y":
            return ApprovalDecision(approved=True)

        edited = []
        for block in blocks:
            suffix = ".sql" if block.language == "sql" else ".py"
            code = self.editor(block.code, suffix).strip()
            if code:
                edited.append(block.with_code(code))
        if not edited:
            return ApprovalDecision(approved=False)
        self._show(edited)
        return ApprovalDecision(approved=True, edited_blocks=edited)
