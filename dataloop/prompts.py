"""Prompt loading, context injection and follow-up composition.

This module provides:
1. Template lookup from the package-embedded PROMPTS dict
2. Context injection to replace ``{{VARIABLE}}`` placeholders
3. FollowupComposer, which builds the next automatic turn and does the
   follow-up depth bookkeeping
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dataloop.config import GlobalConfig
from dataloop.models import (
    ChartResult,
    ErrorResult,
    ExecutionOutcome,
    TableResult,
    TextResult,
)

_UNDEFINED_NAME = re.compile(r"name '([A-Za-z_]\w*)' is not defined")


def load_prompt(name: str) -> str:
    """Look up a template by name.

    Raises:
        KeyError: If the name is not recognized.
    """
    from dataloop.templates import PROMPTS

    if name not in PROMPTS:
        raise KeyError(
            f"Unknown prompt: {name!r}. Valid prompts: {', '.join(sorted(PROMPTS))}"
        )
    return PROMPTS[name]


def inject_context(template: str, context: dict[str, Any]) -> str:
    """Replace ``{{KEY}}`` placeholders with values from *context*.

    Keys are upper-cased; dicts and lists are rendered as indented JSON and
    None as an empty string.
    """
    result = template

    for key, value in context.items():
        placeholder = "{{" + key.upper() + "}}"
        if isinstance(value, (dict, list)):
            replacement = json.dumps(value, indent=2)
        elif value is None:
            replacement = ""
        else:
            replacement = str(value)
        result = result.replace(placeholder, replacement)

    return result


class FollowupKind(Enum):
    """Kinds of automatic turn the controller can issue."""

    FOLLOWUP = "followup"
    ERROR_FIX = "error_fix"
    CLARIFY = "clarify"
    ANALYZE = "analyze"


@dataclass
class DepthPlan:
    """Whether the next automatic round may start, and at what depth.

    Attributes:
        allowed: False when the depth cap stops the chain.
        next_depth: Depth the round will run at.
        is_last: True when no further automatic round will be allowed.
        forced: True when this is the one error-fix allowed past the cap.
    """

    allowed: bool
    next_depth: int
    is_last: bool = False
    forced: bool = False


def build_system_prompt(dataset_description: str, max_depth: int = 0, depth: int = 0) -> str:
    """System prompt with the dataset summary and the follow-up budget."""
    budget = ""
    if max_depth > 0:
        budget = inject_context(
            load_prompt("depth_budget"),
            {
                "max_depth": max_depth,
                "depth": depth,
                "remaining": max(0, max_depth - depth),
            },
        )
    return inject_context(
        load_prompt("system"),
        {"dataset": dataset_description, "depth_budget": budget},
    )


def render_result(outcome: ExecutionOutcome, max_rows: int = 500) -> str:
    """Render one outcome's value for inclusion in a prompt."""
    result = outcome.result
    if isinstance(result, TableResult):
        shown = result.rows[:max_rows]
        text = "```json\n" + json.dumps(shown, indent=2, default=str) + "\n```"
        remaining = result.total_rows - len(shown)
        if remaining > 0:
            text += f"\n[Truncated - {remaining} more rows not shown]"
        return text
    if isinstance(result, ChartResult):
        return "[Chart created and displayed to the user]"
    if isinstance(result, ErrorResult):
        return f"Error value: {result.message}"
    if isinstance(result, TextResult):
        return result.text
    return "(no value)"


class FollowupComposer:
    """Builds the content of the next automatic model turn."""

    def __init__(self, config: GlobalConfig) -> None:
        self.config = config

    # =========================================================================
    # Depth bookkeeping
    # =========================================================================

    def plan_next(self, depth: int, kind: FollowupKind, forced_used: bool) -> DepthPlan:
        """Decide whether an automatic round may follow one at *depth*.

        Args:
            depth: Automatic rounds already issued in this chain.
            kind: The kind of round about to be issued.
            forced_used: Whether the chain already used its forced error-fix.
        """
        max_depth = self.config.max_followup_depth
        next_depth = depth + 1

        if self.config.depth_unlimited:
            return DepthPlan(allowed=True, next_depth=next_depth)

        if next_depth <= max_depth:
            return DepthPlan(
                allowed=True, next_depth=next_depth, is_last=next_depth >= max_depth
            )

        if kind is FollowupKind.ERROR_FIX and not forced_used:
            return DepthPlan(allowed=True, next_depth=next_depth, is_last=True, forced=True)

        return DepthPlan(allowed=False, next_depth=depth)

    # =========================================================================
    # Turn content
    # =========================================================================

    def _code_section(self, outcomes: list[ExecutionOutcome]) -> str:
        parts = []
        for i, outcome in enumerate(outcomes, 1):
            parts.append(f"Block {i}:\n```{outcome.block.language}\n{outcome.block.code}\n```")
        return "\n\n".join(parts) if parts else "(none)"

    def _results_section(self, outcomes: list[ExecutionOutcome]) -> str:
        parts = []
        for i, outcome in enumerate(outcomes, 1):
            if not outcome.success:
                continue
            parts.append(
                f"Result {i}:\n{render_result(outcome, self.config.prompt_result_rows)}"
            )
        if not parts:
            return "[No results available - code may have failed to execute]"
        return "\n\n".join(parts)

    def followup(
        self, question: str, outcomes: list[ExecutionOutcome], is_last: bool = False
    ) -> str:
        """Results are in: answer from them or write only the missing code."""
        failed = sum(1 for o in outcomes if not o.success)
        failed_note = ""
        if failed and failed < len(outcomes):
            failed_note = inject_context(load_prompt("failed_note"), {"failed_count": failed})
        return inject_context(
            load_prompt("followup"),
            {
                "code_section": self._code_section(outcomes),
                "results_section": self._results_section(outcomes),
                "question": question,
                "failed_note": failed_note,
                "final_note": load_prompt("final_note") if is_last else "",
            },
        )

    def _failed_block(self, index: int, outcome: ExecutionOutcome) -> str:
        code = outcome.block.code
        limit = self.config.max_error_code_chars
        if len(code) > limit:
            code = code[:limit] + "\n# ... truncated"
        error = outcome.error_message or "Unknown error"
        hint = ""
        match = _UNDEFINED_NAME.search(error)
        if match:
            hint = inject_context(load_prompt("undefined_name_hint"), {"name": match.group(1)})
        return inject_context(
            load_prompt("failed_block"),
            {"index": index, "code": code, "error": error, "hint": hint},
        )

    def error_fix(self, outcomes: list[ExecutionOutcome], is_last: bool = False) -> str:
        """Ask for corrected code for the failed blocks only."""
        succeeded = []
        failed = []
        for i, outcome in enumerate(outcomes, 1):
            if outcome.success:
                first_line = outcome.block.code.splitlines()[0] if outcome.block.code else ""
                more = "..." if len(outcome.block.code) > 80 else ""
                succeeded.append(f"Block {i}: {first_line[:80]}{more}")
            else:
                failed.append(self._failed_block(i, outcome))
        return inject_context(
            load_prompt("error_fix"),
            {
                "success_count": len(succeeded),
                "success_section": "\n".join(succeeded) or "None",
                "failed_count": len(failed),
                "failed_section": "\n\n".join(failed),
                "last_fix_note": load_prompt("last_fix_note") if is_last else "",
            },
        )

    def clarify(self, failure_count: int, outcomes: list[ExecutionOutcome]) -> str:
        """Stop fixing and ask the user what they actually want."""
        errors = [
            f"- Block {i}: {o.error_message or 'Unknown error'}"
            for i, o in enumerate(outcomes, 1)
            if not o.success
        ]
        return inject_context(
            load_prompt("clarify"),
            {"failure_count": failure_count, "errors": "\n".join(errors) or "- (none recorded)"},
        )

    def analyze(
        self,
        question: str,
        outcomes: list[ExecutionOutcome],
        is_last: bool = False,
    ) -> str:
        """The proposed code already ran: analyze what it produced."""
        return inject_context(
            load_prompt("analyze"),
            {
                "results_section": self._results_section(outcomes),
                "question": question,
                "final_note": load_prompt("final_note") if is_last else "",
            },
        )

    def compose(
        self,
        kind: FollowupKind,
        question: str,
        outcomes: list[ExecutionOutcome],
        failure_count: int = 0,
        is_last: bool = False,
    ) -> str:
        """Dispatch to the builder for *kind*."""
        if kind is FollowupKind.FOLLOWUP:
            return self.followup(question, outcomes, is_last)
        if kind is FollowupKind.ERROR_FIX:
            return self.error_fix(outcomes, is_last)
        if kind is FollowupKind.CLARIFY:
            return self.clarify(failure_count, outcomes)
        return self.analyze(question, outcomes, is_last)

