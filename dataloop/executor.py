"""Strictly ordered execution of one round's approved blocks."""

import logging
from dataclasses import dataclass, field

from dataloop.errors import ApprovalError, ApprovalReason, ExecutionError, ValidationError
from dataloop.models import (
    ApprovalDecision,
    CodeBlock,
    ExecutionOutcome,
    OutcomeStatus,
    TableResult,
    classify_result,
)
from dataloop.sandbox import Sandbox

logger = logging.getLogger(__name__)

SKIP_PREFIX = "Skipped: previous block failed, this also failed: "


@dataclass
class RoundExecution:
    """Every outcome of a round, in execution order."""

    outcomes: list[ExecutionOutcome] = field(default_factory=list)
    output_text: str = ""

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.SKIPPED)

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and self.succeeded == 0

    @property
    def any_success(self) -> bool:
        return self.succeeded > 0

    def to_records(self) -> list[dict]:
        return [o.to_dict() for o in self.outcomes]


class ExecutionSequencer:
    """Runs approved blocks one at a time against a sandbox.

    Later blocks may depend on state produced by earlier ones, so each block
    is awaited fully before the next starts.  A block that fails right after
    another failure is classified as SKIPPED; any success clears that flag.

    Args:
        sandbox: Where code runs.
        stored_result_rows: Table results are truncated to this many rows.
    """

    def __init__(self, sandbox: Sandbox, stored_result_rows: int = 100) -> None:
        self.sandbox = sandbox
        self.stored_result_rows = stored_result_rows

    async def run(
        self, blocks: list[CodeBlock], decision: ApprovalDecision
    ) -> RoundExecution:
        """Execute *blocks* (or the decision's edits) in order.

        Raises:
            ApprovalError: If *decision* is not an approval.
        """
        if not decision.approved:
            raise ApprovalError("Refusing to execute unapproved blocks", ApprovalReason.REJECTED)

        execution = RoundExecution()
        previous_failed = False
        for block in decision.blocks_for(blocks):
            outcome = await self._run_block(block, previous_failed)
            previous_failed = not outcome.success
            execution.outcomes.append(outcome)
            logger.debug(
                "Block at %d -> %s (%.0fms)",
                block.start_index,
                outcome.status.value,
                outcome.execution_time_ms,
            )

        execution.output_text = "\n\n".join(
            self.sandbox.format_result(o) for o in execution.outcomes
        )
        return execution

    async def _run_block(self, block: CodeBlock, previous_failed: bool) -> ExecutionOutcome:
        """Validate then execute one block.

        Validation failures keep their INVALID/INCOMPLETE status even right
        after a failed block; the message then carries the skip prefix so the
        cascade still reads as a skip.
        """
        prefix = SKIP_PREFIX if previous_failed else ""
        try:
            self._validate(block)
        except ValidationError as e:
            status = OutcomeStatus.INCOMPLETE if e.needs_completion else OutcomeStatus.INVALID
            return ExecutionOutcome(block=block, status=status, error_message=prefix + str(e))
        except Exception as e:
            logger.warning("Sandbox validation raised: %s", e)
            return ExecutionOutcome(
                block=block,
                status=OutcomeStatus.INVALID,
                error_message=f"{prefix}{type(e).__name__}: {e}",
            )

        elapsed = 0.0
        try:
            raw = await self.sandbox.execute_code(block.code, block.language)
            elapsed = raw.execution_time_ms
            if not raw.success:
                raise ExecutionError(raw.error or "Execution failed")
            result = classify_result(raw.result)
        except Exception as e:
            message = str(e) if isinstance(e, ExecutionError) else f"{type(e).__name__}: {e}"
            if previous_failed:
                return ExecutionOutcome(
                    block=block,
                    status=OutcomeStatus.SKIPPED,
                    error_message=SKIP_PREFIX + message,
                    execution_time_ms=elapsed,
                )
            return ExecutionOutcome(
                block=block,
                status=OutcomeStatus.FAILED,
                error_message=message,
                execution_time_ms=elapsed,
            )

        if isinstance(result, TableResult):
            result = result.head(self.stored_result_rows)
        return ExecutionOutcome(
            block=block,
            status=OutcomeStatus.SUCCESS,
            result=result,
            execution_time_ms=elapsed,
        )

    def _validate(self, block: CodeBlock) -> None:
        """Raise ValidationError if the sandbox rejects *block* up front."""
        if not block.is_complete:
            raise ValidationError("Code block is truncated (no closing fence)", needs_completion=True)
        verdict = self.sandbox.validate_code(block.code, block.language)
        if not verdict.valid:
            raise ValidationError(
                verdict.error or "Invalid code", needs_completion=verdict.needs_completion
            )
