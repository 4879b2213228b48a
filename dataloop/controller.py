"""The recursive execution/follow-up controller.

One user message starts a chain.  Each round of the chain streams a model
response, finds proposed code, gets it approved, runs it and evaluates the
outcomes, then either stops or composes the next automatic turn:

    STREAM_RECEIVED -> DETECT
    DETECT          -> DONE (no blocks) | APPROVAL
    APPROVAL        -> DONE (refused) | DEDUP_CHECK
    DEDUP_CHECK     -> ANALYZE_ONLY (all duplicates) | EXECUTE
    EXECUTE         -> EVALUATE
    EVALUATE        -> CLARIFY | ERROR_FIX_ROUND | FOLLOWUP_ROUND | DONE
    ERROR_FIX_ROUND / FOLLOWUP_ROUND / ANALYZE_ONLY / CLARIFY
                    -> DONE (loop or depth cap) | STREAM_RECEIVED (next round)

Every round appends exactly one assistant turn, whatever happened in it.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import AsyncIterator, Callable, Optional, Union

from dataloop.approval import (
    NO_CHANNEL_NOTICE,
    REJECTED_NOTICE,
    ApprovalChannel,
    ApprovalGate,
)
from dataloop.completion import CompletionHeuristic, FenceBalanceHeuristic
from dataloop.config import GlobalConfig, get_global_config
from dataloop.context import FailureTracker, LoopDetector, Metrics
from dataloop.dedup import DuplicateFilter
from dataloop.errors import (
    ApprovalError,
    ApprovalReason,
    LoopError,
    ModelError,
    RoundCancelled,
)
from dataloop.executor import ExecutionSequencer, RoundExecution
from dataloop.llm import CancellationToken, ModelStream, to_messages
from dataloop.models import ApprovalDecision, CodeBlock, ConversationTurn, ExecutionOutcome
from dataloop.prompts import FollowupComposer, FollowupKind, build_system_prompt
from dataloop.sandbox import Sandbox
from dataloop.state import ChatSession, SessionRegistry
from dataloop.store import ConversationStore
from dataloop.utils import shorten

logger = logging.getLogger(__name__)

LOOP_NOTICE = "*[Follow-up stopped: repetitive pattern detected]*"
DEPTH_NOTICE = "*[Follow-up stopped: reached the limit of {limit} automatic follow-up(s)]*"
ANALYZE_NOTICE = "ℹ️ Code already executed - showing analysis..."
TRUNCATED_NOTICE = "*[Response looks truncated: incomplete code block was not executed]*"
CLARIFY_NOTICE = "*[Several attempts failed in a row: asking for clarification]*"
CANCELLED_NOTICE = "*[Cancelled]*"
MODEL_ERROR_NOTICE = "*[Model error: {error}]*"
INTERNAL_ERROR_NOTICE = "*[Internal error: {error}]*"


class RoundState(Enum):
    """States of one round."""

    STREAM_RECEIVED = auto()
    DETECT = auto()
    APPROVAL = auto()
    DEDUP_CHECK = auto()
    EXECUTE = auto()
    ANALYZE_ONLY = auto()
    EVALUATE = auto()
    ERROR_FIX_ROUND = auto()
    FOLLOWUP_ROUND = auto()
    CLARIFY = auto()
    DONE = auto()


class StopReason(Enum):
    """Why a chain ended."""

    NO_CODE = "no_code"
    COMPLETE = "complete"
    REJECTED = "rejected"
    NO_APPROVAL_CHANNEL = "no_approval_channel"
    LOOP_DETECTED = "loop_detected"
    DEPTH_EXCEEDED = "depth_exceeded"
    CANCELLED = "cancelled"
    MODEL_ERROR = "model_error"
    INTERNAL_ERROR = "internal_error"


_CONTINUATIONS = {
    RoundState.ERROR_FIX_ROUND: FollowupKind.ERROR_FIX,
    RoundState.FOLLOWUP_ROUND: FollowupKind.FOLLOWUP,
    RoundState.ANALYZE_ONLY: FollowupKind.ANALYZE,
    RoundState.CLARIFY: FollowupKind.CLARIFY,
}


# =========================================================================
# Events
# =========================================================================


@dataclass
class ChainOutcome:
    """Terminal value of a chain."""

    chat_id: str
    stop_reason: StopReason
    rounds: int = 0
    depth: int = 0
    error: Optional[str] = None


@dataclass
class TextChunk:
    text: str


@dataclass
class ResultsReady:
    """Formatted execution output for a round, in execution order."""

    text: str
    outcomes: list[ExecutionOutcome] = field(default_factory=list)


@dataclass
class Notice:
    text: str


@dataclass
class RoundCompleted:
    turn: ConversationTurn
    round_index: int
    depth: int


@dataclass
class ChainFinished:
    outcome: ChainOutcome


ControllerEvent = Union[TextChunk, ResultsReady, Notice, RoundCompleted, ChainFinished]


@dataclass
class RoundContext:
    """Mutable record threaded through a chain's rounds.

    Fields above the marker live for the whole chain; the rest are reset
    at the start of each round.
    """

    question: str
    rounds: int = 0
    forced_error_fix_used: bool = False
    chain_fingerprints: set = field(default_factory=set)
    chain_outcomes: list = field(default_factory=list)
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None

    # per round
    automatic: bool = False
    response: str = ""
    blocks: list = field(default_factory=list)
    decision: Optional[ApprovalDecision] = None
    execution: Optional[RoundExecution] = None
    prior_outcomes: list = field(default_factory=list)
    notices: list = field(default_factory=list)
    execution_records: Optional[list] = None
    next_prompt: Optional[str] = None

    def start_round(self, automatic: bool) -> None:
        self.rounds += 1
        self.automatic = automatic
        self.response = ""
        self.blocks = []
        self.decision = None
        self.execution = None
        self.prior_outcomes = []
        self.notices = []
        self.execution_records = None
        self.next_prompt = None

    def stop(self, reason: StopReason, error: Optional[str] = None) -> RoundState:
        self.stop_reason = reason
        self.error = error
        return RoundState.DONE


class Controller:
    """Drives rounds for any number of chats, one chain per chat at a time.

    Args:
        model: Completion stream.
        sandbox: Code execution environment.
        store: Conversation transcript store.
        config: Settings (defaults to the global config).
        approval_channel: Human approval channel; None means execution
            always requires manual action.
        registry: Per-chat session registry (shared between controllers
            that serve the same chats).
        heuristic: Decides whether a finished response was truncated.
        dataset_description: Dataset summary for the system prompt.
        clock: Monotonic clock used by the approval gate.
    """

    def __init__(
        self,
        model: ModelStream,
        sandbox: Sandbox,
        store: ConversationStore,
        config: Optional[GlobalConfig] = None,
        approval_channel: Optional[ApprovalChannel] = None,
        registry: Optional[SessionRegistry] = None,
        heuristic: Optional[CompletionHeuristic] = None,
        dataset_description: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or get_global_config()
        self.model = model
        self.sandbox = sandbox
        self.store = store
        self.registry = registry or SessionRegistry()
        self.heuristic = heuristic or FenceBalanceHeuristic()
        self.dataset_description = dataset_description
        self.metrics = Metrics()

        self.gate = ApprovalGate(approval_channel, self.config.min_approval_ms, clock)
        self.sequencer = ExecutionSequencer(sandbox, self.config.stored_result_rows)
        self.dedup = DuplicateFilter(
            self.config.fingerprint_full_length, self.config.fingerprint_edge_chars
        )
        self.loops = LoopDetector(self.config.loop_history_size, self.config.loop_ceiling)
        self.failures = FailureTracker(self.config.max_consecutive_failures)
        self.composer = FollowupComposer(self.config)

    # =========================================================================
    # Public API
    # =========================================================================

    async def events(
        self,
        chat_id: str,
        message: str,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ControllerEvent]:
        """Run the chain started by *message*, yielding events as they happen.

        The final event is always exactly one ChainFinished.
        """
        cancel = cancel or CancellationToken()
        async with self.registry.lock(chat_id) as session:
            session.start_chain()
            logger.debug("Chat %s: new chain for %r", chat_id, shorten(message, 60))
            self.metrics.chains += 1
            self.store.append(chat_id, ConversationTurn(role="user", content=message))
            ctx = RoundContext(question=message)

            while True:
                ctx.start_round(automatic=session.followup_depth > 0)
                self.metrics.rounds += 1
                logger.debug(
                    "Chat %s round %d (depth %d)", chat_id, ctx.rounds, session.followup_depth
                )

                async for chunk in self._stream_round(chat_id, session, ctx, cancel):
                    yield chunk

                if ctx.stop_reason is None:
                    await self._run_round(chat_id, session, ctx)

                if ctx.execution is not None and ctx.execution.output_text:
                    yield ResultsReady(ctx.execution.output_text, list(ctx.execution.outcomes))
                for text in ctx.notices:
                    yield Notice(text)

                turn = self._finalize_round(chat_id, ctx)
                yield RoundCompleted(turn, ctx.rounds, session.followup_depth)

                if ctx.stop_reason is None and cancel.cancelled:
                    self.metrics.cancellations += 1
                    ctx.stop(StopReason.CANCELLED)
                    yield Notice(CANCELLED_NOTICE)
                if ctx.stop_reason is not None:
                    break

                self.store.append(
                    chat_id,
                    ConversationTurn(role="user", content=ctx.next_prompt or "", automatic=True),
                )
                session.advance_depth()

            outcome = ChainOutcome(
                chat_id=chat_id,
                stop_reason=ctx.stop_reason,
                rounds=ctx.rounds,
                depth=session.followup_depth,
                error=ctx.error,
            )
            self.metrics.last_stop_reason = outcome.stop_reason.value
            logger.debug("Chat %s finished: %s", chat_id, outcome.stop_reason.value)
            yield ChainFinished(outcome)

    async def send(
        self,
        chat_id: str,
        message: str,
        cancel: Optional[CancellationToken] = None,
        on_event: Optional[Callable[[ControllerEvent], None]] = None,
    ) -> ChainOutcome:
        """Run a chain to completion, forwarding events to *on_event*."""
        outcome: Optional[ChainOutcome] = None
        async for event in self.events(chat_id, message, cancel):
            if on_event is not None:
                on_event(event)
            if isinstance(event, ChainFinished):
                outcome = event.outcome
        if outcome is None:
            raise RuntimeError(f"Chain for {chat_id} ended without a ChainFinished event")
        return outcome

    def clear_chat(self, chat_id: str) -> None:
        """Delete the transcript and session state for *chat_id*."""
        self.store.clear(chat_id)
        self.registry.evict(chat_id)

    # =========================================================================
    # Round driver
    # =========================================================================

    async def _stream_round(
        self,
        chat_id: str,
        session: ChatSession,
        ctx: RoundContext,
        cancel: CancellationToken,
    ) -> AsyncIterator[TextChunk]:
        """Stream the model response into ``ctx.response``."""
        system = build_system_prompt(
            self.dataset_description, self.config.max_followup_depth, session.followup_depth
        )
        messages = to_messages(self.store.turns(chat_id), self.config.max_history_turns)
        try:
            cancel.raise_if_cancelled()
            async for chunk in self.model.stream(messages, system=system, cancel=cancel):
                ctx.response += chunk
                yield TextChunk(chunk)
                cancel.raise_if_cancelled()
        except RoundCancelled:
            self.metrics.cancellations += 1
            ctx.notices.append(CANCELLED_NOTICE)
            ctx.stop(StopReason.CANCELLED)
        except ModelError as e:
            logger.warning("Model stream failed for chat %s: %s", chat_id, e)
            self.metrics.model_errors += 1
            ctx.notices.append(MODEL_ERROR_NOTICE.format(error=e))
            ctx.stop(StopReason.MODEL_ERROR, str(e))
        except Exception as e:
            logger.exception("Model stream for chat %s raised", chat_id)
            ctx.notices.append(INTERNAL_ERROR_NOTICE.format(error=e))
            ctx.stop(StopReason.INTERNAL_ERROR, str(e))

    async def _run_round(self, chat_id: str, session: ChatSession, ctx: RoundContext) -> None:
        state = RoundState.STREAM_RECEIVED
        try:
            while True:
                state = await self._advance(state, chat_id, session, ctx)
                logger.debug("Chat %s -> %s", chat_id, state.name)
                if state in (RoundState.DONE, RoundState.STREAM_RECEIVED):
                    return
        except Exception as e:
            logger.exception("Round %d of chat %s failed", ctx.rounds, chat_id)
            ctx.notices.append(INTERNAL_ERROR_NOTICE.format(error=e))
            ctx.stop(StopReason.INTERNAL_ERROR, str(e))

    async def _advance(
        self,
        state: RoundState,
        chat_id: str,
        session: ChatSession,
        ctx: RoundContext,
    ) -> RoundState:
        if state is RoundState.STREAM_RECEIVED:
            return RoundState.DETECT
        if state is RoundState.DETECT:
            return self._detect(ctx)
        if state is RoundState.APPROVAL:
            return await self._approve(ctx)
        if state is RoundState.DEDUP_CHECK:
            return self._dedup_check(chat_id, ctx)
        if state is RoundState.EXECUTE:
            return await self._execute(ctx)
        if state is RoundState.EVALUATE:
            return self._evaluate(session, ctx)
        if state in _CONTINUATIONS:
            return self._continue(_CONTINUATIONS[state], session, ctx)
        raise ValueError(f"No transition from {state}")

    def _finalize_round(self, chat_id: str, ctx: RoundContext) -> ConversationTurn:
        """Append the round's single assistant turn."""
        parts = [ctx.response] if ctx.response else []
        if ctx.execution is not None and ctx.execution.output_text:
            parts.append(ctx.execution.output_text)
        parts.extend(ctx.notices)
        turn = ConversationTurn(
            role="assistant",
            content="\n\n".join(parts),
            execution_results=ctx.execution_records,
        )
        self.store.append(chat_id, turn)
        return turn

    # =========================================================================
    # State handlers
    # =========================================================================

    def _detect(self, ctx: RoundContext) -> RoundState:
        blocks: list[CodeBlock] = self.sandbox.detect_code_blocks(ctx.response)

        if self.heuristic.looks_incomplete(ctx.response):
            withheld = [b for b in blocks if not b.is_complete]
            if withheld:
                logger.warning("Withholding %d truncated block(s)", len(withheld))
                ctx.notices.append(TRUNCATED_NOTICE)
                blocks = [b for b in blocks if b.is_complete]

        blocks = self.dedup.collapse(blocks)
        if not blocks:
            return ctx.stop(StopReason.NO_CODE if ctx.rounds == 1 else StopReason.COMPLETE)

        ctx.blocks = blocks
        # Code was proposed; until something runs, nothing counts as executed
        ctx.execution_records = []
        return RoundState.APPROVAL

    async def _approve(self, ctx: RoundContext) -> RoundState:
        try:
            decision = await self.gate.request_approval(ctx.blocks)
        except ApprovalError as e:
            self.metrics.approvals_refused += 1
            if e.reason is ApprovalReason.NO_CHANNEL:
                ctx.notices.append(NO_CHANNEL_NOTICE)
                return ctx.stop(StopReason.NO_APPROVAL_CHANNEL)
            logger.warning("Approval refused (%s): %s", e.reason.value, e)
            ctx.notices.append(REJECTED_NOTICE)
            return ctx.stop(StopReason.REJECTED)

        ctx.decision = decision
        ctx.blocks = self.dedup.collapse(decision.blocks_for(ctx.blocks))
        return RoundState.DEDUP_CHECK

    def _dedup_check(self, chat_id: str, ctx: RoundContext) -> RoundState:
        turns = self.store.turns(chat_id)
        known = self.dedup.known(ctx.chain_fingerprints, turns)
        if not self.dedup.all_duplicates(ctx.blocks, known):
            return RoundState.EXECUTE

        logger.info("All %d proposed block(s) already ran; analyzing instead", len(ctx.blocks))
        self.metrics.duplicate_skips += 1
        ctx.prior_outcomes = self.dedup.prior_outcomes(ctx.blocks, ctx.chain_outcomes, turns)
        ctx.notices.append(ANALYZE_NOTICE)
        return RoundState.ANALYZE_ONLY

    async def _execute(self, ctx: RoundContext) -> RoundState:
        decision = dataclasses.replace(ctx.decision, edited_blocks=None)
        execution = await self.sequencer.run(ctx.blocks, decision)
        ctx.execution = execution
        ctx.execution_records = execution.to_records()

        self.metrics.blocks_executed += len(execution.outcomes)
        self.metrics.blocks_succeeded += execution.succeeded
        self.metrics.blocks_failed += execution.failed
        self.metrics.blocks_skipped += execution.skipped

        ctx.chain_outcomes.extend(execution.outcomes)
        for outcome in execution.outcomes:
            if outcome.success:
                ctx.chain_fingerprints.add(self.dedup.fingerprint(outcome.block.code))
        return RoundState.EVALUATE

    def _evaluate(self, session: ChatSession, ctx: RoundContext) -> RoundState:
        execution = ctx.execution
        count = self.failures.record(session, execution.succeeded, execution.failed)
        logger.debug(
            "Round: %d ok, %d failed, %d consecutive failing round(s)",
            execution.succeeded,
            execution.failed,
            count,
        )
        if self.failures.should_clarify(session):
            return RoundState.CLARIFY
        if execution.all_failed:
            return RoundState.ERROR_FIX_ROUND
        if execution.any_success and self.config.auto_followup:
            return RoundState.FOLLOWUP_ROUND
        return ctx.stop(StopReason.COMPLETE)

    def _continue(self, kind: FollowupKind, session: ChatSession, ctx: RoundContext) -> RoundState:
        """Loop check, depth check, then compose the next automatic turn."""
        if ctx.automatic:
            try:
                self.loops.guard(session, ctx.response)
            except LoopError as e:
                self.metrics.loops_detected += 1
                ctx.notices.append(LOOP_NOTICE)
                return ctx.stop(StopReason.LOOP_DETECTED, str(e))

        plan = self.composer.plan_next(session.followup_depth, kind, ctx.forced_error_fix_used)
        if not plan.allowed:
            logger.warning(
                "Chat %s hit the follow-up cap (%d)",
                session.chat_id,
                self.config.max_followup_depth,
            )
            self.metrics.depth_caps += 1
            ctx.notices.append(DEPTH_NOTICE.format(limit=self.config.max_followup_depth))
            return ctx.stop(StopReason.DEPTH_EXCEEDED)
        if plan.forced:
            logger.info("Allowing one error-fix round past the follow-up cap")
            ctx.forced_error_fix_used = True

        if kind is FollowupKind.ANALYZE:
            outcomes = ctx.prior_outcomes
        else:
            outcomes = ctx.execution.outcomes if ctx.execution else []

        ctx.next_prompt = self.composer.compose(
            kind,
            ctx.question,
            outcomes,
            failure_count=session.consecutive_failures,
            is_last=plan.is_last,
        )

        if kind is FollowupKind.CLARIFY:
            self.metrics.clarifications += 1
            ctx.notices.append(CLARIFY_NOTICE)
            self.failures.reset(session, "asked for clarification")
        return RoundState.STREAM_RECEIVED
