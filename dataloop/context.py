"""Chain metrics, response loop detection and failure tracking."""

import hashlib
import logging
import re
from dataclasses import asdict, dataclass
from typing import Optional

from dataloop.errors import LoopError
from dataloop.state import ChatSession

logger = logging.getLogger(__name__)

# Normalization steps applied before hashing a response
_FENCED = re.compile(r"```.*?```", re.DOTALL)
_DIGITS = re.compile(r"\d+")
_WHITESPACE = re.compile(r"\s+")
_LONG_STRING = re.compile(r"([\"'`])[^\"'`\n]{20,}\1")


@dataclass
class Metrics:
    """In-memory counters for one controller."""

    chains: int = 0
    rounds: int = 0
    blocks_executed: int = 0
    blocks_succeeded: int = 0
    blocks_failed: int = 0
    blocks_skipped: int = 0
    duplicate_skips: int = 0
    loops_detected: int = 0
    depth_caps: int = 0
    clarifications: int = 0
    approvals_refused: int = 0
    cancellations: int = 0
    model_errors: int = 0
    last_stop_reason: str = ""

    @property
    def success_rate(self) -> float:
        """Fraction of executed blocks that succeeded (0.0 when none ran)."""
        if self.blocks_executed == 0:
            return 0.0
        return self.blocks_succeeded / self.blocks_executed

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_response(text: str) -> str:
    """Reduce a response to its shape so near-identical replies compare equal."""
    normalized = _WHITESPACE.sub(" ", text)
    normalized = _DIGITS.sub("N", normalized)
    normalized = _FENCED.sub("[CODE]", normalized)
    normalized = _LONG_STRING.sub("[STR]", normalized)
    return normalized.lower().strip()


def response_fingerprint(text: str) -> str:
    return hashlib.sha256(normalize_response(text).encode()).hexdigest()


class LoopDetector:
    """Detects runaway follow-up chains by tracking response fingerprints.

    A loop is reported when a response repeats one already seen in the chat,
    or when the chat has accumulated ``ceiling`` distinct follow-up
    responses.  History is kept on the ChatSession, oldest first, capped at
    ``history_size``.
    """

    def __init__(self, history_size: int = 10, ceiling: int = 8):
        """Initialize loop detector.

        Args:
            history_size: Fingerprints retained per chat (FIFO).
            ceiling: Distinct responses per chat that count as a loop.
        """
        self.history_size = history_size
        self.ceiling = ceiling

    def check(self, session: ChatSession, text: str) -> bool:
        """Record *text* for the chat and report whether it indicates a loop.

        Args:
            session: The chat whose history is consulted and updated.
            text: A model response produced for an automatic turn.

        Returns:
            True if loop detected (chain should stop), False otherwise.
        """
        fp = response_fingerprint(text)
        history = session.recent_response_fingerprints

        if fp in history:
            logger.warning("Repeated response in chat %s (%s)", session.chat_id, fp[:12])
            return True

        history.append(fp)
        while len(history) > self.history_size:
            history.pop(0)

        if len(history) >= self.ceiling:
            logger.warning(
                "Chat %s reached %d distinct follow-up responses",
                session.chat_id,
                len(history),
            )
            return True

        return False

    def guard(self, session: ChatSession, text: str) -> None:
        """Like check(), but raise LoopError instead of returning True."""
        if self.check(session, text):
            raise LoopError(
                "Follow-up responses are repeating",
                fingerprint=response_fingerprint(text),
            )

    def reset(self, session: ChatSession) -> None:
        session.recent_response_fingerprints = []


class FailureTracker:
    """Counts consecutive failing rounds per chat and decides escalation."""

    def __init__(self, threshold: int = 4):
        self.threshold = threshold

    def record(self, session: ChatSession, succeeded: int, failed: int) -> int:
        """Fold one round's block counts into the session counter.

        A round counts as failing when more blocks failed than succeeded
        (which includes every block failing).  Any other round resets it.

        Returns:
            The updated counter.
        """
        if failed > succeeded:
            session.consecutive_failures += 1
        else:
            session.consecutive_failures = 0
        return session.consecutive_failures

    def should_clarify(self, session: ChatSession) -> bool:
        return session.consecutive_failures >= self.threshold

    def reset(self, session: ChatSession, reason: Optional[str] = None) -> None:
        if session.consecutive_failures and reason:
            logger.debug(
                "Resetting failure counter for %s (%s)", session.chat_id, reason
            )
        session.consecutive_failures = 0
