"""Code fingerprints and duplicate detection across a chain and its transcript."""

import hashlib
import logging
from typing import Iterable, Optional

from dataloop.blocks import extract_code, normalize_whitespace
from dataloop.models import CodeBlock, ConversationTurn, ExecutionOutcome

logger = logging.getLogger(__name__)


class DuplicateFilter:
    """Decides whether proposed code has already run successfully.

    Known fingerprints come from two places: blocks that succeeded earlier
    in the current chain, and code recorded in prior assistant turns.
    Turns with structured results only contribute their successful
    blocks; turns without them contribute every fenced block.
    """

    def __init__(self, full_length: int = 200, edge_chars: int = 100):
        self.full_length = full_length
        self.edge_chars = edge_chars

    def fingerprint(self, code: str) -> str:
        """Whitespace-insensitive hash of *code*.

        Long code is keyed by its head, tail and length only.
        """
        normalized = normalize_whitespace(code)
        if len(normalized) > self.full_length:
            key = (
                f"{normalized[: self.edge_chars]}..."
                f"{normalized[-self.edge_chars :]}|{len(normalized)}"
            )
        else:
            key = f"{normalized}|{len(normalized)}"
        return hashlib.sha256(key.encode()).hexdigest()

    def transcript_fingerprints(self, turns: Iterable[ConversationTurn]) -> set[str]:
        """Fingerprints of code already executed in prior assistant turns."""
        found: set[str] = set()
        for turn in turns:
            if turn.role != "assistant":
                continue
            if turn.execution_results is not None:
                codes = [
                    r.get("code", "")
                    for r in turn.execution_results
                    if r.get("success")
                ]
            else:
                codes = extract_code(turn.content)
            found.update(self.fingerprint(c) for c in codes if c)
        return found

    def known(
        self,
        chain_fingerprints: Iterable[str],
        turns: Iterable[ConversationTurn],
    ) -> set[str]:
        return set(chain_fingerprints) | self.transcript_fingerprints(turns)

    def all_duplicates(self, blocks: list[CodeBlock], known: set[str]) -> bool:
        """True when there is at least one block and every block is known."""
        if not blocks:
            return False
        return all(self.fingerprint(b.code) in known for b in blocks)

    def collapse(self, blocks: list[CodeBlock]) -> list[CodeBlock]:
        """Drop repeated blocks within one round, keeping the first."""
        seen: set[str] = set()
        unique: list[CodeBlock] = []
        for block in blocks:
            fp = self.fingerprint(block.code)
            if fp in seen:
                logger.debug("Collapsing repeated block at %d", block.start_index)
                continue
            seen.add(fp)
            unique.append(block)
        return unique

    def prior_outcomes(
        self,
        blocks: list[CodeBlock],
        chain_outcomes: list[ExecutionOutcome],
        turns: list[ConversationTurn],
    ) -> list[ExecutionOutcome]:
        """Most recent successful outcome recorded for each block.

        Blocks whose only record is bare code in a transcript turn have no
        stored result and are omitted.
        """
        found: list[ExecutionOutcome] = []
        for block in blocks:
            outcome = self._lookup(self.fingerprint(block.code), chain_outcomes, turns)
            if outcome is not None:
                found.append(outcome)
        return found

    def _lookup(
        self,
        fp: str,
        chain_outcomes: list[ExecutionOutcome],
        turns: list[ConversationTurn],
    ) -> Optional[ExecutionOutcome]:
        for outcome in reversed(chain_outcomes):
            if outcome.success and self.fingerprint(outcome.block.code) == fp:
                return outcome
        for turn in reversed(turns):
            if turn.role != "assistant" or not turn.execution_results:
                continue
            for record in reversed(turn.execution_results):
                if record.get("success") and self.fingerprint(record.get("code", "")) == fp:
                    return ExecutionOutcome.from_dict(record)
        return None
