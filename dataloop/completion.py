"""Heuristics for deciding whether a finished response was cut off."""

from typing import Protocol, Sequence

DEFAULT_TRAILING_TOKENS = ("(", "[", "{", ",", "=", "\\")


class CompletionHeuristic(Protocol):
    def looks_incomplete(self, text: str) -> bool: ...


class FenceBalanceHeuristic:
    """Flags a response that ends inside an open fence or mid-expression.

    Args:
        trailing_tokens: Suffixes (after stripping whitespace) that mean the
            model stopped mid-statement.
    """

    def __init__(self, trailing_tokens: Sequence[str] = DEFAULT_TRAILING_TOKENS):
        self.trailing_tokens = tuple(trailing_tokens)

    def looks_incomplete(self, text: str) -> bool:
        if text.count("```") % 2 == 1:
            return True
        stripped = text.rstrip()
        if not stripped:
            return False
        return stripped.endswith(self.trailing_tokens)
