"""Fenced code-block detection over (possibly still streaming) model text."""

import re
from typing import Protocol

from dataloop.models import CodeBlock

# Fence tags that mark runnable code. Untagged fences count too.
EXECUTABLE_TAGS = {"python", "py", "execute", "code", "query", "sql"}
SQL_TAGS = {"query", "sql"}

FENCE_PATTERN = re.compile(
    r"```([A-Za-z0-9_+-]*)[ \t]*\n?(.*?)(```|\Z)",
    re.DOTALL,
)

# An execution result/error already rendered right after the block
RESULT_MARKER = re.compile(
    r"^\s*(?:\n\s*){0,3}\*\*Code Execution (?:Result|Error)\*\*",
    re.IGNORECASE,
)
# The block is itself the body of a rendered error
ERROR_PREFIX = re.compile(r"\*\*Code Execution Error\*\*[^\n]*\n\s*$", re.IGNORECASE)

TRACEBACK_PATTERNS = (
    re.compile(r"Traceback \(most recent call last\):"),
    re.compile(r"Stack Trace:", re.IGNORECASE),
    re.compile(r"\b\w*(?:Error|Exception):\s*[^\n]+\n\s+(?:at|File)\s+"),
)
MAX_TRACE_CHARS = 500


class BlockDetector(Protocol):
    """Anything that can find proposed code in a response."""

    def detect(self, text: str) -> list[CodeBlock]: ...


def normalize_whitespace(code: str) -> str:
    return re.sub(r"\s+", " ", code).strip()


def looks_like_traceback(code: str) -> bool:
    """True for short pasted error output rather than runnable code."""
    if len(code) >= MAX_TRACE_CHARS:
        return False
    return any(p.search(code) for p in TRACEBACK_PATTERNS)


class FencedBlockDetector:
    """Reference detector for markdown fenced blocks.

    Safe to call repeatedly on a growing response: blocks within an
    unchanged prefix are detected identically each time, and a trailing
    fence without its closing backticks is reported with
    ``is_complete=False``.
    """

    def detect(self, text: str) -> list[CodeBlock]:
        blocks: list[CodeBlock] = []
        seen: set[str] = set()

        for match in FENCE_PATTERN.finditer(text):
            tag = match.group(1).lower()
            if tag and tag not in EXECUTABLE_TAGS:
                continue

            code = match.group(2).strip()
            if not code:
                continue

            after = text[match.end() : match.end() + 50]
            if RESULT_MARKER.match(after):
                continue

            before = text[max(0, match.start() - 200) : match.start()]
            if ERROR_PREFIX.search(before):
                continue

            if looks_like_traceback(code):
                continue

            key = normalize_whitespace(code)
            if key in seen:
                continue
            seen.add(key)

            blocks.append(
                CodeBlock(
                    code=code,
                    start_index=match.start(),
                    end_index=match.end(),
                    language="sql" if tag in SQL_TAGS else "python",
                    is_complete=bool(match.group(3)),
                )
            )

        return blocks


def extract_code(text: str) -> list[str]:
    """Code of every complete executable block in *text*."""
    return [b.code for b in FencedBlockDetector().detect(text) if b.is_complete]
