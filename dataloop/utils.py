"""ID generation and small text helpers."""

import random
import string
import time


def id_generate(prefix: str = "c") -> str:
    """Generate a short unique ID with a time component and a random suffix.

    Format: {prefix}-{timestamp_base36}{random} (e.g. c-k5x9ab).

    Args:
        prefix: Short prefix ('c' for chat).

    Returns:
        A unique identifier string.
    """
    chars = string.ascii_lowercase + string.digits
    # Last 2 chars of a base36 timestamp
    timestamp_part = int(time.time()) % (36 * 36)
    ts_chars = ""
    for _ in range(2):
        ts_chars = chars[timestamp_part % 36] + ts_chars
        timestamp_part //= 36

    random_part = "".join(random.choice(chars) for _ in range(4))
    return f"{prefix}-{ts_chars}{random_part}"


def shorten(text: str, width: int = 80) -> str:
    """Single-line preview of *text*, cut to *width* characters."""
    line = " ".join(text.split())
    if len(line) <= width:
        return line
    return line[: width - 3] + "..."
