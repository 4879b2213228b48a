"""Per-chat session state and the registry that owns it.

A ChatSession holds the counters the controller threads through a chain:
follow-up depth, consecutive failing rounds and recent response
fingerprints.  Sessions are created on a chat's first message and evicted
when the chat is cleared.  The registry also hands out a per-chat lock so
that at most one chain is in flight for any chat id.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    """Mutable per-chat counters for the follow-up controller."""

    chat_id: str
    followup_depth: int = 0
    consecutive_failures: int = 0
    # Oldest first; bounded by LoopDetector.history_size
    recent_response_fingerprints: list = field(default_factory=list)

    # =========================================================================
    # Chain lifecycle
    # =========================================================================

    def start_chain(self) -> None:
        """A new user message starts a fresh chain of follow-ups."""
        self.followup_depth = 0

    def advance_depth(self) -> int:
        """Record one more automatic round and return the new depth."""
        self.followup_depth += 1
        return self.followup_depth

    def clear(self) -> None:
        """Forget everything (chat cleared or deleted)."""
        self.followup_depth = 0
        self.consecutive_failures = 0
        self.recent_response_fingerprints = []

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "followup_depth": self.followup_depth,
            "consecutive_failures": self.consecutive_failures,
            "recent_response_fingerprints": list(self.recent_response_fingerprints),
        }


class SessionRegistry:
    """Owns ChatSession objects and per-chat mutual exclusion."""

    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, chat_id: str) -> ChatSession:
        """Return the session for *chat_id*, creating it on first use."""
        session = self._sessions.get(chat_id)
        if session is None:
            session = ChatSession(chat_id=chat_id)
            self._sessions[chat_id] = session
            logger.debug("Created session for chat %s", chat_id)
        return session

    def peek(self, chat_id: str) -> Optional[ChatSession]:
        return self._sessions.get(chat_id)

    def evict(self, chat_id: str) -> None:
        """Drop the session for *chat_id* (no-op if unknown)."""
        if self._sessions.pop(chat_id, None) is not None:
            logger.debug("Evicted session for chat %s", chat_id)
        lock = self._locks.get(chat_id)
        if lock is not None and not lock.locked():
            del self._locks[chat_id]

    def chat_ids(self) -> list[str]:
        return list(self._sessions)

    def is_busy(self, chat_id: str) -> bool:
        lock = self._locks.get(chat_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def lock(self, chat_id: str) -> AsyncIterator[ChatSession]:
        """Hold the chat's lock for one chain and yield its session."""
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            yield self.get(chat_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._sessions
