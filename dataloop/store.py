"""Append-only conversation stores."""

import json
import logging
import re
from pathlib import Path
from typing import Protocol

from dataloop.models import ConversationTurn

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class ConversationStore(Protocol):
    def turns(self, chat_id: str) -> list[ConversationTurn]: ...

    def append(self, chat_id: str, turn: ConversationTurn) -> None: ...

    def clear(self, chat_id: str) -> None: ...

    def chat_ids(self) -> list[str]: ...


class InMemoryConversationStore:
    """Keeps transcripts in a dict; nothing survives the process."""

    def __init__(self) -> None:
        self._chats: dict[str, list[ConversationTurn]] = {}

    def turns(self, chat_id: str) -> list[ConversationTurn]:
        return list(self._chats.get(chat_id, []))

    def append(self, chat_id: str, turn: ConversationTurn) -> None:
        self._chats.setdefault(chat_id, []).append(turn)

    def clear(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)

    def chat_ids(self) -> list[str]:
        return list(self._chats)


class JsonlConversationStore:
    """One ``<chat_id>.jsonl`` file per chat, one turn per line.

    Lines that fail to parse are skipped, so a partially written trailing
    line never makes a transcript unreadable.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, chat_id: str) -> Path:
        return self.root / f"{_SAFE_ID.sub('_', chat_id)}.jsonl"

    def turns(self, chat_id: str) -> list[ConversationTurn]:
        path = self._path(chat_id)
        if not path.exists():
            return []
        turns = []
        for line in path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except ValueError as e:
                logger.warning("Skipping unreadable turn in %s: %s", path, e)
                continue
            if not isinstance(data, dict):
                logger.warning("Skipping non-object turn in %s: %s", path, line[:80])
                continue
            try:
                turns.append(ConversationTurn.from_dict(data))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable turn in %s: %s", path, e)
        return turns

    def append(self, chat_id: str, turn: ConversationTurn) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        with open(self._path(chat_id), "a") as f:
            f.write(turn.to_jsonl() + "\n")

    def clear(self, chat_id: str) -> None:
        self._path(chat_id).unlink(missing_ok=True)

    def chat_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.jsonl"))
