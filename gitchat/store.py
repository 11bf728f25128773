"""
gitchat.store

Conversation persistence: an in-memory store for tests and embedding, and a
directory of JSON documents (one file per conversation) for the CLI.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .io_utils import read_json, write_text_atomic
from .schema import Conversation

logger = logging.getLogger(__name__)


class MemoryConversationStore:
    def __init__(self) -> None:
        self._items: Dict[str, Conversation] = {}

    def list(self) -> List[Conversation]:
        return sorted(self._items.values(), key=lambda c: c.created_at, reverse=True)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._items.get(conversation_id)

    def save(self, conversation: Conversation) -> None:
        self._items[conversation.id] = conversation

    def delete(self, conversation_id: str) -> None:
        self._items.pop(conversation_id, None)


class JsonConversationStore:
    """
    One `<id>.json` document per conversation, written atomically so a crash
    mid-save never leaves a truncated file behind.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        safe = "".join(ch for ch in conversation_id if ch.isalnum() or ch in "-_")
        if not safe:
            raise ValueError(f"invalid conversation id: {conversation_id!r}")
        return self.root / f"{safe}.json"

    def list(self) -> List[Conversation]:
        out: List[Conversation] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                out.append(Conversation.model_validate(read_json(path)))
            except (ValueError, OSError) as exc:
                logger.warning("skipping unreadable conversation %s: %s", path.name, exc)
        out.sort(key=lambda c: c.created_at, reverse=True)
        return out

    def get(self, conversation_id: str) -> Optional[Conversation]:
        data = read_json(self._path(conversation_id))
        if data is None:
            return None
        return Conversation.model_validate(data)

    def save(self, conversation: Conversation) -> None:
        payload = conversation.model_dump(mode="json")
        write_text_atomic(self._path(conversation.id), json.dumps(payload, indent=2, ensure_ascii=False) + "\n")

    def delete(self, conversation_id: str) -> None:
        self._path(conversation_id).unlink(missing_ok=True)
