"""
gitchat.cache

Content cache and staged edit buffer shared by every conversation working on
the same repository.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple


class ContentCache:
    """
    Path -> last-known file content.

    Concurrent misses for the same path share a single fetch. A failed fetch
    propagates to every waiter and leaves no entry behind.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}
        self._inflight: Dict[str, asyncio.Future[str]] = {}

    def get(self, path: str) -> Optional[str]:
        return self._entries.get(path)

    def put(self, path: str, content: str) -> None:
        self._entries[path] = content

    def invalidate(self, path: Optional[str] = None) -> None:
        if path is None:
            self._entries.clear()
        else:
            self._entries.pop(path, None)

    def paths(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_fetch(self, path: str, fetch: Callable[[], Awaitable[str]]) -> str:
        cached = self._entries.get(path)
        if cached is not None:
            return cached
        pending = self._inflight.get(path)
        if pending is not None:
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # The task that started the fetch was cancelled, not this one.
                return await self.get_or_fetch(path, fetch)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        self._inflight[path] = future
        try:
            content = await fetch()
        except BaseException as exc:
            if not future.done():
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # Mark retrieved so a lone fetch does not warn about it.
                    future.exception()
            raise
        finally:
            self._inflight.pop(path, None)
        self._entries[path] = content
        future.set_result(content)
        return content


@dataclass
class StagedEdit:
    path: str
    content: str
    message: str = ""
    # Blob sha the edit was derived from; None for files written blind.
    base_sha: Optional[str] = None


@dataclass
class StagedEditBuffer:
    """Path -> pending full file content. Flushed only by the commit engine."""

    _edits: Dict[str, StagedEdit] = field(default_factory=dict)

    def stage(self, path: str, content: str, message: str = "", base_sha: Optional[str] = None) -> None:
        self._edits[path] = StagedEdit(path=path, content=content, message=message, base_sha=base_sha)

    def get(self, path: str) -> Optional[str]:
        edit = self._edits.get(path)
        return edit.content if edit is not None else None

    def snapshot(self) -> List[StagedEdit]:
        return [StagedEdit(e.path, e.content, e.message, e.base_sha) for e in self._edits.values()]

    def discard(self, path: Optional[str] = None) -> int:
        if path is None:
            count = len(self._edits)
            self._edits.clear()
            return count
        return 1 if self._edits.pop(path, None) is not None else 0

    def clear_committed(self, committed: List[StagedEdit]) -> int:
        """
        Drop entries that were committed. Entries re-staged with different
        content while the commit was in flight stay pending.
        """
        removed = 0
        for edit in committed:
            current = self._edits.get(edit.path)
            if current is not None and current.content == edit.content:
                del self._edits[edit.path]
                removed += 1
        return removed

    def rebase(self, path: str, base_sha: Optional[str]) -> None:
        edit = self._edits.get(path)
        if edit is not None:
            edit.base_sha = base_sha

    def paths(self) -> List[str]:
        return sorted(self._edits)

    def items(self) -> Iterator[Tuple[str, str]]:
        for path in sorted(self._edits):
            yield path, self._edits[path].content

    def __contains__(self, path: object) -> bool:
        return path in self._edits

    def __len__(self) -> int:
        return len(self._edits)
