"""
gitchat.context

Per-repository state handed to every tool executor: the gateway plus the
process-wide content cache, staged edit buffer, and push lock.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from .cache import ContentCache, StagedEditBuffer
from .interfaces import RepoGateway

logger = logging.getLogger(__name__)


class RepoContext:
    def __init__(self, gateway: RepoGateway):
        self.gateway = gateway
        self.cache = ContentCache()
        self.staged = StagedEditBuffer()
        # One commit in flight completes before the next reads the branch head.
        self.push_lock = asyncio.Lock()
        # Blob sha each cached path was read at.
        self.base_shas: Dict[str, str] = {}
        # Staged paths whose base moved on the branch; reads go to the remote until re-staged.
        self.conflicts: Set[str] = set()
        self.head_sha: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.gateway.repo, self.gateway.branch)

    async def load(self, path: str) -> str:
        """Staged content first, then the cache, then a (deduplicated) remote read."""
        if path not in self.conflicts:
            staged = self.staged.get(path)
            if staged is not None:
                return staged

        async def _fetch() -> str:
            blob = await self.gateway.get_file(path)
            self.base_shas[path] = blob.sha
            return blob.content

        return await self.cache.get_or_fetch(path, _fetch)

    def stage(self, path: str, content: str, message: str = "") -> None:
        self.staged.stage(path, content, message, base_sha=self.base_shas.get(path))
        self.conflicts.discard(path)
        # Write-through so later reads in the same turn see the edit before it is pushed.
        self.cache.put(path, content)

    def forget_unstaged(self) -> int:
        """Drop cached content that has no staged edit on top of it."""
        dropped = 0
        for path in self.cache.paths():
            if path not in self.staged or path in self.conflicts:
                self.cache.invalidate(path)
                dropped += 1
        return dropped

    def observe_head(self, commit_sha: str) -> None:
        if self.head_sha is not None and commit_sha != self.head_sha:
            dropped = self.forget_unstaged()
            logger.info("%s@%s moved to %s; dropped %d cached file(s)", self.gateway.repo, self.gateway.branch, commit_sha[:7], dropped)
        self.head_sha = commit_sha

    def mark_conflicts(self, paths: Iterable[str]) -> None:
        for path in paths:
            self.conflicts.add(path)
            self.cache.invalidate(path)

    def committed(self, commit_sha: str, blob_shas: Dict[str, str]) -> None:
        """Record a commit made from this context: its blobs become the new bases."""
        self.head_sha = commit_sha
        for path, sha in blob_shas.items():
            self.base_shas[path] = sha
            self.staged.rebase(path, sha)


class RepoContextRegistry:
    """Process-wide table of repository contexts keyed by repo and branch."""

    def __init__(self, gateway_factory: Callable[[str, str], RepoGateway]):
        self._gateway_factory = gateway_factory
        self._contexts: Dict[Tuple[str, str], RepoContext] = {}

    def get(self, repo: str, branch: str) -> RepoContext:
        key = (repo, branch)
        ctx = self._contexts.get(key)
        if ctx is None:
            ctx = RepoContext(self._gateway_factory(repo, branch))
            self._contexts[key] = ctx
        return ctx

    def find(self, repo: str, branch: str) -> Optional[RepoContext]:
        return self._contexts.get((repo, branch))

    def __len__(self) -> int:
        return len(self._contexts)
