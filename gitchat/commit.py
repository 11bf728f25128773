"""
gitchat.commit

Atomic multi-file commit: every staged edit lands in one commit built by
layering new blobs over the branch head's tree, or nothing lands at all.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from .cache import StagedEdit
from .context import RepoContext
from .github import git_blob_sha
from .interfaces import TreeEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

STEP_READ_HEAD = "read branch head"
STEP_READ_TREE = "read base tree"
STEP_CREATE_TREE = "create tree"
STEP_CREATE_COMMIT = "create commit"
STEP_MOVE_REF = "update branch ref"


class CommitStepError(RuntimeError):
    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"commit failed at step '{step}': {cause}")
        self.step = step
        self.cause = cause


class StaleBaseError(RuntimeError):
    """Staged edits were derived from file versions the branch no longer has."""

    def __init__(self, paths: List[str]):
        super().__init__(
            f"{', '.join(paths)} changed on the branch since it was read; "
            "read the file again, re-apply the edit, then push"
        )
        self.paths = paths


@dataclass
class CommitReport:
    commit_sha: str
    parent_sha: str
    tree_sha: str
    paths: List[str]

    @property
    def file_count(self) -> int:
        return len(self.paths)


def default_commit_message(edits: List[StagedEdit]) -> str:
    notes: List[str] = []
    for edit in edits:
        note = edit.message.strip()
        if note and note not in notes:
            notes.append(note)
    if len(notes) == 1:
        return notes[0]
    paths = ", ".join(e.path for e in edits[:5])
    more = f" (+{len(edits) - 5} more)" if len(edits) > 5 else ""
    header = f"Update {paths}{more}"
    if notes:
        return header + "\n\n" + "\n".join(f"- {n}" for n in notes)
    return header


async def _step(step: str, fn: Callable[[], Awaitable[T]]) -> T:
    try:
        return await fn()
    except Exception as exc:  # noqa: BLE001
        raise CommitStepError(step, exc) from exc


async def commit_staged(ctx: RepoContext, message: Optional[str] = None) -> Optional[CommitReport]:
    """
    Flush the staged buffer as a single commit on the context's branch.

    Returns None when nothing is staged. On any failure the buffer is left
    untouched and `CommitStepError` names the failed step.
    """
    async with ctx.push_lock:
        edits = ctx.staged.snapshot()
        if not edits:
            return None
        gateway = ctx.gateway
        branch = gateway.branch

        head = await _step(STEP_READ_HEAD, lambda: gateway.get_branch_head(branch))
        ctx.observe_head(head.commit_sha)
        base_entries = await _step(STEP_READ_TREE, lambda: gateway.get_tree(head.tree_sha, recursive=True))
        blobs = {e.path: e for e in base_entries if e.type == "blob"}
        stale = [e.path for e in edits if e.base_sha is not None and getattr(blobs.get(e.path), "sha", None) != e.base_sha]
        if stale:
            ctx.mark_conflicts(stale)
            logger.warning("refusing to commit over remote changes to %s", ", ".join(stale))
            raise CommitStepError(STEP_READ_TREE, StaleBaseError(stale))
        modes: Dict[str, str] = {path: entry.mode for path, entry in blobs.items()}

        entries = [
            TreeEntry(path=edit.path, mode=modes.get(edit.path, "100644"), type="blob", content=edit.content)
            for edit in edits
        ]
        tree_sha = await _step(STEP_CREATE_TREE, lambda: gateway.create_tree(head.tree_sha, entries))
        commit_message = message.strip() if message and message.strip() else default_commit_message(edits)
        commit_sha = await _step(
            STEP_CREATE_COMMIT,
            lambda: gateway.create_commit(commit_message, tree_sha, head.commit_sha),
        )
        await _step(STEP_MOVE_REF, lambda: gateway.move_ref(branch, commit_sha))

        ctx.staged.clear_committed(edits)
        ctx.committed(commit_sha, {e.path: git_blob_sha(e.content) for e in edits})
        logger.info("committed %d file(s) to %s@%s as %s", len(edits), gateway.repo, branch, commit_sha[:7])
        return CommitReport(
            commit_sha=commit_sha,
            parent_sha=head.commit_sha,
            tree_sha=tree_sha,
            paths=[e.path for e in edits],
        )
