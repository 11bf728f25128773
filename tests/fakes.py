"""In-memory stand-ins for the repository gateway and model providers."""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from gitchat.config import LoopConfig, ModelsConfig, RuntimeConfig
from gitchat.context import RepoContext
from gitchat.github import GatewayError, git_blob_sha
from gitchat.interfaces import BranchHead, CheckRun, DirEntry, FileBlob, TreeEntry
from gitchat.schema import Message, ModelReply, ToolCall


class FakeGateway:
    """
    A single-branch repository. Files only change on the remote when a ref
    moves, mirroring the git data API.
    """

    def __init__(self, files: Optional[Dict[str, str]] = None, *, repo: str = "octo/demo", branch: str = "main"):
        self.repo = repo
        self.branch = branch
        self.files: Dict[str, str] = dict(files or {})
        self.modes: Dict[str, str] = {}
        self.head = "c0"
        self.commits: Dict[str, Dict[str, Any]] = {"c0": {"tree": "t0", "parent": None, "message": "init"}}
        self.trees: Dict[str, Dict[str, str]] = {"t0": dict(self.files)}
        self.fail: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.file_reads: Dict[str, int] = {}
        self.checks: List[CheckRun] = []
        self.search_hits: Dict[str, List[str]] = {}
        self.read_delay = 0.0
        self._ids = itertools.count(1)

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    async def list_dir(self, path: str = "") -> List[DirEntry]:
        self._enter("list_dir")
        prefix = f"{path}/" if path else ""
        seen: Dict[str, str] = {}
        for file_path in self.files:
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            head, sep, _ = rest.partition("/")
            seen[prefix + head] = "dir" if sep else "file"
        if path and not seen:
            raise GatewayError(f"not found: {path}", status=404)
        return [DirEntry(path=p, kind=k) for p, k in sorted(seen.items())]

    async def get_file(self, path: str) -> FileBlob:
        self._enter("get_file")
        self.file_reads[path] = self.file_reads.get(path, 0) + 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if path not in self.files:
            raise GatewayError(f"GitHub GET {path} failed (404): Not Found", status=404)
        return FileBlob(path=path, content=self.files[path], sha=git_blob_sha(self.files[path]))

    async def put_file(self, path: str, content: str, sha: Optional[str], message: str) -> str:
        self._enter("put_file")
        self.files[path] = content
        return f"c{next(self._ids)}"

    async def search_text(self, query: str) -> List[str]:
        self._enter("search_text")
        if query in self.search_hits:
            return list(self.search_hits[query])
        return [p for p, c in self.files.items() if query.lower() in c.lower()]

    async def get_branch_head(self, branch: Optional[str] = None) -> BranchHead:
        self._enter("get_branch_head")
        return BranchHead(commit_sha=self.head, tree_sha=self.commits[self.head]["tree"])

    async def get_tree(self, ref: str, recursive: bool = False) -> List[TreeEntry]:
        self._enter("get_tree")
        return [
            TreeEntry(path=p, mode=self.modes.get(p, "100644"), type="blob", sha=git_blob_sha(content))
            for p, content in sorted(self.trees[ref].items())
        ]

    async def create_tree(self, base_tree_sha: str, entries: Sequence[TreeEntry]) -> str:
        self._enter("create_tree")
        self.last_tree_entries = list(entries)
        tree = dict(self.trees[base_tree_sha])
        for entry in entries:
            tree[entry.path] = entry.content or ""
        sha = f"t{next(self._ids)}"
        self.trees[sha] = tree
        return sha

    async def create_commit(self, message: str, tree_sha: str, parent_sha: str) -> str:
        self._enter("create_commit")
        sha = f"c{next(self._ids)}"
        self.commits[sha] = {"tree": tree_sha, "parent": parent_sha, "message": message}
        return sha

    async def move_ref(self, branch: str, commit_sha: str) -> None:
        self._enter("move_ref")
        if self.commits[commit_sha]["parent"] != self.head:
            raise GatewayError("Update is not a fast forward", status=422)
        self.head = commit_sha
        self.files = dict(self.trees[self.commits[commit_sha]["tree"]])

    async def get_checks(self, ref: str) -> List[CheckRun]:
        self._enter("get_checks")
        return list(self.checks)

    def external_commit(self, changes: Dict[str, str], message: str = "external") -> str:
        """Another writer pushes to the branch."""
        tree = dict(self.trees[self.commits[self.head]["tree"]])
        tree.update(changes)
        tree_sha = f"t{next(self._ids)}"
        self.trees[tree_sha] = tree
        sha = f"c{next(self._ids)}"
        self.commits[sha] = {"tree": tree_sha, "parent": self.head, "message": message}
        self.head = sha
        self.files = dict(tree)
        return sha


Scripted = Union[ModelReply, Exception, Callable[[Dict[str, Any]], Any]]


class ScriptedProvider:
    """Replays a fixed list of replies; records every request it receives."""

    def __init__(self, script: Sequence[Scripted]):
        self.script = list(script)
        self.requests: List[Dict[str, Any]] = []

    async def send_turn(self, **kwargs: Any) -> ModelReply:
        self.requests.append(kwargs)
        if not self.script:
            return ModelReply(text="done")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(kwargs)
            if asyncio.iscoroutine(item):
                item = await item
        return item

    async def stream_turn(self, **kwargs: Any):
        reply = await self.send_turn(**kwargs)
        for word in reply.text.split(" "):
            yield word + " "
        yield reply


class StaticRouter:
    """Routes every model name to one provider and echoes the name back."""

    def __init__(self, provider: Any):
        self.provider = provider
        self.models: List[str] = []

    def for_model(self, name: str):
        self.models.append(name)
        return self.provider, name


def call(name: str, **args: Any) -> ToolCall:
    return ToolCall(name=name, args=args)


def tools_reply(*calls: ToolCall, text: str = "") -> ModelReply:
    return ModelReply(text=text, tool_calls=list(calls))


def make_context(files: Optional[Dict[str, str]] = None) -> RepoContext:
    return RepoContext(FakeGateway(files))


def runtime_config(**loop_overrides: Any) -> RuntimeConfig:
    return RuntimeConfig(
        github={"repo": "octo/demo", "branch": "main"},
        models=ModelsConfig(retries=2, backoff_base_sec=0.0, backoff_max_sec=0.0),
        loop=LoopConfig(**loop_overrides),
    )


def tool_messages(messages: List[Message]) -> List[Message]:
    return [m for m in messages if m.role == "tool"]
