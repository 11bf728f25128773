"""
gitchat.interfaces

Core protocol boundaries between the orchestration loop and its collaborators.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from .schema import Conversation, Message, ModelReply


@dataclass(frozen=True)
class FileBlob:
    path: str
    content: str
    sha: str


@dataclass(frozen=True)
class DirEntry:
    path: str
    kind: str  # "file" | "dir" | "symlink" | "submodule"
    size: int = 0


@dataclass(frozen=True)
class TreeEntry:
    """
    One entry of a tree-composition request or listing.
    `content` is set for new blobs; `sha` for existing ones.
    """

    path: str
    mode: str = "100644"
    type: str = "blob"
    content: Optional[str] = None
    sha: Optional[str] = None


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: str
    conclusion: Optional[str] = None
    url: str = ""


@dataclass
class BranchHead:
    commit_sha: str
    tree_sha: str
    extra: Dict[str, Any] = field(default_factory=dict)


class RepoGateway(Protocol):
    """
    Typed operations against a hosted version-control API.
    Owns no state beyond request/response.
    """

    repo: str
    branch: str

    async def list_dir(self, path: str = "") -> List[DirEntry]:
        ...

    async def get_file(self, path: str) -> FileBlob:
        ...

    async def put_file(self, path: str, content: str, sha: Optional[str], message: str) -> str:
        ...

    async def search_text(self, query: str) -> List[str]:
        ...

    async def get_branch_head(self, branch: Optional[str] = None) -> BranchHead:
        ...

    async def get_tree(self, ref: str, recursive: bool = False) -> List[TreeEntry]:
        ...

    async def create_tree(self, base_tree_sha: str, entries: Sequence[TreeEntry]) -> str:
        ...

    async def create_commit(self, message: str, tree_sha: str, parent_sha: str) -> str:
        ...

    async def move_ref(self, branch: str, commit_sha: str) -> None:
        ...

    async def get_checks(self, ref: str) -> List[CheckRun]:
        ...


class ModelProvider(Protocol):
    """
    Abstracts whichever LLM backend is configured. `history` holds prior
    messages, `new_parts` the messages produced since the last call, and
    `tools` the neutral `{name, description, parameters}` declarations the
    provider maps into its own function-calling format.
    """

    async def send_turn(
        self,
        *,
        model: str,
        system_instruction: str,
        tools: Sequence[Dict[str, Any]],
        history: Sequence[Message],
        new_parts: Sequence[Message],
    ) -> ModelReply:
        ...

    def stream_turn(
        self,
        *,
        model: str,
        system_instruction: str,
        tools: Sequence[Dict[str, Any]],
        history: Sequence[Message],
        new_parts: Sequence[Message],
    ) -> AsyncIterator[str | ModelReply]:
        ...


class ConversationStore(Protocol):
    def list(self) -> List[Conversation]:
        ...

    def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def save(self, conversation: Conversation) -> None:
        ...

    def delete(self, conversation_id: str) -> None:
        ...
