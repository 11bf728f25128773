"""
gitchat.github

Remote Repository Gateway over the GitHub REST API.

Reads go through the contents API; the multi-file commit path uses the git
data API (refs, commits, trees) so several staged edits land as one commit.
"""
from __future__ import annotations

import base64
import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from .config import GitHubConfig
from .interfaces import BranchHead, CheckRun, DirEntry, FileBlob, TreeEntry
from .retry import call_with_retries

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404


def encode_content(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


def decode_content(encoded: str, path: str = "") -> str:
    raw = base64.b64decode("".join(encoded.split()))
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise GatewayError(f"'{path or 'file'}' is not a UTF-8 text file and cannot be read or edited here") from exc


def git_blob_sha(content: str) -> str:
    """The object id git assigns to a blob holding `content` as UTF-8."""
    data = content.encode("utf-8")
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class GitHubGateway:
    def __init__(
        self,
        config: GitHubConfig,
        *,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.repo = config.repo
        self.branch = config.branch
        self.read_retries = config.read_retries
        token = config.token() if token is None else token
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.api_base.rstrip("/"),
            timeout=config.timeout_sec,
        )
        self._headers = headers

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- contents API -----------------------------------------------------

    async def list_dir(self, path: str = "") -> List[DirEntry]:
        data = await self._get(self._contents_url(path), params={"ref": self.branch})
        if not isinstance(data, list):
            raise GatewayError(f"path '{path}' is a file, not a directory")
        return [
            DirEntry(path=str(item.get("path", "")), kind=str(item.get("type", "file")), size=int(item.get("size") or 0))
            for item in data
        ]

    async def get_file(self, path: str) -> FileBlob:
        data = await self._get(self._contents_url(path), params={"ref": self.branch})
        if not isinstance(data, dict) or data.get("type") != "file":
            raise GatewayError(f"'{path}' is not a file")
        content = data.get("content")
        if content is None or (data.get("encoding") == "none"):
            # Files above 1MB come back without inline content.
            blob = await self._get(f"/repos/{self.repo}/git/blobs/{data['sha']}")
            content = blob.get("content", "")
        return FileBlob(path=path, content=decode_content(content, path), sha=str(data.get("sha", "")))

    async def put_file(self, path: str, content: str, sha: Optional[str], message: str) -> str:
        body: Dict[str, Any] = {
            "message": message or f"Update {path}",
            "content": encode_content(content),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha
        data = await self._request("PUT", self._contents_url(path), json=body)
        return str(data.get("commit", {}).get("sha", ""))

    async def write_file_direct(self, path: str, content: str, message: str = "") -> str:
        """
        Read-modify-write of a single file: the current blob sha is sent along
        so GitHub rejects the write if the file moved underneath us.
        """
        sha: Optional[str] = None
        try:
            sha = (await self.get_file(path)).sha
        except GatewayError as exc:
            if not exc.not_found:
                raise
        return await self.put_file(path, content, sha, message)

    async def search_text(self, query: str) -> List[str]:
        data = await self._get("/search/code", params={"q": f"{query} repo:{self.repo}", "per_page": 30})
        items = data.get("items", []) if isinstance(data, dict) else []
        paths: List[str] = []
        for item in items:
            path = item.get("path")
            if isinstance(path, str) and path not in paths:
                paths.append(path)
        return paths

    # -- git data API -----------------------------------------------------

    async def get_branch_head(self, branch: Optional[str] = None) -> BranchHead:
        name = branch or self.branch
        ref = await self._get(f"/repos/{self.repo}/git/ref/heads/{quote(name, safe='/')}")
        commit_sha = str(ref["object"]["sha"])
        commit = await self._get(f"/repos/{self.repo}/git/commits/{commit_sha}")
        return BranchHead(commit_sha=commit_sha, tree_sha=str(commit["tree"]["sha"]))

    async def get_tree(self, ref: str, recursive: bool = False) -> List[TreeEntry]:
        params = {"recursive": "1"} if recursive else None
        data = await self._get(f"/repos/{self.repo}/git/trees/{quote(ref, safe='')}", params=params)
        return [
            TreeEntry(
                path=str(item.get("path", "")),
                mode=str(item.get("mode", "100644")),
                type=str(item.get("type", "blob")),
                sha=item.get("sha"),
            )
            for item in data.get("tree", [])
        ]

    async def create_tree(self, base_tree_sha: str, entries: Sequence[TreeEntry]) -> str:
        tree: List[Dict[str, Any]] = []
        for entry in entries:
            item: Dict[str, Any] = {"path": entry.path, "mode": entry.mode, "type": entry.type}
            if entry.content is not None:
                item["content"] = entry.content
            else:
                item["sha"] = entry.sha
            tree.append(item)
        data = await self._request("POST", f"/repos/{self.repo}/git/trees", json={"base_tree": base_tree_sha, "tree": tree})
        return str(data["sha"])

    async def create_commit(self, message: str, tree_sha: str, parent_sha: str) -> str:
        data = await self._request(
            "POST",
            f"/repos/{self.repo}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": [parent_sha]},
        )
        return str(data["sha"])

    async def move_ref(self, branch: str, commit_sha: str) -> None:
        # force=false: GitHub refuses anything but a fast-forward, so a head
        # that moved since we read it fails here instead of being overwritten.
        await self._request(
            "PATCH",
            f"/repos/{self.repo}/git/refs/heads/{quote(branch, safe='/')}",
            json={"sha": commit_sha, "force": False},
        )

    async def get_checks(self, ref: str) -> List[CheckRun]:
        data = await self._get(f"/repos/{self.repo}/commits/{quote(ref, safe='')}/check-runs")
        return [
            CheckRun(
                name=str(run.get("name", "")),
                status=str(run.get("status", "")),
                conclusion=run.get("conclusion"),
                url=str(run.get("html_url") or ""),
            )
            for run in data.get("check_runs", [])
        ]

    # -- account ----------------------------------------------------------

    async def repo_info(self) -> Dict[str, Any]:
        return await self._get(f"/repos/{self.repo}")

    async def list_repos(self) -> List[str]:
        data = await self._get("/user/repos", params={"sort": "updated", "per_page": 100})
        return [str(item["full_name"]) for item in data if isinstance(item, dict) and item.get("full_name")]

    # -- transport --------------------------------------------------------

    def _contents_url(self, path: str) -> str:
        clean = path.strip().strip("/")
        return f"/repos/{self.repo}/contents/{quote(clean)}" if clean else f"/repos/{self.repo}/contents"

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        # Reads are idempotent, so transient failures are retried.
        return await call_with_retries(
            lambda: self._request("GET", url, params=params),
            retries=self.read_retries,
            base_delay=0.5,
            max_delay=5.0,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        logger.debug("github %s %s", method, url)
        response = await self._client.request(method, url, headers=self._headers, **kwargs)
        if response.status_code >= 400:
            raise GatewayError(
                f"GitHub {method} {url} failed ({response.status_code}): {_error_message(response)}",
                status=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:300] or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase
