"""
gitchat.tools

Tool registry: closed set of tool identities, their declarations, and the
executors that run them against a repository context.

Executors always return a ToolResult whose `output` is what the model reads;
failures are reported as actionable `Error: ...` strings, never raised.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .commit import CommitStepError, commit_staged
from .config import ToolsConfig
from .context import RepoContext
from .github import GatewayError
from .interfaces import CheckRun
from .patching import parse_hunks, patch, patch_multi
from .schema import ToolCall, ToolResult
from .shell import run_shell

logger = logging.getLogger(__name__)


class ToolKind(str, Enum):
    READ = "read"
    MUTATE = "mutate"
    PROBE = "probe"
    EXEC = "exec"


class ToolName(str, Enum):
    LIST_FILES = "list_files"
    READ_FILE = "read_file"
    VIEW_FILE = "view_file"
    GREP_SEARCH = "grep_search"
    SEARCH_CODE = "search_code"
    PATCH_FILE = "patch_file"
    PATCH_FILE_MULTI = "patch_file_multi"
    WRITE_FILE = "write_file"
    PUSH_TO_GITHUB = "push_to_github"
    GET_BUILD_STATUS = "get_build_status"
    RUN_COMMAND = "run_command"

    @property
    def kind(self) -> ToolKind:
        return TOOL_KINDS[self]

    @classmethod
    def parse(cls, name: str) -> Optional["ToolName"]:
        try:
            return cls(name)
        except ValueError:
            return None


TOOL_KINDS: Dict[ToolName, ToolKind] = {
    ToolName.LIST_FILES: ToolKind.READ,
    ToolName.READ_FILE: ToolKind.READ,
    ToolName.VIEW_FILE: ToolKind.READ,
    ToolName.GREP_SEARCH: ToolKind.READ,
    ToolName.SEARCH_CODE: ToolKind.READ,
    ToolName.PATCH_FILE: ToolKind.MUTATE,
    ToolName.PATCH_FILE_MULTI: ToolKind.MUTATE,
    ToolName.WRITE_FILE: ToolKind.MUTATE,
    ToolName.PUSH_TO_GITHUB: ToolKind.MUTATE,
    ToolName.GET_BUILD_STATUS: ToolKind.PROBE,
    ToolName.RUN_COMMAND: ToolKind.EXEC,
}

_unclassified = set(ToolName) - set(TOOL_KINDS)
if _unclassified:
    raise RuntimeError(f"tools without a kind: {sorted(t.value for t in _unclassified)}")


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    parameters: Dict[str, Any]

    @property
    def required(self) -> List[str]:
        return list(self.parameters.get("required", []))

    def declaration(self) -> Dict[str, Any]:
        return {"name": self.name.value, "description": self.description, "parameters": copy.deepcopy(self.parameters)}


def _obj(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required or []}


_STR = {"type": "string"}
_INT = {"type": "integer"}

TOOL_SPECS: List[ToolSpec] = [
    ToolSpec(
        ToolName.LIST_FILES,
        "List files and folders in a repository directory. Empty path lists the root.",
        _obj({"path": _STR}),
    ),
    ToolSpec(
        ToolName.READ_FILE,
        "Read the full content of a file. Staged (unpushed) edits are included.",
        _obj({"path": _STR}, ["path"]),
    ),
    ToolSpec(
        ToolName.VIEW_FILE,
        "View a line range of a file with line numbers. Prefer this over read_file for large files.",
        _obj({"path": _STR, "start_line": _INT, "end_line": _INT}, ["path"]),
    ),
    ToolSpec(
        ToolName.GREP_SEARCH,
        "Case-insensitive substring search inside one file. Returns 'lineNumber: content' lines.",
        _obj({"path": _STR, "query": _STR}, ["path", "query"]),
    ),
    ToolSpec(
        ToolName.SEARCH_CODE,
        "Search the whole repository for text, then show the matching lines of the top files.",
        _obj({"query": _STR}, ["query"]),
    ),
    ToolSpec(
        ToolName.PATCH_FILE,
        "Replace one exact, unique block of text in a file. The edit is staged until push_to_github.",
        _obj(
            {"path": _STR, "search": _STR, "replace": _STR, "commit_message": _STR},
            ["path", "search", "replace"],
        ),
    ),
    ToolSpec(
        ToolName.PATCH_FILE_MULTI,
        "Apply several search/replace edits to one file at once. Either every edit applies or none do.",
        _obj(
            {
                "path": _STR,
                "edits": {
                    "type": "array",
                    "items": _obj({"search": _STR, "replace": _STR}, ["search", "replace"]),
                },
                "commit_message": _STR,
            },
            ["path", "edits"],
        ),
    ),
    ToolSpec(
        ToolName.WRITE_FILE,
        "Create or fully overwrite a file with the given content. The write is staged until push_to_github.",
        _obj({"path": _STR, "content": _STR, "commit_message": _STR}, ["path", "content"]),
    ),
    ToolSpec(
        ToolName.PUSH_TO_GITHUB,
        "Commit every staged edit to the branch as one atomic commit.",
        _obj({"commit_message": _STR}),
    ),
    ToolSpec(
        ToolName.GET_BUILD_STATUS,
        "Show the latest CI check runs for the branch.",
        _obj({"ref": _STR}),
    ),
    ToolSpec(
        ToolName.RUN_COMMAND,
        "Run a shell command in the local checkout (when one is configured).",
        _obj({"command": _STR, "timeout_sec": _INT}, ["command"]),
    ),
]


def to_openai_tools(declarations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"type": "function", "function": copy.deepcopy(d)} for d in declarations]


def _gemini_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        out: Dict[str, Any] = {}
        for key, value in schema.items():
            if key == "type" and isinstance(value, str):
                out[key] = value.upper()
            elif key == "required" and not value:
                continue
            else:
                out[key] = _gemini_schema(value)
        return out
    if isinstance(schema, list):
        return [_gemini_schema(v) for v in schema]
    return schema


def to_gemini_tools(declarations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "functionDeclarations": [
                {"name": d["name"], "description": d["description"], "parameters": _gemini_schema(d["parameters"])}
                for d in declarations
            ]
        }
    ]


def truncate_output(text: str, *, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    return text[:half] + f"\n\n... [{len(text) - max_chars} chars truncated] ...\n\n" + text[-half:]


def interpret_checks(runs: List[CheckRun]) -> str:
    if not runs:
        return "No check runs found"
    latest = runs[0]
    if latest.status in {"in_progress", "queued"}:
        return "Building"
    if latest.conclusion == "success":
        return "Live"
    if latest.conclusion == "failure":
        return "Failed"
    return latest.conclusion or latest.status


Executor = Callable[[Dict[str, Any]], Awaitable[ToolResult]]


class ToolRegistry:
    def __init__(self, ctx: RepoContext, config: ToolsConfig | None = None):
        self.ctx = ctx
        self.config = config or ToolsConfig()
        self.specs: Dict[ToolName, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}
        self._executors: Dict[ToolName, Executor] = {
            ToolName.LIST_FILES: self._list_files,
            ToolName.READ_FILE: self._read_file,
            ToolName.VIEW_FILE: self._view_file,
            ToolName.GREP_SEARCH: self._grep_search,
            ToolName.SEARCH_CODE: self._search_code,
            ToolName.PATCH_FILE: self._patch_file,
            ToolName.PATCH_FILE_MULTI: self._patch_file_multi,
            ToolName.WRITE_FILE: self._write_file,
            ToolName.PUSH_TO_GITHUB: self._push,
            ToolName.GET_BUILD_STATUS: self._build_status,
            ToolName.RUN_COMMAND: self._run_command,
        }

    def declarations(self) -> List[Dict[str, Any]]:
        return [spec.declaration() for spec in self.specs.values()]

    def kind_of(self, name: str) -> Optional[ToolKind]:
        tool = ToolName.parse(name)
        return tool.kind if tool is not None else None

    def replace_executor(self, name: ToolName, executor: Executor) -> None:
        self._executors[name] = executor

    async def execute(self, call: ToolCall) -> ToolResult:
        tool = ToolName.parse(call.name)
        if tool is None:
            known = ", ".join(t.value for t in ToolName)
            return self._error(call, f"Error: unknown tool '{call.name}'. Available tools: {known}")
        missing = [key for key in self.specs[tool].required if call.args.get(key) in (None, "")]
        if missing:
            return self._error(call, f"Error: {tool.value} is missing required argument(s): {', '.join(missing)}")
        try:
            result = await self._executors[tool](call.args)
        except GatewayError as exc:
            result = ToolResult(ok=False, tool=tool.value, output=_gateway_error_text(exc, call.args))
        except Exception as exc:  # noqa: BLE001
            logger.exception("tool %s crashed", tool.value)
            result = ToolResult(ok=False, tool=tool.value, output=f"Error: {tool.value} failed: {exc}")
        result.call_id = call.id
        return result

    # -- read tools -------------------------------------------------------

    async def _list_files(self, args: Dict[str, Any]) -> ToolResult:
        path = str(args.get("path") or "").strip().strip("/")
        try:
            entries = await self.ctx.gateway.list_dir(path)
        except GatewayError as exc:
            if not exc.not_found:
                raise
            entries = []
        lines = [f"{'dir ' if e.kind == 'dir' else 'file'} {e.path}" for e in entries]
        listed = {e.path for e in entries}
        prefix = f"{path}/" if path else ""
        for staged_path in self.ctx.staged.paths():
            if staged_path.startswith(prefix) and "/" not in staged_path[len(prefix):] and staged_path not in listed:
                lines.append(f"file {staged_path} (staged, not pushed)")
        if not lines:
            if not entries and path:
                return self._fail("list_files", f"Error: directory not found: {path}")
            return self._ok("list_files", "Empty directory.")
        return self._ok("list_files", "\n".join(lines))

    async def _read_file(self, args: Dict[str, Any]) -> ToolResult:
        path = _clean_path(args["path"])
        content = await self.ctx.load(path)
        limit = self.config.read_max_chars
        if len(content) > limit:
            head = content[:limit]
            return self._ok(
                "read_file",
                f"{head}\n\n[truncated: {path} has {len(content)} chars, showing the first {limit}. "
                "Use view_file with start_line/end_line to see the rest.]",
                data={"path": path, "truncated": True},
            )
        return self._ok("read_file", content, data={"path": path})

    async def _view_file(self, args: Dict[str, Any]) -> ToolResult:
        path = _clean_path(args["path"])
        content = await self.ctx.load(path)
        lines = content.splitlines()
        total = len(lines)
        start = max(1, _as_int(args.get("start_line"), 1))
        end = _as_int(args.get("end_line"), total) or total
        if total == 0:
            return self._ok("view_file", f"{path} is empty.")
        if start > total:
            return self._fail("view_file", f"Error: start_line {start} is past the end of {path} ({total} lines)")
        end = min(max(end, start), total)
        note = ""
        if end - start + 1 > self.config.view_max_lines:
            end = start + self.config.view_max_lines - 1
            note = f"\n[truncated at {self.config.view_max_lines} lines; request start_line={end + 1} to continue]"
        width = len(str(end))
        body = "\n".join(f"{n:>{width}}| {lines[n - 1]}" for n in range(start, end + 1))
        return self._ok("view_file", f"{path} (lines {start}-{end} of {total})\n{body}{note}")

    async def _grep_search(self, args: Dict[str, Any]) -> ToolResult:
        path = _clean_path(args["path"])
        query = str(args["query"])
        content = await self.ctx.load(path)
        matches = grep_lines(content, query)
        if not matches:
            return self._ok("grep_search", f"No matches for '{query}' in {path}.")
        cap = self.config.grep_max_results
        out = [f"{n}: {line}" for n, line in matches[:cap]]
        if len(matches) > cap:
            out.append(f"[{len(matches) - cap} more matches not shown]")
        return self._ok("grep_search", "\n".join(out), data={"matches": len(matches)})

    async def _search_code(self, args: Dict[str, Any]) -> ToolResult:
        query = str(args["query"])
        paths = await self.ctx.gateway.search_text(query)
        for staged_path, content in self.ctx.staged.items():
            if staged_path not in paths and query.lower() in content.lower():
                paths.insert(0, staged_path)
        paths = paths[: self.config.search_max_files]
        if not paths:
            return self._ok("search_code", f"No files matched '{query}'.")
        sections: List[str] = []
        for path in paths:
            try:
                content = await self.ctx.load(path)
            except GatewayError as exc:
                sections.append(f"{path}\n  (could not read: {exc})")
                continue
            hits = grep_lines(content, query)[: self.config.search_max_lines]
            if hits:
                sections.append(path + "\n" + "\n".join(f"  {n}: {line.strip()}" for n, line in hits))
            else:
                sections.append(f"{path}\n  (indexed match, no exact line match)")
        return self._ok("search_code", truncate_output("\n\n".join(sections), max_chars=self.config.read_max_chars))

    # -- mutation tools ---------------------------------------------------

    async def _patch_file(self, args: Dict[str, Any]) -> ToolResult:
        path = _clean_path(args["path"])
        result = await patch(
            self.ctx,
            path,
            str(args["search"]),
            str(args["replace"]),
            message=str(args.get("commit_message") or ""),
        )
        if not result.ok:
            return self._fail("patch_file", f"Error: {result.message}.")
        return self._ok("patch_file", f"Patched {path}. {self._staged_note()}", data={"path": path})

    async def _patch_file_multi(self, args: Dict[str, Any]) -> ToolResult:
        path = _clean_path(args["path"])
        try:
            hunks = parse_hunks(args["edits"])
        except ValueError as exc:
            return self._fail("patch_file_multi", f"Error: {exc}")
        result = await patch_multi(self.ctx, path, hunks, message=str(args.get("commit_message") or ""))
        report = "\n".join(result.hunk_reports)
        if not result.ok:
            return self._fail("patch_file_multi", f"Error: {result.message}.\n{report}")
        return self._ok("patch_file_multi", f"Applied {len(hunks)} edit(s) to {path}. {self._staged_note()}\n{report}")

    async def _write_file(self, args: Dict[str, Any]) -> ToolResult:
        path = _clean_path(args["path"])
        content = str(args["content"])
        self.ctx.stage(path, content, str(args.get("commit_message") or ""))
        return self._ok("write_file", f"Staged {path} ({len(content)} chars). {self._staged_note()}", data={"path": path})

    async def _push(self, args: Dict[str, Any]) -> ToolResult:
        pending = len(self.ctx.staged)
        try:
            report = await commit_staged(self.ctx, str(args.get("commit_message") or "") or None)
        except CommitStepError as exc:
            return self._fail(
                "push_to_github",
                f"Error: push failed at step '{exc.step}': {exc.cause}. "
                f"The {pending} staged file(s) were kept; fix the problem and call push_to_github again.",
            )
        if report is None:
            return self._ok("push_to_github", "Nothing to push: no staged edits.")
        return self._ok(
            "push_to_github",
            f"Committed {report.file_count} file(s) to branch '{self.ctx.gateway.branch}' "
            f"as {report.commit_sha[:7]}: {', '.join(report.paths)}",
            data={"commit": report.commit_sha, "files": report.paths},
        )

    # -- probes -----------------------------------------------------------

    async def _build_status(self, args: Dict[str, Any]) -> ToolResult:
        ref = str(args.get("ref") or self.ctx.gateway.branch)
        runs = await self.ctx.gateway.get_checks(ref)
        lines = [f"Build status for {ref}: {interpret_checks(runs)}"]
        for run in runs[:10]:
            lines.append(f"- {run.name}: {run.status}" + (f" ({run.conclusion})" if run.conclusion else ""))
        return self._ok("get_build_status", "\n".join(lines))

    async def _run_command(self, args: Dict[str, Any]) -> ToolResult:
        workdir = self.config.shell_workdir
        if not workdir:
            return self._fail("run_command", "Error: run_command is unavailable: no local checkout is configured.")
        timeout = min(_as_int(args.get("timeout_sec"), self.config.shell_timeout_sec), self.config.shell_timeout_sec)
        result = await run_shell(str(args["command"]), cwd=workdir, timeout_sec=max(1, timeout))
        parts: List[str] = []
        if result.stdout:
            parts.append(result.stdout)
        if result.stderr:
            parts.append(f"[stderr]\n{result.stderr}")
        parts.append(f"[exit code: {result.exit_code}]")
        output = truncate_output("\n".join(parts), max_chars=self.config.read_max_chars)
        return ToolResult(ok=result.ok, tool="run_command", output=output, data={"exit_code": result.exit_code})

    # -- helpers ----------------------------------------------------------

    def _staged_note(self) -> str:
        count = len(self.ctx.staged)
        return f"{count} file(s) staged; call push_to_github to commit."

    def _ok(self, tool: str, output: str, data: Dict[str, Any] | None = None) -> ToolResult:
        return ToolResult(ok=True, tool=tool, output=output, data=data or {})

    def _fail(self, tool: str, output: str) -> ToolResult:
        return ToolResult(ok=False, tool=tool, output=output)

    def _error(self, call: ToolCall, output: str) -> ToolResult:
        return ToolResult(ok=False, tool=call.name, call_id=call.id, output=output)


def grep_lines(content: str, query: str) -> List[tuple[int, str]]:
    needle = query.lower()
    return [(n, line) for n, line in enumerate(content.splitlines(), start=1) if needle in line.lower()]


def _clean_path(raw: Any) -> str:
    path = str(raw).strip()
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _gateway_error_text(exc: GatewayError, args: Dict[str, Any]) -> str:
    path = args.get("path")
    if exc.not_found and path:
        return f"Error: file not found: {path}. Use list_files to check the path."
    return f"Error: {exc}"
