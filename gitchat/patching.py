"""
gitchat.patching

Surgical search/replace edits. The search text is a literal, never a pattern,
and must match exactly once; multi-hunk patches are all-or-nothing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from .context import RepoContext


@dataclass
class PatchResult:
    ok: bool
    message: str
    path: str
    content: str = ""
    hunk_reports: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Hunk:
    search: str
    replace: str


def count_occurrences(text: str, needle: str) -> int:
    # str.count does not count overlapping matches; walk instead.
    count = 0
    start = 0
    while True:
        idx = text.find(needle, start)
        if idx < 0:
            return count
        count += 1
        start = idx + 1


def check_hunk(path: str, content: str, hunk: Hunk) -> Tuple[int, str]:
    """Return (match offset, "") for a valid hunk, or (-1, reason)."""
    if not hunk.search:
        return -1, "search block is empty"
    if hunk.search == hunk.replace:
        return -1, "search and replace are identical (no change)"
    occurrences = count_occurrences(content, hunk.search)
    if occurrences == 0:
        return -1, (
            f"search block not found in {path}. Check exact whitespace and indentation, "
            "or view the file again before retrying"
        )
    if occurrences > 1:
        return -1, (
            f"search block matches {occurrences} occurrences in {path}; it must be unique. "
            "Include more surrounding lines to make the search block unique"
        )
    return content.find(hunk.search), ""


def apply_hunks(path: str, content: str, hunks: Sequence[Hunk]) -> PatchResult:
    """
    Validate every hunk against the original content, then splice all of
    them. Any invalid or overlapping hunk rejects the whole patch.
    """
    reports: List[str] = []
    spans: List[Tuple[int, int, int]] = []
    failed = False
    for idx, hunk in enumerate(hunks, start=1):
        offset, reason = check_hunk(path, content, hunk)
        if offset < 0:
            failed = True
            reports.append(f"hunk {idx}: FAILED - {reason}")
            continue
        spans.append((offset, offset + len(hunk.search), idx - 1))
        reports.append(f"hunk {idx}: ok (line {content.count(chr(10), 0, offset) + 1})")

    ordered = sorted(spans)
    for (start_a, end_a, idx_a), (start_b, _end_b, idx_b) in zip(ordered, ordered[1:]):
        if start_b < end_a:
            failed = True
            reports.append(f"hunk {idx_b + 1}: FAILED - overlaps hunk {idx_a + 1}")

    if failed:
        return PatchResult(
            ok=False,
            message=f"patch rejected for {path}; no hunks were applied",
            path=path,
            content=content,
            hunk_reports=reports,
        )

    patched = content
    for start, end, idx in sorted(spans, reverse=True):
        patched = patched[:start] + hunks[idx].replace + patched[end:]
    return PatchResult(ok=True, message=f"applied {len(hunks)} hunk(s) to {path}", path=path, content=patched, hunk_reports=reports)


def parse_hunks(raw: Any) -> List[Hunk]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("'edits' must be a non-empty list of {search, replace} objects")
    hunks: List[Hunk] = []
    for idx, item in enumerate(raw, start=1):
        if not isinstance(item, dict) or "search" not in item or "replace" not in item:
            raise ValueError(f"edit {idx} must be an object with 'search' and 'replace'")
        hunks.append(Hunk(search=str(item["search"]), replace=str(item["replace"])))
    return hunks


async def patch(ctx: RepoContext, path: str, search: str, replace: str, message: str = "") -> PatchResult:
    content = await ctx.load(path)
    offset, reason = check_hunk(path, content, Hunk(search, replace))
    if offset < 0:
        return PatchResult(ok=False, message=reason, path=path, content=content)
    patched = content[:offset] + replace + content[offset + len(search):]
    ctx.stage(path, patched, message)
    return PatchResult(ok=True, message=f"patched {path}", path=path, content=patched)


async def patch_multi(ctx: RepoContext, path: str, edits: Sequence[Dict[str, Any]] | Sequence[Hunk], message: str = "") -> PatchResult:
    hunks = [h if isinstance(h, Hunk) else Hunk(str(h["search"]), str(h["replace"])) for h in edits]
    content = await ctx.load(path)
    result = apply_hunks(path, content, hunks)
    if result.ok:
        ctx.stage(path, result.content, message)
    return result
