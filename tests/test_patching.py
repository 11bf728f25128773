import asyncio

from gitchat.patching import Hunk, apply_hunks, count_occurrences, parse_hunks, patch, patch_multi

from .fakes import make_context

SOURCE = "def a():\n    return 1\n\ndef b():\n    return 1\n"


def test_count_occurrences_counts_overlaps():
    assert count_occurrences("aaa", "aa") == 2
    assert count_occurrences("abc", "x") == 0


def test_unique_match_is_staged():
    ctx = make_context({"m.py": SOURCE})
    result = asyncio.run(patch(ctx, "m.py", "def a():\n    return 1", "def a():\n    return 2"))
    assert result.ok
    assert ctx.staged.get("m.py") == SOURCE.replace("return 1", "return 2", 1)
    assert ctx.gateway.files["m.py"] == SOURCE


def test_ambiguous_search_is_rejected_without_changes():
    ctx = make_context({"m.py": SOURCE})
    result = asyncio.run(patch(ctx, "m.py", "return 1", "return 2"))
    assert not result.ok
    assert "2 occurrences" in result.message
    assert "unique" in result.message
    assert "m.py" not in ctx.staged
    assert asyncio.run(ctx.load("m.py")) == SOURCE


def test_missing_search_mentions_whitespace():
    ctx = make_context({"m.py": SOURCE})
    result = asyncio.run(patch(ctx, "m.py", "return  1", "return 2"))
    assert not result.ok
    assert "not found" in result.message
    assert "whitespace" in result.message


def test_regex_characters_are_literal():
    ctx = make_context({"r.txt": "a.b\naxb\n"})
    result = asyncio.run(patch(ctx, "r.txt", "a.b", "ok"))
    assert result.ok
    assert ctx.staged.get("r.txt") == "ok\naxb\n"


def test_multi_hunk_is_all_or_nothing():
    ctx = make_context({"m.py": SOURCE})
    edits = [
        {"search": "def a():", "replace": "def alpha():"},
        {"search": "return 1", "replace": "return 3"},
    ]
    result = asyncio.run(patch_multi(ctx, "m.py", edits))
    assert not result.ok
    assert result.hunk_reports[0].startswith("hunk 1: ok")
    assert "hunk 2: FAILED" in result.hunk_reports[1]
    assert "m.py" not in ctx.staged


def test_multi_hunk_validates_against_original_content():
    content = "alpha\nbeta\n"
    result = apply_hunks("f", content, [Hunk("alpha", "beta"), Hunk("beta\n", "gamma\n")])
    assert result.ok
    assert result.content == "beta\ngamma\n"


def test_overlapping_hunks_are_rejected():
    result = apply_hunks("f", "abcdef", [Hunk("abcd", "X"), Hunk("cdef", "Y")])
    assert not result.ok
    assert any("overlaps" in r for r in result.hunk_reports)
    assert result.content == "abcdef"


def test_parse_hunks_rejects_bad_shapes():
    for raw in (None, [], [{"search": "a"}], ["x"]):
        try:
            parse_hunks(raw)
        except ValueError:
            continue
        raise AssertionError(f"accepted {raw!r}")
