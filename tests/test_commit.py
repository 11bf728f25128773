import asyncio

import pytest

from gitchat.commit import (
    STEP_CREATE_TREE,
    STEP_MOVE_REF,
    STEP_READ_TREE,
    CommitStepError,
    commit_staged,
    default_commit_message,
)
from gitchat.cache import StagedEdit
from gitchat.github import GatewayError
from gitchat.patching import patch

from .fakes import make_context


def test_staged_edits_land_as_one_commit():
    ctx = make_context({"a.txt": "a0", "b.txt": "b0", "keep.txt": "k"})
    ctx.gateway.modes["run.sh"] = "100755"
    ctx.gateway.files["run.sh"] = "#!/bin/sh"
    ctx.gateway.trees["t0"]["run.sh"] = "#!/bin/sh"
    ctx.stage("a.txt", "a1")
    ctx.stage("run.sh", "#!/bin/sh\necho hi")

    report = asyncio.run(commit_staged(ctx, "update two files"))

    assert report is not None
    assert report.file_count == 2
    assert report.parent_sha == "c0"
    assert ctx.gateway.head == report.commit_sha
    assert ctx.gateway.files == {"a.txt": "a1", "b.txt": "b0", "keep.txt": "k", "run.sh": "#!/bin/sh\necho hi"}
    assert ctx.gateway.commits[report.commit_sha]["message"] == "update two files"
    modes = {e.path: e.mode for e in ctx.gateway.last_tree_entries}
    assert modes == {"a.txt": "100644", "run.sh": "100755"}
    assert len(ctx.staged) == 0


def test_nothing_staged_returns_none():
    ctx = make_context({"a.txt": "a0"})
    assert asyncio.run(commit_staged(ctx)) is None
    assert "get_branch_head" not in ctx.gateway.calls


def test_tree_failure_keeps_buffer_and_remote():
    ctx = make_context({"a.txt": "a0"})
    ctx.stage("a.txt", "a1")
    ctx.gateway.fail["create_tree"] = GatewayError("boom", status=500)

    with pytest.raises(CommitStepError) as err:
        asyncio.run(commit_staged(ctx))

    assert err.value.step == STEP_CREATE_TREE
    assert ctx.staged.get("a.txt") == "a1"
    assert ctx.gateway.files == {"a.txt": "a0"}
    assert ctx.gateway.head == "c0"


def test_ref_update_failure_keeps_every_staged_file():
    ctx = make_context({"a.txt": "a0", "b.txt": "b0"})
    ctx.stage("a.txt", "a1")
    ctx.stage("b.txt", "b1")
    ctx.gateway.fail["move_ref"] = GatewayError("Update is not a fast forward", status=422)

    with pytest.raises(CommitStepError) as err:
        asyncio.run(commit_staged(ctx))

    assert err.value.step == STEP_MOVE_REF
    assert ctx.staged.paths() == ["a.txt", "b.txt"]
    assert ctx.gateway.files == {"a.txt": "a0", "b.txt": "b0"}
    assert ctx.gateway.head == "c0"

    del ctx.gateway.fail["move_ref"]
    report = asyncio.run(commit_staged(ctx))
    assert report is not None and report.file_count == 2
    assert ctx.gateway.files == {"a.txt": "a1", "b.txt": "b1"}


def test_concurrent_pushes_are_serialised():
    ctx = make_context({"a.txt": "a0"})
    ctx.stage("a.txt", "a1")

    async def scenario():
        return await asyncio.gather(commit_staged(ctx), commit_staged(ctx))

    first, second = asyncio.run(scenario())
    assert first is not None
    assert second is None
    assert ctx.gateway.calls.count("move_ref") == 1


def test_default_message_uses_single_note_or_lists_paths():
    assert default_commit_message([StagedEdit("a", "", "Fix typo")]) == "Fix typo"
    msg = default_commit_message([StagedEdit("a", "", "one"), StagedEdit("b", "", "two")])
    assert msg.startswith("Update a, b")
    assert "- one" in msg and "- two" in msg
    assert default_commit_message([StagedEdit("a", "")]) == "Update a"


def test_remote_change_since_read_aborts_commit():
    ctx = make_context({"a.txt": "v1\nkeep\n"})
    asyncio.run(ctx.load("a.txt"))
    ctx.gateway.external_commit({"a.txt": "v1\nexternal fix\n"})
    assert asyncio.run(patch(ctx, "a.txt", "v1", "v2")).ok

    with pytest.raises(CommitStepError) as err:
        asyncio.run(commit_staged(ctx))

    assert err.value.step == STEP_READ_TREE
    assert "a.txt changed on the branch" in str(err.value)
    assert ctx.gateway.files["a.txt"] == "v1\nexternal fix\n"
    assert ctx.staged.get("a.txt") == "v2\nkeep\n"
    assert "create_tree" not in ctx.gateway.calls

    # Re-applying the edit reads the new remote version first.
    assert asyncio.run(patch(ctx, "a.txt", "v1", "v2")).ok
    report = asyncio.run(commit_staged(ctx))
    assert report is not None
    assert ctx.gateway.files["a.txt"] == "v2\nexternal fix\n"
    assert not ctx.conflicts


def test_own_commits_do_not_look_stale():
    ctx = make_context({"a.txt": "a0"})
    asyncio.run(patch(ctx, "a.txt", "a0", "a1"))
    asyncio.run(commit_staged(ctx))
    asyncio.run(patch(ctx, "a.txt", "a1", "a2"))
    report = asyncio.run(commit_staged(ctx))
    assert report is not None
    assert ctx.gateway.files["a.txt"] == "a2"
    assert ctx.gateway.file_reads["a.txt"] == 1


def test_moved_head_drops_unstaged_cache_entries():
    ctx = make_context({"a.txt": "a0", "b.txt": "b0"})
    asyncio.run(ctx.load("b.txt"))
    ctx.stage("a.txt", "a1")
    asyncio.run(commit_staged(ctx))
    assert ctx.cache.get("b.txt") == "b0"

    ctx.gateway.external_commit({"b.txt": "b1"})
    ctx.stage("a.txt", "a2")
    asyncio.run(commit_staged(ctx))

    assert "b.txt" not in ctx.cache
    assert asyncio.run(ctx.load("b.txt")) == "b1"
