from gitchat.config import LoopConfig, ModelsConfig
from gitchat.policy import (
    AdvisoryKind,
    ToolHistory,
    TurnState,
    advise,
    read_tools_blocked,
    select_model,
)
from gitchat.tools import ToolKind

READ = [ToolKind.READ]
EDIT = [ToolKind.MUTATE]


def state_after(*rounds):
    state = TurnState()
    for kinds in rounds:
        state.record_round(kinds)
    return state


def test_round_classification():
    state = state_after(READ, READ, [ToolKind.PROBE], [ToolKind.READ, ToolKind.EXEC])
    assert state.rounds == 4
    assert state.search_streak == 2
    assert not state.has_edited
    state.record_round([ToolKind.READ, ToolKind.MUTATE])
    assert state.has_edited
    assert state.search_streak == 0


def test_plan_nudge_on_second_round():
    config = LoopConfig()
    assert advise(state_after(READ), config) is None
    assert advise(state_after(READ, READ), config).kind is AdvisoryKind.PLAN


def test_stop_searching_from_fourth_round_without_edit():
    config = LoopConfig()
    assert advise(state_after(READ, READ, READ), config) is None
    advisory = advise(state_after(READ, READ, READ, READ), config)
    assert advisory.kind is AdvisoryKind.STOP_SEARCHING
    assert advisory.text.startswith("[guidance] Stop searching")
    assert advise(state_after(READ, READ, EDIT, READ), config) is None


def test_hard_block_after_search_streak():
    config = LoopConfig(hard_block_streak=6)
    state = state_after(*[READ] * 6)
    assert read_tools_blocked(state, config)
    assert advise(state, config).kind is AdvisoryKind.HARD_BLOCK
    state.record_round(EDIT)
    assert not read_tools_blocked(state, config)


def test_final_warning_outranks_everything():
    config = LoopConfig(max_rounds=8, hard_block_streak=6, final_warning_margin=2)
    state = state_after(*[READ] * 6)
    advisory = advise(state, config)
    assert advisory.kind is AdvisoryKind.FINAL_WARNING
    assert "2 tool round(s) left" in advisory.text


def test_history_claims_and_releases():
    history = ToolHistory(["get_build_status"])
    assert history.claim("grep_search", "sig")
    assert not history.claim("grep_search", "sig")
    assert "sig" in history
    history.release("sig")
    assert history.claim("grep_search", "sig")
    assert history.claim("get_build_status", "probe")
    assert history.claim("get_build_status", "probe")
    assert history.counts["probe"] == 2


def test_virtual_model_escalates_on_edit_or_long_turn():
    models = ModelsConfig()
    loop = LoopConfig(escalate_after_rounds=5)
    assert select_model("think-tank", TurnState(), models, loop) == models.fast_model
    assert select_model("think-tank", state_after(EDIT), models, loop) == models.strong_model
    assert select_model("think-tank", state_after(*[READ] * 5), models, loop) == models.fast_model
    assert select_model("think-tank", state_after(*[READ] * 6), models, loop) == models.strong_model
    assert select_model("deepseek", state_after(EDIT), models, loop) == "deepseek"


def test_missing_model_name_uses_default_tier():
    models = ModelsConfig()
    loop = LoopConfig()
    assert select_model("", TurnState(), models, loop) == models.fast_model
    assert select_model("  ", state_after(EDIT), models, loop) == models.strong_model
    assert select_model("", TurnState(), ModelsConfig(default_model="deepseek-chat"), loop) == "deepseek-chat"
