"""
gitchat.policy

Per-turn bookkeeping and the escalating intervention policy.

The policy is a pure function of TurnState: it never touches tool semantics,
it only decides which advisory (if any) accompanies a round's results and
whether read-only tools are currently refused.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Set

from .config import LoopConfig, ModelsConfig
from .tools import ToolKind


class AdvisoryKind(str, Enum):
    PLAN = "plan"
    STOP_SEARCHING = "stop_searching"
    HARD_BLOCK = "hard_block"
    FINAL_WARNING = "final_warning"


@dataclass(frozen=True)
class Advisory:
    kind: AdvisoryKind
    text: str


PLAN_TEXT = (
    "[guidance] You have used {rounds} tool rounds. Before calling more tools, "
    "state your plan in one or two sentences: what you will change and where."
)
STOP_SEARCHING_TEXT = (
    "[guidance] Stop searching, propose a plan and make an edit. You have spent {rounds} "
    "rounds without changing anything. Apply the change with patch_file, patch_file_multi "
    "or write_file now, or ask the user for the missing information."
)
HARD_BLOCK_TEXT = (
    "[guidance] Read-only tools are now blocked: {streak} consecutive search-only rounds "
    "without an edit. Make an edit with what you already know, or stop and ask the user for help."
)
FINAL_WARNING_TEXT = (
    "[guidance] Final warning: {remaining} tool round(s) left in this turn. Push staged "
    "edits with push_to_github if they are ready, then summarise what was done and what remains."
)
BLOCKED_CALL_TEXT = (
    "Error: {tool} refused: {streak} consecutive search-only rounds without an edit. "
    "Make an edit with patch_file/write_file or ask the user for help."
)


class ToolHistory:
    """
    Signature -> occurrence count for one turn.

    A signature is reserved when its call is dispatched, so identical calls in
    the same round collide too. A failed call releases its reservation so the
    model can retry it once the cause is fixed.
    """

    def __init__(self, repeatable: Iterable[str] = ()):
        self.counts: Dict[str, int] = {}
        self._claimed: Set[str] = set()
        self._repeatable = {name.lower() for name in repeatable}

    def claim(self, name: str, signature: str) -> bool:
        self.counts[signature] = self.counts.get(signature, 0) + 1
        if name.lower() in self._repeatable:
            return True
        if signature in self._claimed:
            return False
        self._claimed.add(signature)
        return True

    def release(self, signature: str) -> None:
        self._claimed.discard(signature)

    def __contains__(self, signature: object) -> bool:
        return signature in self._claimed


@dataclass
class TurnState:
    rounds: int = 0
    has_edited: bool = False
    search_streak: int = 0
    history: ToolHistory = field(default_factory=ToolHistory)

    def record_round(self, invoked: Iterable[ToolKind]) -> None:
        """Advance the round counter and classify the round by the tools it actually ran."""
        kinds = list(invoked)
        self.rounds += 1
        if any(k is ToolKind.MUTATE for k in kinds):
            self.has_edited = True
            self.search_streak = 0
        elif kinds and all(k is ToolKind.READ for k in kinds):
            self.search_streak += 1


def read_tools_blocked(state: TurnState, config: LoopConfig) -> bool:
    return not state.has_edited and state.search_streak >= config.hard_block_streak


def advise(state: TurnState, config: LoopConfig) -> Optional[Advisory]:
    """Pick the advisory for the round that just finished, most urgent first."""
    remaining = config.max_rounds - state.rounds
    if 0 < remaining <= config.final_warning_margin:
        return Advisory(AdvisoryKind.FINAL_WARNING, FINAL_WARNING_TEXT.format(remaining=remaining))
    if read_tools_blocked(state, config):
        return Advisory(AdvisoryKind.HARD_BLOCK, HARD_BLOCK_TEXT.format(streak=state.search_streak))
    if not state.has_edited and state.rounds >= config.stop_search_round:
        return Advisory(AdvisoryKind.STOP_SEARCHING, STOP_SEARCHING_TEXT.format(rounds=state.rounds))
    if state.rounds == config.plan_nudge_round:
        return Advisory(AdvisoryKind.PLAN, PLAN_TEXT.format(rounds=state.rounds))
    return None


def select_model(requested: str, state: TurnState, models: ModelsConfig, loop: LoopConfig) -> str:
    """
    Resolve the virtual tiered selection: cheap model until the turn edits
    something or runs long, strong model for the rest of the turn.
    """
    requested = requested.strip() or models.default_model
    if requested.lower() != models.virtual_model.lower():
        return requested
    if state.has_edited or state.rounds > loop.escalate_after_rounds:
        return models.strong_model
    return models.fast_model
