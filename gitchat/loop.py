"""
gitchat.loop

Loop controller: runs one conversational turn as a bounded sequence of
model-call -> tool-execution rounds.

Rounds are strictly sequential; the tool calls requested in one round run
concurrently and are all collected before the next model call. Cancellation
is cooperative and checked before every model call and before dispatching
each tool call.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .config import LoopConfig, ModelsConfig
from .events import EventLogger
from .interfaces import ConversationStore, ModelProvider
from .policy import (
    BLOCKED_CALL_TEXT,
    Advisory,
    ToolHistory,
    TurnState,
    advise,
    read_tools_blocked,
    select_model,
)
from .retry import call_with_retries, is_transient
from .schema import Conversation, ImageAttachment, Message, ModelReply, ToolCall, ToolResult
from .tools import ToolKind, ToolName, ToolRegistry

logger = logging.getLogger(__name__)

STOPPED_TEXT = "Generation stopped."

SYSTEM_INSTRUCTION = """You are GitChat AI, an expert autonomous software engineer.
Your current model is {model}.
You have direct access to the GitHub repository '{repo}' on branch '{branch}'.
Read before you edit: use search_code, grep_search and view_file to find the exact text,
then change it with patch_file or patch_file_multi (write_file only for new files or full rewrites).
Edits are staged; call push_to_github once to commit all of them together.
If a tool returns an error, read it carefully and correct the call instead of repeating it."""


class TurnStatus(str, Enum):
    DONE = "done"
    ABORTED = "aborted"
    DEPTH_EXCEEDED = "depth_exceeded"
    FAILED = "failed"


@dataclass
class TurnResult:
    status: TurnStatus
    text: str = ""
    rounds: int = 0
    model: str = ""
    error: Optional[str] = None


@dataclass
class RoundOutcome:
    number: int
    calls: List[ToolCall]
    results: List[ToolResult]
    advisory: Optional[Advisory] = None
    invoked: List[ToolKind] = field(default_factory=list)


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ProviderResolver(Protocol):
    def for_model(self, name: str) -> Tuple[ModelProvider, str]:
        ...


ToolResultCallback = Callable[[ToolCall, ToolResult], None]
TextCallback = Callable[[str], None]


class LoopController:
    def __init__(
        self,
        conversation: Conversation,
        *,
        providers: ProviderResolver,
        registry: ToolRegistry,
        models: ModelsConfig,
        config: LoopConfig,
        store: Optional[ConversationStore] = None,
        events: Optional[EventLogger] = None,
        system_instruction: str = SYSTEM_INSTRUCTION,
        on_tool_result: Optional[ToolResultCallback] = None,
        on_text: Optional[TextCallback] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.conversation = conversation
        self.providers = providers
        self.registry = registry
        self.models = models
        self.config = config
        self.store = store
        self.events = events or EventLogger()
        self.system_instruction = system_instruction
        self.on_tool_result = on_tool_result
        self.on_text = on_text
        self._sleep = sleep
        self.state: Optional[TurnState] = None
        self._sent = 0

    async def run_turn(
        self,
        user_input: str,
        image: Optional[ImageAttachment] = None,
        token: Optional[CancelToken] = None,
    ) -> TurnResult:
        token = token or CancelToken()
        state = TurnState(history=ToolHistory(self.config.status_probe_tools))
        self.state = state
        span_id = f"turn-{uuid.uuid4().hex[:10]}"
        self.events.begin_span(span_id, name="turn", inputs={"conversation": self.conversation.id, "chars": len(user_input)})

        # Files other writers pushed since the last turn must be read again.
        self.registry.ctx.forget_unstaged()
        self._sent = len(self.conversation.model_history())
        self._append(Message(role="user", content=user_input, image=image))
        bound_model = ""
        result: Optional[TurnResult] = None
        try:
            while True:
                if token.cancelled:
                    result = self._stopped(state, bound_model)
                    break

                model_name = select_model(self.conversation.model, state, self.models, self.config)
                if bound_model and model_name != bound_model:
                    logger.info("escalating turn from %s to %s", bound_model, model_name)
                    self.events.log("model_escalated", {"from": bound_model, "to": model_name, "round": state.rounds}, span_id=span_id)
                bound_model = model_name

                try:
                    reply = await self._call_model(model_name, token, span_id)
                except Exception as exc:  # noqa: BLE001
                    logger.error("turn failed on %s: %s", model_name, exc)
                    result = TurnResult(TurnStatus.FAILED, rounds=state.rounds, model=model_name, error=describe_failure(exc, model_name))
                    break
                if reply is None:
                    result = self._stopped(state, bound_model)
                    break

                if not reply.tool_calls:
                    self._append(Message(role="agent", content=reply.text, thought=reply.thought))
                    result = TurnResult(TurnStatus.DONE, text=reply.text, rounds=state.rounds, model=model_name)
                    break

                outcome = await self._run_round(reply.tool_calls, state, token, span_id)
                if outcome is None:
                    # Results of calls that were in flight are dropped; keep only the text.
                    if reply.text:
                        self._append(Message(role="agent", content=reply.text, thought=reply.thought))
                    result = self._stopped(state, bound_model)
                    break

                self._record_round(reply, outcome)
                self.events.log("round", summarize_round(outcome), span_id=span_id)
                if state.rounds >= self.config.max_rounds:
                    self._append(
                        Message(
                            role="system",
                            content=(
                                f"Stopped after {state.rounds} tool rounds without a final answer. "
                                "Send a follow-up message to let the agent continue."
                            ),
                        )
                    )
                    result = TurnResult(TurnStatus.DEPTH_EXCEEDED, rounds=state.rounds, model=model_name)
                    break
        finally:
            self.state = None
            status = result.status.value if result is not None else "interrupted"
            self.events.end_span(span_id, outputs={"status": status, "rounds": state.rounds})
        return result

    async def _call_model(self, model_name: str, token: CancelToken, span_id: str) -> Optional[ModelReply]:
        provider, model_id = self.providers.for_model(model_name)
        full = self.conversation.model_history()
        history, new_parts = full[: self._sent], full[self._sent :]
        tools = self.registry.declarations()
        system_instruction = self.system_instruction.format(
            model=model_id,
            repo=self.registry.ctx.gateway.repo,
            branch=self.registry.ctx.gateway.branch,
        )

        async def attempt() -> ModelReply:
            self.events.log("model_call", {"model": model_id, "history": len(history), "new_parts": len(new_parts)}, span_id=span_id)
            kwargs = dict(model=model_id, system_instruction=system_instruction, tools=tools, history=history, new_parts=new_parts)
            if self.config.stream and self.on_text is not None:
                final = ModelReply()
                async for item in provider.stream_turn(**kwargs):
                    if isinstance(item, ModelReply):
                        final = item
                    else:
                        self.on_text(item)
                return final
            return await provider.send_turn(**kwargs)

        def on_retry(attempt_no: int, exc: BaseException, delay: float) -> None:
            self.events.log("model_retry", {"attempt": attempt_no, "delay_sec": round(delay, 2), "error": str(exc)}, span_id=span_id)

        call = asyncio.ensure_future(
            call_with_retries(
                attempt,
                retries=self.models.retries,
                base_delay=self.models.backoff_base_sec,
                max_delay=self.models.backoff_max_sec,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        )
        stop = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({call, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if not call.done():
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            return None
        reply = call.result()
        self._sent = len(full)
        return reply

    async def _run_round(
        self,
        calls: Sequence[ToolCall],
        state: TurnState,
        token: CancelToken,
        span_id: str,
    ) -> Optional[RoundOutcome]:
        reads_blocked = read_tools_blocked(state, self.config)
        results: List[Optional[ToolResult]] = [None] * len(calls)
        pending: List[Tuple[int, ToolCall, asyncio.Task[ToolResult]]] = []
        invoked: List[ToolKind] = []
        interrupted = False

        for idx, call in enumerate(calls):
            if token.cancelled:
                interrupted = True
                break
            kind = self.registry.kind_of(call.name)
            if reads_blocked and kind is ToolKind.READ:
                results[idx] = ToolResult(
                    ok=False,
                    tool=call.name,
                    call_id=call.id,
                    blocked=True,
                    output=BLOCKED_CALL_TEXT.format(tool=call.name, streak=state.search_streak),
                )
                self.events.log("tool_blocked", {"tool": call.name, "streak": state.search_streak}, span_id=span_id)
                continue
            if not state.history.claim(call.name, call.signature):
                results[idx] = ToolResult(
                    ok=False,
                    tool=call.name,
                    call_id=call.id,
                    duplicate=True,
                    output=self.config.duplicate_message,
                )
                self.events.log("tool_duplicate", {"tool": call.name, "signature": call.signature}, span_id=span_id)
                continue
            if kind is not None:
                invoked.append(kind)
            self.events.log("tool_call", {"tool": call.name, "args": call.args, "call_id": call.id}, span_id=span_id)
            pending.append((idx, call, asyncio.ensure_future(self.registry.execute(call))))

        if pending:
            finished = await asyncio.gather(*(task for _, _, task in pending))
            for (idx, call, _), tool_result in zip(pending, finished):
                results[idx] = tool_result
                if not tool_result.ok:
                    state.history.release(call.signature)
                self.events.log(
                    "tool_result",
                    {"tool": call.name, "ok": tool_result.ok, "call_id": call.id, "chars": len(tool_result.output)},
                    span_id=span_id,
                )
                if call.name == ToolName.PUSH_TO_GITHUB.value and tool_result.data.get("commit"):
                    self.events.log("push", dict(tool_result.data), span_id=span_id)
                if self.on_tool_result is not None and not token.cancelled:
                    self.on_tool_result(call, tool_result)

        if interrupted or token.cancelled:
            return None

        state.record_round(invoked)
        advisory = advise(state, self.config)
        if advisory is not None:
            self.events.log("advisory", {"kind": advisory.kind.value, "round": state.rounds}, span_id=span_id)
        return RoundOutcome(
            number=state.rounds,
            calls=list(calls),
            results=[r for r in results if r is not None],
            advisory=advisory,
            invoked=invoked,
        )

    def _record_round(self, reply: ModelReply, outcome: RoundOutcome) -> None:
        self.conversation.messages.append(
            Message(role="agent", content=reply.text, thought=reply.thought, tool_calls=outcome.calls)
        )
        for idx, (call, tool_result) in enumerate(zip(outcome.calls, outcome.results)):
            content = tool_result.output
            if idx == 0 and outcome.advisory is not None:
                content = f"{content}\n\n{outcome.advisory.text}"
            self.conversation.messages.append(
                Message(role="tool", content=content, tool_call_id=call.id, tool_name=call.name)
            )
        self._persist()

    def _stopped(self, state: TurnState, model: str) -> TurnResult:
        self._append(Message(role="system", content=STOPPED_TEXT))
        return TurnResult(TurnStatus.ABORTED, rounds=state.rounds, model=model)

    def _append(self, message: Message) -> None:
        self.conversation.messages.append(message)
        self._persist()

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save(self.conversation)


def describe_failure(exc: BaseException, model: str) -> str:
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if status == 404:
        return (
            f"Model Not Found (404): the model id \"{model}\" is not available for your key or region. "
            "Try switching to another model."
        )
    if is_transient(exc):
        return f"The model provider kept failing after retries: {exc}"
    return f"Error: {exc}"


def summarize_round(outcome: RoundOutcome) -> Dict[str, Any]:
    return {
        "round": outcome.number,
        "tools": [c.name for c in outcome.calls],
        "duplicates": sum(1 for r in outcome.results if r.duplicate),
        "blocked": sum(1 for r in outcome.results if r.blocked),
        "advisory": outcome.advisory.kind.value if outcome.advisory else None,
    }
