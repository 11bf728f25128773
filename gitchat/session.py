"""
gitchat.session

Session manager: one loop controller, cancellation token and queued-input
buffer per open conversation.

Turns within one conversation are serialized by the manager; turns in
different conversations run as independent asyncio tasks and only share the
per-repository cache, staged edits and push lock.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import RuntimeConfig
from .context import RepoContext, RepoContextRegistry
from .events import EventLogger
from .interfaces import ConversationStore
from .loop import (
    CancelToken,
    LoopController,
    ProviderResolver,
    TextCallback,
    ToolResultCallback,
    TurnResult,
    TurnStatus,
)
from .schema import Conversation, ImageAttachment, Message
from .store import MemoryConversationStore
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

NEW_CHAT_TITLE = "New Chat"
TITLE_CHARS = 25

TITLE_PROMPT = (
    "Summarize this conversation into a short, catchy 2-4 word title. "
    "Respond with ONLY the title. No quotes.\n\nConversation:\n{history}"
)


def initial_title(text: str) -> str:
    text = text.strip()
    return text[:TITLE_CHARS] + "..." if len(text) > TITLE_CHARS else text


@dataclass
class ConversationSession:
    conversation: Conversation
    controller: LoopController
    context: RepoContext
    token: CancelToken = field(default_factory=CancelToken)
    task: Optional["asyncio.Task[Optional[TurnResult]]"] = None
    results: List[TurnResult] = field(default_factory=list)

    @property
    def processing(self) -> bool:
        return self.task is not None and not self.task.done()


class SessionManager:
    def __init__(
        self,
        config: RuntimeConfig,
        *,
        contexts: RepoContextRegistry,
        providers: ProviderResolver,
        store: Optional[ConversationStore] = None,
        events: Optional[EventLogger] = None,
        on_tool_result: Optional[ToolResultCallback] = None,
        on_text: Optional[TextCallback] = None,
    ):
        self.config = config
        self.contexts = contexts
        self.providers = providers
        self.store = store if store is not None else MemoryConversationStore()
        self.events = events or EventLogger()
        self.on_tool_result = on_tool_result
        self.on_text = on_text
        self._sessions: Dict[str, ConversationSession] = {}

    # -- conversations ----------------------------------------------------

    def new_conversation(self, model: Optional[str] = None) -> Conversation:
        conversation = Conversation(model=model or self.config.models.default_model)
        while self.store.get(conversation.id) is not None:
            conversation = Conversation(id=f"{conversation.id}-1", model=conversation.model)
        self.store.save(conversation)
        return conversation

    def open(
        self,
        conversation_id: str,
        *,
        repo: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is not None:
            return session
        conversation = self.store.get(conversation_id)
        if conversation is None:
            raise KeyError(f"unknown conversation: {conversation_id}")
        if conversation.processing:
            # A previous process died mid-turn; nothing is running now.
            conversation.processing = False
        ctx = self.contexts.get(repo or self.config.github.repo, branch or self.config.github.branch)
        controller = LoopController(
            conversation,
            providers=self.providers,
            registry=ToolRegistry(ctx, self.config.tools),
            models=self.config.models,
            config=self.config.loop,
            store=self.store,
            events=self.events,
            on_tool_result=self.on_tool_result,
            on_text=self.on_text,
        )
        session = ConversationSession(conversation=conversation, controller=controller, context=ctx)
        self._sessions[conversation_id] = session
        return session

    def set_model(self, conversation_id: str, model: str) -> None:
        session = self.open(conversation_id)
        session.conversation.model = model
        self.store.save(session.conversation)

    def delete(self, conversation_id: str) -> None:
        session = self._sessions.pop(conversation_id, None)
        if session is not None:
            session.token.cancel()
        self.store.delete(conversation_id)

    # -- turns ------------------------------------------------------------

    def send(self, conversation_id: str, text: str, image: Optional[ImageAttachment] = None) -> bool:
        """
        Dispatch user input. Returns True when a turn was started and False when
        the input was queued behind the turn already running.
        """
        session = self.open(conversation_id)
        conversation = session.conversation
        if conversation.title == NEW_CHAT_TITLE and text.strip():
            conversation.title = initial_title(text)

        if session.processing:
            conversation.messages.append(Message(role="user", content=text, image=image, queued=True))
            self.store.save(conversation)
            logger.info("queued input for conversation %s", conversation_id)
            if self.config.session.interrupt_on_queue:
                session.token.cancel()
            return False

        session.token = CancelToken()
        session.task = asyncio.create_task(self._drive(session, text, image))
        return True

    def stop(self, conversation_id: str) -> bool:
        session = self._sessions.get(conversation_id)
        if session is None or not session.processing:
            return False
        session.token.cancel()
        return True

    def processing(self, conversation_id: str) -> bool:
        session = self._sessions.get(conversation_id)
        return session is not None and session.processing

    async def wait_idle(self, conversation_id: str) -> Optional[TurnResult]:
        session = self._sessions.get(conversation_id)
        if session is None or session.task is None:
            return None
        return await session.task

    async def _drive(
        self,
        session: ConversationSession,
        text: str,
        image: Optional[ImageAttachment],
    ) -> Optional[TurnResult]:
        conversation = session.conversation
        conversation.processing = True
        self.store.save(conversation)
        result: Optional[TurnResult] = None
        try:
            while True:
                result = await session.controller.run_turn(text, image=image, token=session.token)
                session.results.append(result)
                self._report(conversation, result)
                if self.config.session.auto_title and result.status is TurnStatus.DONE:
                    await self._auto_title(session)
                queued = conversation.take_queued()
                if not queued:
                    break
                text = "\n".join(m.content for m in queued if m.content)
                image = next((m.image for m in reversed(queued) if m.image is not None), None)
                session.token = CancelToken()
                logger.info("dispatching %d queued input(s) for conversation %s", len(queued), conversation.id)
        finally:
            conversation.processing = False
            self.store.save(conversation)
        return result

    def _report(self, conversation: Conversation, result: TurnResult) -> None:
        if result.status is TurnStatus.FAILED:
            conversation.messages.append(Message(role="system", content=result.error or "Error: the turn failed."))
            self.store.save(conversation)

    async def _auto_title(self, session: ConversationSession) -> None:
        conversation = session.conversation
        if sum(1 for m in conversation.model_history() if m.role == "user") != 1:
            return
        history = "\n".join(
            f"{m.role}: {m.content}" for m in conversation.model_history() if m.role in ("user", "agent") and m.content
        )
        try:
            provider, model_id = self.providers.for_model(self.config.models.title_model)
            reply = await provider.send_turn(
                model=model_id,
                system_instruction="",
                tools=[],
                history=[],
                new_parts=[Message(role="user", content=TITLE_PROMPT.format(history=history))],
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("auto-title failed, keeping '%s': %s", conversation.title, exc)
            return
        title = reply.text.strip().replace('"', "").replace("'", "")
        if title and len(title) < 50:
            conversation.title = title
            self.store.save(conversation)

    async def shutdown(self) -> None:
        tasks = [s.task for s in self._sessions.values() if s.processing and s.task is not None]
        for session in self._sessions.values():
            session.token.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
