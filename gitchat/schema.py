"""
gitchat.schema

Typed schemas for conversations, tool calls, and model replies.
Everything persisted or fed back to a model goes through these models so a
reloaded conversation reproduces exactly what the model saw.
"""
from __future__ import annotations

import json
import re
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .time_utils import now_iso, now_ms


MessageRole = Literal["user", "agent", "system", "tool"]

_SIGNATURE_STRIP = re.compile(r"[\s\"'`]+")


def _normalize_arg_value(value: Any) -> str:
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, sort_keys=True, ensure_ascii=False)
    return _SIGNATURE_STRIP.sub("", text.lower())


def make_signature(name: str, args: Dict[str, Any]) -> str:
    """
    Order-independent identity of a tool call.

    Values are lower-cased with whitespace and quotes removed, so `" foo "` and
    `"FOO"` collide.
    """
    parts = [f"{key.strip().lower()}={_normalize_arg_value(args[key])}" for key in sorted(args)]
    return f"{name.strip().lower()}({','.join(parts)})"


class ImageAttachment(BaseModel):
    mime_type: str
    data: str  # base64 payload


class ToolCall(BaseModel):
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)

    @property
    def signature(self) -> str:
        return make_signature(self.name, self.args)


class ToolResult(BaseModel):
    ts_ms: int = Field(default_factory=now_ms)
    ok: bool
    tool: str
    call_id: str = ""
    output: str = ""
    duplicate: bool = False
    blocked: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    role: MessageRole
    content: str = ""
    image: Optional[ImageAttachment] = None
    thought: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    # Inputs sent while a turn is running; shown immediately, folded into the next turn.
    queued: bool = False
    ts_ms: int = Field(default_factory=now_ms)


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: str(now_ms()))
    title: str = "New Chat"
    model: str = ""
    messages: List[Message] = Field(default_factory=list)
    processing: bool = False
    created_at: str = Field(default_factory=now_iso)

    def model_history(self) -> List[Message]:
        """Messages the model sees: system notices and pending queued inputs are UI-only."""
        return [m for m in self.messages if m.role != "system" and not m.queued]

    def take_queued(self) -> List[Message]:
        queued = [m for m in self.messages if m.queued]
        if queued:
            self.messages = [m for m in self.messages if not m.queued]
        return queued


class ModelReply(BaseModel):
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    thought: Optional[str] = None
    usage: Dict[str, int] = Field(default_factory=dict)
