"""
gitchat.providers

Model provider backends and model-name resolution.

OpenAI-compatible backends (DeepSeek, MiniMax, OpenRouter, ...) go through
litellm with `type: "function"` tool wrappers; Gemini is called over its REST
API with OBJECT-typed function declarations.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx
import litellm

from .config import ModelsConfig, ProviderConfig
from .interfaces import ModelProvider
from .retry import ProviderError
from .schema import Message, ModelReply, ToolCall
from .tools import to_gemini_tools, to_openai_tools

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(frozen=True)
class ModelBinding:
    provider: str
    model: str


def resolve_model(name: str, models: ModelsConfig) -> ModelBinding:
    """
    Map a user-facing model name to a provider and model id.

    `provider:model` selects a configured provider explicitly; otherwise names
    mentioning deepseek/minimax go to those backends and everything else is a
    Gemini model (a missing `gemini-` prefix is added).
    """
    raw = (name or models.default_model).strip()
    if ":" in raw:
        provider, _, model = raw.partition(":")
        if provider in models.providers and model:
            return ModelBinding(provider=provider, model=model)
    lowered = raw.lower()
    if "deepseek" in lowered:
        return ModelBinding(provider="deepseek", model="deepseek-chat" if lowered == "deepseek" else raw)
    if "minimax" in lowered:
        return ModelBinding(provider="minimax", model="MiniMax-M2" if lowered == "minimax" else raw)
    if not lowered.startswith("gemini-"):
        lowered = f"gemini-{lowered}"
    return ModelBinding(provider="google", model=lowered)


# -- OpenAI-compatible (litellm) -------------------------------------------


def _image_url(message: Message) -> Optional[str]:
    if message.image is None:
        return None
    return f"data:{message.image.mime_type};base64,{message.image.data}"


def to_openai_messages(system_instruction: str, messages: Sequence[Message]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if system_instruction:
        out.append({"role": "system", "content": system_instruction})
    for m in messages:
        if m.role == "user":
            url = _image_url(m)
            if url:
                out.append(
                    {
                        "role": "user",
                        "content": [
                            {"type": "image_url", "image_url": {"url": url}},
                            {"type": "text", "text": m.content},
                        ],
                    }
                )
            else:
                out.append({"role": "user", "content": m.content})
        elif m.role == "agent":
            item: Dict[str, Any] = {"role": "assistant", "content": m.content or None}
            if m.tool_calls:
                item["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.args, ensure_ascii=False)},
                    }
                    for tc in m.tool_calls
                ]
            out.append(item)
        elif m.role == "tool":
            out.append({"role": "tool", "tool_call_id": m.tool_call_id or "", "content": m.content})
    return out


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LiteLLMProvider:
    def __init__(self, config: ProviderConfig, *, timeout_sec: float = 120.0):
        self.config = config
        self.timeout_sec = timeout_sec

    def _kwargs(self, model: str, system_instruction: str, tools: Sequence[Dict[str, Any]], messages: Sequence[Message]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": f"{self.config.model_prefix}{model}",
            "messages": to_openai_messages(system_instruction, messages),
            "timeout": self.timeout_sec,
            # Retries are owned by the loop controller.
            "num_retries": 0,
        }
        if tools:
            kwargs["tools"] = to_openai_tools(list(tools))
            kwargs["tool_choice"] = "auto"
        api_key = self.config.api_key()
        if api_key:
            kwargs["api_key"] = api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        return kwargs

    async def send_turn(
        self,
        *,
        model: str,
        system_instruction: str,
        tools: Sequence[Dict[str, Any]],
        history: Sequence[Message],
        new_parts: Sequence[Message],
    ) -> ModelReply:
        response = await litellm.acompletion(**self._kwargs(model, system_instruction, tools, [*history, *new_parts]))
        choice = response.choices[0] if response.choices else None
        if choice is None:
            return ModelReply()
        message = choice.message
        calls = [
            ToolCall(id=tc.id or _call_id(), name=tc.function.name, args=_parse_arguments(tc.function.arguments))
            for tc in (message.tool_calls or [])
        ]
        usage: Dict[str, int] = {}
        if getattr(response, "usage", None):
            usage = {
                "input_tokens": getattr(response.usage, "prompt_tokens", 0) or 0,
                "output_tokens": getattr(response.usage, "completion_tokens", 0) or 0,
            }
        return ModelReply(
            text=message.content or "",
            tool_calls=calls,
            thought=getattr(message, "reasoning_content", None),
            usage=usage,
        )

    async def stream_turn(
        self,
        *,
        model: str,
        system_instruction: str,
        tools: Sequence[Dict[str, Any]],
        history: Sequence[Message],
        new_parts: Sequence[Message],
    ) -> AsyncIterator[str | ModelReply]:
        kwargs = self._kwargs(model, system_instruction, tools, [*history, *new_parts])
        response = await litellm.acompletion(stream=True, **kwargs)
        text_parts: List[str] = []
        pending: Dict[int, Dict[str, str]] = {}
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if getattr(delta, "content", None):
                text_parts.append(delta.content)
                yield delta.content
            for tc in getattr(delta, "tool_calls", None) or []:
                slot = pending.setdefault(tc.index or 0, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    slot["name"] += tc.function.name or ""
                    slot["arguments"] += tc.function.arguments or ""
        calls = [
            ToolCall(id=slot["id"] or _call_id(), name=slot["name"], args=_parse_arguments(slot["arguments"]))
            for _, slot in sorted(pending.items())
            if slot["name"]
        ]
        yield ModelReply(text="".join(text_parts), tool_calls=calls)


# -- Gemini REST -------------------------------------------------------------


def to_gemini_contents(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    contents: List[Dict[str, Any]] = []
    for m in messages:
        if m.role == "user":
            parts: List[Dict[str, Any]] = []
            if m.image is not None:
                parts.append({"inlineData": {"mimeType": m.image.mime_type, "data": m.image.data}})
            parts.append({"text": m.content})
            contents.append({"role": "user", "parts": parts})
        elif m.role == "agent":
            parts = [{"text": m.content}] if m.content else []
            parts.extend({"functionCall": {"name": tc.name, "args": tc.args}} for tc in m.tool_calls)
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
        elif m.role == "tool":
            part = {
                "functionResponse": {
                    "name": m.tool_name or "",
                    "response": {"name": m.tool_name or "", "content": m.content},
                }
            }
            # All responses to one model turn travel in a single content block.
            if contents and contents[-1].get("_tool_block"):
                contents[-1]["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part], "_tool_block": True})
    for content in contents:
        content.pop("_tool_block", None)
    return contents


def _parse_gemini_parts(parts: List[Dict[str, Any]]) -> Tuple[List[str], List[ToolCall], List[str]]:
    texts: List[str] = []
    calls: List[ToolCall] = []
    thoughts: List[str] = []
    for part in parts:
        if "functionCall" in part:
            fc = part["functionCall"]
            calls.append(ToolCall(id=_call_id(), name=str(fc.get("name", "")), args=dict(fc.get("args") or {})))
        elif part.get("thought"):
            thoughts.append(str(part.get("text", "")))
        elif "text" in part:
            texts.append(str(part["text"]))
    return texts, calls, thoughts


class GeminiProvider:
    def __init__(self, config: ProviderConfig, *, timeout_sec: float = 120.0, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base = (config.api_base or GEMINI_API_BASE).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    def _body(self, system_instruction: str, tools: Sequence[Dict[str, Any]], messages: Sequence[Message]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"contents": to_gemini_contents(messages)}
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if tools:
            body["tools"] = to_gemini_tools(list(tools))
        return body

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.config.api_key()
        if api_key:
            headers["x-goog-api-key"] = api_key
        return headers

    async def send_turn(
        self,
        *,
        model: str,
        system_instruction: str,
        tools: Sequence[Dict[str, Any]],
        history: Sequence[Message],
        new_parts: Sequence[Message],
    ) -> ModelReply:
        response = await self._client.post(
            f"{self.base}/models/{model}:generateContent",
            headers=self._headers(),
            json=self._body(system_instruction, tools, [*history, *new_parts]),
        )
        _raise_for_status(response, model)
        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            if reason:
                raise ProviderError(f"Gemini blocked the request: {reason}", transient=False)
            return ModelReply()
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts, calls, thoughts = _parse_gemini_parts(parts)
        usage = data.get("usageMetadata") or {}
        return ModelReply(
            text="".join(texts),
            tool_calls=calls,
            thought="\n".join(thoughts) or None,
            usage={
                "input_tokens": int(usage.get("promptTokenCount") or 0),
                "output_tokens": int(usage.get("candidatesTokenCount") or 0),
            },
        )

    async def stream_turn(
        self,
        *,
        model: str,
        system_instruction: str,
        tools: Sequence[Dict[str, Any]],
        history: Sequence[Message],
        new_parts: Sequence[Message],
    ) -> AsyncIterator[str | ModelReply]:
        texts: List[str] = []
        calls: List[ToolCall] = []
        thoughts: List[str] = []
        async with self._client.stream(
            "POST",
            f"{self.base}/models/{model}:streamGenerateContent",
            params={"alt": "sse"},
            headers=self._headers(),
            json=self._body(system_instruction, tools, [*history, *new_parts]),
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                _raise_for_status(response, model)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = json.loads(line[len("data:"):].strip() or "{}")
                for candidate in payload.get("candidates") or []:
                    parts = (candidate.get("content") or {}).get("parts") or []
                    chunk_texts, chunk_calls, chunk_thoughts = _parse_gemini_parts(parts)
                    calls.extend(chunk_calls)
                    thoughts.extend(chunk_thoughts)
                    for text in chunk_texts:
                        texts.append(text)
                        yield text
        yield ModelReply(text="".join(texts), tool_calls=calls, thought="\n".join(thoughts) or None)

    async def aclose(self) -> None:
        await self._client.aclose()


def _raise_for_status(response: httpx.Response, model: str) -> None:
    if response.status_code < 400:
        return
    try:
        detail = response.json().get("error", {}).get("message", "")
    except (ValueError, AttributeError):
        detail = response.text[:300]
    if response.status_code == 404:
        raise ProviderError(f"model '{model}' not found: {detail}", status=404)
    raise ProviderError(f"Gemini error {response.status_code}: {detail}", status=response.status_code)


def _call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ProviderRouter:
    """Builds one provider instance per configured backend and routes model names to it."""

    def __init__(self, models: ModelsConfig, overrides: Optional[Dict[str, ModelProvider]] = None):
        self.models = models
        self._providers: Dict[str, ModelProvider] = dict(overrides or {})
        self._owned: List[ModelProvider] = []

    def for_model(self, name: str) -> Tuple[ModelProvider, str]:
        binding = resolve_model(name, self.models)
        provider = self._providers.get(binding.provider)
        if provider is None:
            cfg = self.models.providers.get(binding.provider)
            if cfg is None:
                raise ProviderError(f"no provider configured for '{binding.provider}'", transient=False)
            if cfg.kind == "gemini":
                provider = GeminiProvider(cfg, timeout_sec=self.models.timeout_sec)
            else:
                provider = LiteLLMProvider(cfg, timeout_sec=self.models.timeout_sec)
            self._providers[binding.provider] = provider
            self._owned.append(provider)
            logger.debug("initialised %s provider for %s", cfg.kind, binding.provider)
        return provider, binding.model

    async def aclose(self) -> None:
        """Close the clients of providers this router created; overrides belong to the caller."""
        owned, self._owned = self._owned, []
        self._providers = {k: p for k, p in self._providers.items() if all(p is not o for o in owned)}
        for provider in owned:
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
