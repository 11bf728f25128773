import asyncio
import json

import httpx
import pytest

from gitchat.config import ModelsConfig, ProviderConfig
from gitchat.providers import (
    GeminiProvider,
    LiteLLMProvider,
    ProviderRouter,
    resolve_model,
    to_gemini_contents,
    to_openai_messages,
)
from gitchat.retry import ProviderError
from gitchat.schema import ImageAttachment, Message, ToolCall

CONVERSATION = [
    Message(role="user", content="look", image=ImageAttachment(mime_type="image/png", data="AAAA")),
    Message(role="agent", content="", tool_calls=[ToolCall(id="c1", name="read_file", args={"path": "a"}), ToolCall(id="c2", name="list_files")]),
    Message(role="tool", content="A", tool_call_id="c1", tool_name="read_file"),
    Message(role="tool", content="dir", tool_call_id="c2", tool_name="list_files"),
    Message(role="agent", content="done"),
]


def test_resolve_model():
    models = ModelsConfig()
    assert resolve_model("deepseek", models).model == "deepseek-chat"
    assert resolve_model("deepseek-reasoner", models).provider == "deepseek"
    assert resolve_model("MiniMax", models).model == "MiniMax-M2"
    assert resolve_model(" 2.5-Pro ", models).model == "gemini-2.5-pro"
    assert resolve_model("gemini-2.5-flash", models).provider == "google"
    assert resolve_model("minimax:abab6", models).model == "abab6"
    assert resolve_model("", ModelsConfig(default_model="deepseek")).provider == "deepseek"


def test_openai_message_shapes():
    out = to_openai_messages("sys", CONVERSATION)
    assert out[0] == {"role": "system", "content": "sys"}
    assert out[1]["content"][0]["image_url"]["url"] == "data:image/png;base64,AAAA"
    assert out[2]["content"] is None
    assert [tc["id"] for tc in out[2]["tool_calls"]] == ["c1", "c2"]
    assert json.loads(out[2]["tool_calls"][0]["function"]["arguments"]) == {"path": "a"}
    assert out[3] == {"role": "tool", "tool_call_id": "c1", "content": "A"}
    assert out[-1] == {"role": "assistant", "content": "done"}


def test_gemini_groups_function_responses():
    contents = to_gemini_contents(CONVERSATION)
    assert [c["role"] for c in contents] == ["user", "model", "user", "model"]
    assert contents[0]["parts"][0] == {"inlineData": {"mimeType": "image/png", "data": "AAAA"}}
    assert [p["functionCall"]["name"] for p in contents[1]["parts"]] == ["read_file", "list_files"]
    responses = [p["functionResponse"]["name"] for p in contents[2]["parts"]]
    assert responses == ["read_file", "list_files"]
    assert all("_tool_block" not in c for c in contents)


def gemini_provider(handler, monkeypatch):
    monkeypatch.setenv("TEST_GEMINI_KEY", "k123")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiProvider(ProviderConfig(kind="gemini", api_key_env="TEST_GEMINI_KEY"), client=client)


def send(provider, tools=()):
    return asyncio.run(
        provider.send_turn(
            model="gemini-2.5-flash",
            system_instruction="be brief",
            tools=list(tools),
            history=[],
            new_parts=[Message(role="user", content="hi")],
        )
    )


def test_gemini_send_turn_parses_calls_and_text(monkeypatch):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"text": "thinking...", "thought": True},
                                {"text": "Let me look."},
                                {"functionCall": {"name": "read_file", "args": {"path": "a.txt"}}},
                            ]
                        }
                    }
                ],
                "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 3},
            },
        )

    decl = {"name": "read_file", "description": "d", "parameters": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}}
    reply = send(gemini_provider(handler, monkeypatch), tools=[decl])
    assert seen["url"].endswith("/models/gemini-2.5-flash:generateContent")
    assert seen["key"] == "k123"
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    assert seen["body"]["tools"][0]["functionDeclarations"][0]["parameters"]["type"] == "OBJECT"
    assert reply.text == "Let me look."
    assert reply.thought == "thinking..."
    assert reply.tool_calls[0].name == "read_file" and reply.tool_calls[0].args == {"path": "a.txt"}
    assert reply.usage == {"input_tokens": 10, "output_tokens": 3}


def test_gemini_errors_carry_status(monkeypatch):
    provider = gemini_provider(lambda request: httpx.Response(404, json={"error": {"message": "no such model"}}), monkeypatch)
    with pytest.raises(ProviderError) as err:
        send(provider)
    assert err.value.status == 404
    assert not err.value.transient

    provider = gemini_provider(lambda request: httpx.Response(503, text="overloaded"), monkeypatch)
    with pytest.raises(ProviderError) as err:
        send(provider)
    assert err.value.transient


def test_gemini_stream_yields_text_then_reply(monkeypatch):
    sse = "\n\n".join(
        [
            'data: {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]}',
            'data: {"candidates": [{"content": {"parts": [{"text": "lo"}, {"functionCall": {"name": "list_files", "args": {}}}]}}]}',
        ]
    )
    provider = gemini_provider(lambda request: httpx.Response(200, text=sse), monkeypatch)

    async def collect():
        items = []
        async for item in provider.stream_turn(
            model="gemini-2.5-flash", system_instruction="", tools=[], history=[], new_parts=[Message(role="user", content="hi")]
        ):
            items.append(item)
        return items

    items = asyncio.run(collect())
    assert items[:2] == ["Hel", "lo"]
    assert items[-1].text == "Hello"
    assert [c.name for c in items[-1].tool_calls] == ["list_files"]


def test_litellm_request_shape(monkeypatch):
    monkeypatch.setenv("TEST_DS_KEY", "ds")
    provider = LiteLLMProvider(ProviderConfig(kind="litellm", api_key_env="TEST_DS_KEY", model_prefix="deepseek/"), timeout_sec=5)
    kwargs = provider._kwargs("deepseek-chat", "sys", [{"name": "list_files", "description": "d", "parameters": {"type": "object", "properties": {}}}], CONVERSATION)
    assert kwargs["model"] == "deepseek/deepseek-chat"
    assert kwargs["api_key"] == "ds"
    assert kwargs["num_retries"] == 0
    assert kwargs["tools"][0]["type"] == "function"
    assert "api_base" not in kwargs


def test_router_builds_one_provider_per_backend():
    router = ProviderRouter(ModelsConfig())
    flash, flash_id = router.for_model("gemini-2.5-flash")
    pro, pro_id = router.for_model("gemini-2.5-pro")
    deepseek, ds_id = router.for_model("deepseek")
    assert flash is pro and isinstance(flash, GeminiProvider)
    assert (flash_id, pro_id, ds_id) == ("gemini-2.5-flash", "gemini-2.5-pro", "deepseek-chat")
    assert isinstance(deepseek, LiteLLMProvider)


def test_router_rejects_unconfigured_provider():
    router = ProviderRouter(ModelsConfig(providers={}))
    with pytest.raises(ProviderError):
        router.for_model("gemini-2.5-flash")


def test_router_closes_only_the_clients_it_created():
    class Borrowed:
        closed = False

        async def aclose(self):
            self.closed = True

    borrowed = Borrowed()
    router = ProviderRouter(ModelsConfig(), overrides={"deepseek": borrowed})
    gemini, _ = router.for_model("gemini-2.5-flash")
    asyncio.run(router.aclose())
    assert gemini._client.is_closed
    assert not borrowed.closed
    assert router.for_model("gemini-2.5-flash")[0] is not gemini
