"""Full pipeline: real codecs and transport against a mocked HTTP API."""

import json

import httpx
import pytest

from vaultkeeper.chat import ChatOrchestrator
from vaultkeeper.claude import ClaudeCodec
from vaultkeeper.conversation import Conversation, Role
from vaultkeeper.dispatcher import FunctionDispatcher
from vaultkeeper.functions import FunctionResponse
from vaultkeeper.gemini import GeminiCodec
from vaultkeeper.openai_chat import OpenAICodec
from vaultkeeper.prompt import USER_INSTRUCTION_PATH, Prompt
from vaultkeeper.store import JsonConversationStore
from vaultkeeper.transport import StreamingTransport
from vaultkeeper.vault import LocalVault


def sse(*events: dict | str) -> bytes:
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


class ScriptedAPI:
    """Serves one response body per request and keeps the request bodies."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.bodies: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        self.headers.append(request.headers)
        return self.responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def event_stream(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


@pytest.fixture
def vault(tmp_path):
    root = tmp_path / "vault"
    (root / "projects").mkdir(parents=True)
    (root / "projects" / "garden.md").write_text("Plant tomatoes in May", encoding="utf-8")
    (root / "inbox.md").write_text("Call the plumber", encoding="utf-8")
    return LocalVault(root)


def build(codec, api: ScriptedAPI, vault: LocalVault, **kwargs) -> ChatOrchestrator:
    return ChatOrchestrator(
        codec=codec,
        transport=StreamingTransport(client=api.client()),
        dispatcher=FunctionDispatcher(vault),
        store=JsonConversationStore(vault.root / "Vault AI" / "Conversations"),
        prompt=Prompt.for_vault(vault.root),
        **kwargs,
    )


class TestClaudePipeline:
    @pytest.mark.asyncio
    async def test_tool_use_then_answer(self, vault):
        api = ScriptedAPI(
            event_stream(sse(
                {"type": "message_start", "message": {"id": "msg_1", "role": "assistant"}},
                {"type": "content_block_start", "index": 0,
                 "content_block": {"type": "tool_use", "id": "toolu_01", "name": "search_vault_files", "input": {}}},
                {"type": "content_block_delta", "index": 0,
                 "delta": {"type": "input_json_delta", "partial_json": '{"search_terms": ['}},
                {"type": "content_block_delta", "index": 0,
                 "delta": {"type": "input_json_delta", "partial_json": '"tomato"]}'}},
                {"type": "content_block_stop", "index": 0},
                {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
                {"type": "message_stop"},
            )),
            event_stream(sse(
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "See "}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "[[garden]]."}},
                {"type": "content_block_stop", "index": 0},
                {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
                {"type": "message_stop"},
            )),
        )
        orchestrator = build(ClaudeCodec(api_key="sk-test", model="claude-test"), api, vault)
        conversation = Conversation(title="Tomatoes")

        await orchestrator.submit(conversation, "When do I plant tomatoes?")
        await orchestrator.aclose()

        contents = conversation.contents
        assert [c.role for c in contents] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        response = FunctionResponse.from_conversation_string(contents[2].content)
        assert response.tool_id == "toolu_01"
        matches = response.response["results"][0]["results"]
        assert [m["path"] for m in matches] == ["projects/garden.md"]
        assert contents[3].content == "See [[garden]]."

        assert api.headers[0]["x-api-key"] == "sk-test"
        second = api.bodies[1]["messages"]
        assert second[1]["content"][0]["type"] == "tool_use"
        assert second[1]["content"][0]["input"] == {"search_terms": ["tomato"]}
        assert second[2]["content"][0] == {
            "type": "tool_result",
            "tool_use_id": "toolu_01",
            "content": json.dumps(response.response),
        }

        saved = json.loads((vault.root / "Vault AI" / "Conversations" / "Tomatoes.json").read_text())
        assert saved["title"] == "Tomatoes"
        assert saved["contents"][1]["isFunctionCall"] is True
        assert saved["contents"][2]["toolId"] == "toolu_01"
        assert saved["contents"][3]["content"] == "See [[garden]]."

    @pytest.mark.asyncio
    async def test_user_instruction_note_is_sent(self, vault):
        instruction = vault.root / USER_INSTRUCTION_PATH
        instruction.parent.mkdir(parents=True, exist_ok=True)
        instruction.write_text("Answer in French.", encoding="utf-8")
        api = ScriptedAPI(event_stream(sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Bonjour"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        )))
        orchestrator = build(ClaudeCodec(api_key="k"), api, vault)

        await orchestrator.submit(Conversation(), "Hello")
        await orchestrator.aclose()

        assert api.bodies[0]["system"].endswith("Answer in French.")

    @pytest.mark.asyncio
    async def test_unreadable_frame_is_skipped(self, vault):
        api = ScriptedAPI(event_stream(sse(
            {"type": "content_block_delta", "delta": "oops"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        )))
        orchestrator = build(ClaudeCodec(api_key="k"), api, vault)
        conversation = Conversation()

        await orchestrator.submit(conversation, "hi")
        await orchestrator.aclose()

        assert [c.content for c in conversation.contents] == ["hi", "Hello"]


class TestOpenAIPipeline:
    @pytest.mark.asyncio
    async def test_http_error_is_recorded(self, vault):
        api = ScriptedAPI(httpx.Response(429, text="rate limited"))
        orchestrator = build(OpenAICodec(api_key="sk-test", model="gpt-test"), api, vault)
        conversation = Conversation()

        await orchestrator.submit(conversation, "Hi")
        await orchestrator.aclose()

        assert conversation.contents[-1].content == "Error: API request failed: 429 - rate limited"
        assert api.headers[0]["authorization"] == "Bearer sk-test"
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_read_then_answer(self, vault):
        api = ScriptedAPI(
            event_stream(sse(
                {"choices": [{"index": 0, "delta": {"role": "assistant", "tool_calls": [
                    {"index": 0, "id": "call_a", "type": "function",
                     "function": {"name": "read_vault_files", "arguments": ""}}]}}]},
                {"choices": [{"index": 0, "delta": {"tool_calls": [
                    {"index": 0, "function": {"arguments": '{"file_paths": ["inbox.md"]}'}}]}}]},
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
                "[DONE]",
            )),
            event_stream(sse(
                {"choices": [{"index": 0, "delta": {"content": "Call the plumber."}}]},
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
                "[DONE]",
            )),
        )
        orchestrator = build(OpenAICodec(api_key="sk-test", model="gpt-test"), api, vault)
        conversation = Conversation()

        await orchestrator.submit(conversation, "What is in my inbox?")
        await orchestrator.aclose()

        assert conversation.contents[-1].content == "Call the plumber."
        messages = api.bodies[1]["messages"]
        assert messages[0]["role"] == "system"
        assert messages[2]["tool_calls"][0]["id"] == "call_a"
        assert messages[3]["role"] == "tool"
        assert messages[3]["tool_call_id"] == "call_a"
        assert json.loads(messages[3]["content"])["results"][0]["content"] == "Call the plumber"


class TestGeminiPipeline:
    @pytest.mark.asyncio
    async def test_web_search_request_switches_tools(self, vault):
        api = ScriptedAPI(
            event_stream(sse({
                "candidates": [{
                    "content": {"role": "model", "parts": [
                        {"functionCall": {"name": "request_web_search", "args": {}}},
                    ]},
                    "finishReason": "STOP",
                }],
            })),
            event_stream(sse({
                "candidates": [{
                    "content": {"role": "model", "parts": [{"text": "It is sunny."}]},
                    "finishReason": "STOP",
                }],
            })),
        )
        orchestrator = build(GeminiCodec(api_key="g-key", model="gemini-test"), api, vault)
        conversation = Conversation()

        await orchestrator.submit(conversation, "Weather in Lisbon today?")
        await orchestrator.aclose()

        first_tools = api.bodies[0]["tools"][0]["functionDeclarations"]
        assert "request_web_search" in [d["name"] for d in first_tools]
        assert api.bodies[1]["tools"] == [{"google_search": {}}]
        assert api.headers[0]["x-goog-api-key"] == "g-key"
        assert conversation.contents[-1].content == "It is sunny."
