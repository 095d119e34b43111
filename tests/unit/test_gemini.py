import json

from tests.conftest import call_entry, response_entry
from vaultkeeper.conversation import ConversationContent, Role
from vaultkeeper.functions import FUNCTION_DEFINITIONS
from vaultkeeper.gemini import GeminiCodec
from vaultkeeper.transport import Framing


def candidate_frame(parts, finish_reason=None) -> str:
    candidate = {"content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return json.dumps({"candidates": [candidate]})


class TestBuildRequest:
    def test_url_and_headers(self):
        codec = GeminiCodec(api_key="g", model="gemini-x")
        request = codec.build_request("s", "", [], FUNCTION_DEFINITIONS, False)

        assert request.url.endswith("/models/gemini-x:streamGenerateContent?alt=sse")
        assert request.headers["x-goog-api-key"] == "g"
        assert request.framing is Framing.SSE

    def test_json_framing_drops_alt_sse(self):
        codec = GeminiCodec(api_key="g", model="gemini-x", framing=Framing.JSON)
        assert codec.url.endswith(":streamGenerateContent")

    def test_system_instruction_parts(self):
        request = GeminiCodec(api_key="g").build_request("sys", "mine", [], [], False)
        assert request.body["system_instruction"] == {"parts": [{"text": "sys"}, {"text": "mine"}]}

    def test_web_search_always_declared(self):
        request = GeminiCodec(api_key="g").build_request("s", "", [], FUNCTION_DEFINITIONS, False)
        names = [d["name"] for d in request.body["tools"][0]["functionDeclarations"]]
        assert names[-1] == "request_web_search"
        assert "write_vault_file" not in names

    def test_google_search_after_web_search_response(self):
        history = [
            ConversationContent(role=Role.USER, content="news?"),
            call_entry("request_web_search", {}, "w1"),
            response_entry("request_web_search", {}, "w1"),
        ]
        request = GeminiCodec(api_key="g").build_request("s", "", history, FUNCTION_DEFINITIONS, False)
        assert request.body["tools"] == [{"google_search": {}}]

    def test_contents_roles_and_parts(self):
        history = [
            ConversationContent(role=Role.USER, content="list"),
            call_entry("list_vault_files", {"path": ""}, "c1"),
            response_entry("list_vault_files", [{"type": "file", "path": "a.md"}], "c1"),
            ConversationContent(role=Role.ASSISTANT, content="One file."),
        ]

        contents = GeminiCodec(api_key="g").contents(history)

        assert [c["role"] for c in contents] == ["user", "model", "user", "model"]
        assert contents[1]["parts"] == [{"functionCall": {"name": "list_vault_files", "args": {"path": ""}}}]
        assert contents[2]["parts"] == [{"functionResponse": {
            "name": "list_vault_files",
            "response": {"result": [{"type": "file", "path": "a.md"}]},
        }}]


class TestParseFrame:
    def test_text_then_finish(self):
        codec = GeminiCodec(api_key="g")
        state = codec.new_state()

        first = codec.parse_frame(candidate_frame([{"text": "Hel"}, {"text": "lo"}]), state)
        last = codec.parse_frame(candidate_frame([{"text": "!"}], "STOP"), state)

        assert first.content == "Hello"
        assert last.content == "!"
        assert last.is_complete
        assert not last.should_continue

    def test_thought_parts_skipped(self):
        codec = GeminiCodec(api_key="g")
        chunk = codec.parse_frame(
            candidate_frame([{"text": "thinking...", "thought": True}, {"text": "answer"}]),
            codec.new_state(),
        )
        assert chunk.content == "answer"

    def test_function_call_args_merged(self):
        codec = GeminiCodec(api_key="g")
        state = codec.new_state()
        codec.parse_frame(candidate_frame([
            {"functionCall": {"name": "write_vault_file", "args": {"file_path": "a.md"}}},
        ]), state)

        chunk = codec.parse_frame(candidate_frame([
            {"functionCall": {"args": {"content": "body"}}},
        ], "STOP"), state)

        assert chunk.is_complete
        assert chunk.should_continue
        assert chunk.function_call.name == "write_vault_file"
        assert chunk.function_call.arguments == {"file_path": "a.md", "content": "body"}
        assert chunk.function_call.tool_id.startswith("call_")

    def test_error_object(self):
        codec = GeminiCodec(api_key="g")
        frame = json.dumps({"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}})
        chunk = codec.parse_frame(frame, codec.new_state())
        assert chunk.is_terminal_error
        assert chunk.error == "INVALID_ARGUMENT: API key not valid"

    def test_no_candidates(self):
        codec = GeminiCodec(api_key="g")
        chunk = codec.parse_frame(json.dumps({"usageMetadata": {}}), codec.new_state())
        assert not chunk.is_complete
        assert chunk.content == ""

    def test_wrong_shape_part_is_recoverable(self):
        codec = GeminiCodec(api_key="g")
        state = codec.new_state()

        bad = codec.parse_frame(candidate_frame(["oops"]), state)
        good = codec.parse_frame(candidate_frame([{"text": "fine"}]), state)

        assert bad.error.startswith("Failed to parse chunk:")
        assert not bad.is_complete
        assert good.content == "fine"
