"""Gemini ``streamGenerateContent`` codec."""

import json
import logging
from typing import Any

from vaultkeeper.conversation import ConversationContent, Role
from vaultkeeper.functions import (
    WEB_SEARCH_DEFINITION,
    AIFunction,
    FunctionDefinition,
    FunctionResponse,
    query_actions,
)
from vaultkeeper.provider import (
    DEFAULT_MODELS,
    FRAME_SHAPE_ERRORS,
    ProviderKind,
    malformed_frame,
    provider_error,
    sendable,
    stored_call,
    stored_response,
)
from vaultkeeper.streaming import MergeAccumulator, NormalizedChunk
from vaultkeeper.transport import Framing, ProviderRequest

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
TOOL_FINISH_REASONS = frozenset({"FUNCTION_CALL", "TOOL_CALL", "TOOL_USE"})


def _as_struct(value: Any) -> dict:
    # functionResponse.response must be an object
    if isinstance(value, dict):
        return value
    return {"result": value}


class GeminiCodec:
    """Streams ``models/{model}:streamGenerateContent``.

    Function calls arrive as whole ``args`` objects which are merged across
    frames, and are finalised on the first frame that carries a
    ``finishReason``. Gemini is the only provider offered
    ``request_web_search``: once that call has been answered, the next
    request swaps the function declarations for the built-in Google
    Search tool.
    """

    kind = ProviderKind.GEMINI

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS[ProviderKind.GEMINI],
        base_url: str = GEMINI_BASE_URL,
        framing: Framing = Framing.SSE,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.framing = framing

    @property
    def url(self) -> str:
        url = f"{self.base_url}/{self.model}:streamGenerateContent"
        if self.framing is Framing.SSE:
            url += "?alt=sse"
        return url

    def new_state(self) -> MergeAccumulator:
        return MergeAccumulator()

    def build_request(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[ConversationContent],
        tools: list[FunctionDefinition],
        destructive_allowed: bool,
    ) -> ProviderRequest:
        body: dict[str, Any] = {"contents": self.contents(history)}

        parts = [{"text": p} for p in (system_prompt, user_prompt) if p]
        if parts:
            body["system_instruction"] = {"parts": parts}

        if self.web_search_requested(history):
            body["tools"] = [{"google_search": {}}]
        else:
            declared = query_actions(tools, destructive_allowed)
            if all(t.name != WEB_SEARCH_DEFINITION.name for t in declared):
                declared = declared + [WEB_SEARCH_DEFINITION]
            body["tools"] = [{
                "functionDeclarations": [t.declaration() for t in declared],
            }]

        return ProviderRequest(
            url=self.url,
            body=body,
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.api_key,
            },
            framing=self.framing,
        )

    @staticmethod
    def web_search_requested(history: list[ConversationContent]) -> bool:
        """True when the last entry answers a ``request_web_search`` call."""
        if not history or not history[-1].is_function_call_response:
            return False
        try:
            response = FunctionResponse.from_conversation_string(
                history[-1].upstream_text()
            )
        except ValueError:
            return False
        return response.name == AIFunction.REQUEST_WEB_SEARCH.value

    def contents(self, history: list[ConversationContent]) -> list[dict]:
        contents = []
        for entry in sendable(history):
            role = "model" if entry.role == Role.ASSISTANT else "user"
            text = entry.upstream_text()
            parts: list[dict] = []

            if entry.is_function_call and entry.function_call.strip():
                if text.strip():
                    parts.append({"text": text})
                call = stored_call(entry)
                if call is not None:
                    parts.append({
                        "functionCall": {"name": call.name, "args": call.arguments},
                    })
            elif entry.is_function_call_response and text.strip():
                response = stored_response(entry)
                if response is not None:
                    parts.append({
                        "functionResponse": {
                            "name": response.name,
                            "response": _as_struct(response.response),
                        },
                    })
                else:
                    parts.append({"text": text})
            elif text.strip():
                parts.append({"text": text})

            if parts:
                contents.append({"role": role, "parts": parts})
        return contents

    def parse_frame(self, raw_frame: str, state: MergeAccumulator) -> NormalizedChunk:
        try:
            data = json.loads(raw_frame)
        except json.JSONDecodeError as e:
            return malformed_frame(raw_frame, e)
        if not isinstance(data, dict):
            return malformed_frame(raw_frame, "expected a JSON object")

        try:
            return self._read_candidate(data, state)
        except FRAME_SHAPE_ERRORS as e:
            return malformed_frame(raw_frame, e)

    def _read_candidate(self, data: dict, state: MergeAccumulator) -> NormalizedChunk:
        if data.get("error"):
            return provider_error(data["error"])

        candidates = data.get("candidates") or []
        if not candidates:
            return NormalizedChunk()
        candidate = candidates[0]

        text_parts: list[str] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought"):
                continue
            if part.get("text"):
                text_parts.append(part["text"])
            function_call = part.get("functionCall")
            if function_call:
                args = function_call.get("args")
                state.merge(
                    name=function_call.get("name"),
                    arguments=args if isinstance(args, dict) else None,
                    call_id=function_call.get("id"),
                )
        content = "".join(text_parts)

        finish_reason = candidate.get("finishReason")
        if not finish_reason:
            return NormalizedChunk(content=content)

        call = state.finish() if state.active else None
        return NormalizedChunk(
            content=content,
            is_complete=True,
            function_call=call,
            should_continue=call is not None or finish_reason in TOOL_FINISH_REASONS,
        )
