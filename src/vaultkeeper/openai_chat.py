"""OpenAI Chat Completions codec."""

import json
import logging
from typing import Any

from vaultkeeper.conversation import ConversationContent
from vaultkeeper.functions import FunctionDefinition, query_actions
from vaultkeeper.provider import (
    DEFAULT_MODELS,
    FRAME_SHAPE_ERRORS,
    FUNCTION_CALL_PARSE_ERROR,
    ProviderKind,
    join_instructions,
    malformed_frame,
    provider_error,
    sendable,
    stored_call,
    stored_response,
)
from vaultkeeper.streaming import NormalizedChunk, ToolCallAccumulator, ToolCallFragment
from vaultkeeper.transport import Framing, ProviderRequest

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
FINISH_REASON_TOOL_CALLS = "tool_calls"
DONE_SENTINEL = "[DONE]"


class OpenAICodec:
    """Streams ``/v1/chat/completions``.

    Tool calls stream as fragments keyed by index and may interleave. When
    the model asks for several calls at once only the lowest-index one is
    executed; the model sees its result and asks again for the rest.
    """

    kind = ProviderKind.OPENAI

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS[ProviderKind.OPENAI],
        url: str = OPENAI_URL,
    ):
        self.api_key = api_key
        self.model = model
        self.url = url

    def new_state(self) -> ToolCallAccumulator:
        return ToolCallAccumulator()

    def build_request(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[ConversationContent],
        tools: list[FunctionDefinition],
        destructive_allowed: bool,
    ) -> ProviderRequest:
        messages = [{
            "role": "system",
            "content": join_instructions(system_prompt, user_prompt),
        }]
        messages.extend(self.messages(history))

        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
        }
        declared = query_actions(tools, destructive_allowed)
        if declared:
            body["tools"] = [
                {"type": "function", "function": t.declaration()} for t in declared
            ]

        return ProviderRequest(
            url=self.url,
            body=body,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            framing=Framing.SSE,
        )

    def messages(self, history: list[ConversationContent]) -> list[dict]:
        messages: list[dict] = []
        for entry in sendable(history):
            role = entry.role.value
            text = entry.upstream_text()

            if entry.is_function_call and entry.function_call.strip():
                call = stored_call(entry)
                if call is None:
                    messages.append({
                        "role": role,
                        "content": text or FUNCTION_CALL_PARSE_ERROR,
                    })
                    continue
                messages.append({
                    "role": role,
                    "content": text if text.strip() else None,
                    "tool_calls": [{
                        "id": call.tool_id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        },
                    }],
                })
                continue

            if entry.is_function_call_response and text.strip():
                response = stored_response(entry)
                if response is None:
                    messages.append({"role": role, "content": text})
                    continue
                messages.append({
                    "role": "tool",
                    "tool_call_id": response.tool_id,
                    "content": json.dumps(response.response),
                })
                continue

            if text:
                messages.append({"role": role, "content": text})
        return messages

    def parse_frame(self, raw_frame: str, state: ToolCallAccumulator) -> NormalizedChunk:
        if raw_frame.strip() == DONE_SENTINEL:
            return NormalizedChunk(is_complete=True)

        try:
            data = json.loads(raw_frame)
        except json.JSONDecodeError as e:
            return malformed_frame(raw_frame, e)
        if not isinstance(data, dict):
            return malformed_frame(raw_frame, "expected a JSON object")

        try:
            return self._read_delta(data, state)
        except FRAME_SHAPE_ERRORS as e:
            return malformed_frame(raw_frame, e)

    def _read_delta(self, data: dict, state: ToolCallAccumulator) -> NormalizedChunk:
        if data.get("error"):
            return provider_error(data["error"])

        choices = data.get("choices") or []
        if not choices:
            return NormalizedChunk()

        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content") or ""

        for tc in delta.get("tool_calls") or []:
            fn = tc.get("function") or {}
            state.feed(ToolCallFragment(
                index=tc.get("index", 0),
                call_id=tc.get("id") or None,
                name=fn.get("name") or None,
                arguments_delta=fn.get("arguments"),
            ))

        finish_reason = choice.get("finish_reason")
        if not finish_reason:
            return NormalizedChunk(content=content)

        should_continue = finish_reason == FINISH_REASON_TOOL_CALLS
        function_call = state.first_complete() if should_continue else None
        if should_continue and function_call is None:
            logger.warning("Model finished with tool_calls but no usable call was streamed")
        return NormalizedChunk(
            content=content,
            is_complete=True,
            function_call=function_call,
            should_continue=should_continue,
        )
