"""Anthropic Messages API codec."""

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
from vaultkeeper.streaming import BlockAccumulator, NormalizedChunk
from vaultkeeper.transport import Framing, ProviderRequest

logger = logging.getLogger(__name__)

CLAUDE_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
STOP_REASON_TOOL_USE = "tool_use"


class ClaudeCodec:
    """Streams ``/v1/messages``.

    Tool input arrives as ``input_json_delta`` fragments between a
    ``content_block_start`` and ``content_block_stop`` pair; a
    :class:`BlockAccumulator` holds them until the block closes.
    """

    kind = ProviderKind.CLAUDE

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS[ProviderKind.CLAUDE],
        max_tokens: int = 16384,
        url: str = CLAUDE_URL,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.url = url

    def new_state(self) -> BlockAccumulator:
        return BlockAccumulator()

    def build_request(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[ConversationContent],
        tools: list[FunctionDefinition],
        destructive_allowed: bool,
    ) -> ProviderRequest:
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": join_instructions(system_prompt, user_prompt),
            "messages": self.messages(history),
            "stream": True,
        }
        declared = self.tool_declarations(query_actions(tools, destructive_allowed))
        if declared:
            body["tools"] = declared

        return ProviderRequest(
            url=self.url,
            body=body,
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            framing=Framing.SSE,
        )

    @staticmethod
    def tool_declarations(tools: list[FunctionDefinition]) -> list[dict]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.parameters,
            }
            for t in tools
        ]

    def messages(self, history: list[ConversationContent]) -> list[dict]:
        messages = []
        for entry in sendable(history):
            text = entry.upstream_text()
            blocks: list[dict] = []

            if text.strip() and not entry.is_function_call_response:
                blocks.append({"type": "text", "text": text})

            if entry.is_function_call and entry.function_call.strip():
                call = stored_call(entry)
                if call is not None:
                    blocks.append({
                        "type": "tool_use",
                        "id": call.tool_id,
                        "name": call.name,
                        "input": call.arguments,
                    })
                elif not text.strip():
                    blocks.append({"type": "text", "text": FUNCTION_CALL_PARSE_ERROR})

            if entry.is_function_call_response and text.strip():
                response = stored_response(entry)
                if response is not None:
                    blocks.append({
                        "type": "tool_result",
                        "tool_use_id": response.tool_id,
                        "content": json.dumps(response.response),
                    })
                else:
                    blocks.append({"type": "text", "text": text})

            if blocks:
                messages.append({"role": entry.role.value, "content": blocks})
        return messages

    def parse_frame(self, raw_frame: str, state: BlockAccumulator) -> NormalizedChunk:
        try:
            data = json.loads(raw_frame)
        except json.JSONDecodeError as e:
            return malformed_frame(raw_frame, e)
        if not isinstance(data, dict):
            return malformed_frame(raw_frame, "expected a JSON object")

        try:
            return self._read_event(data, state)
        except FRAME_SHAPE_ERRORS as e:
            return malformed_frame(raw_frame, e)

    def _read_event(self, data: dict, state: BlockAccumulator) -> NormalizedChunk:
        event_type = data.get("type")

        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                state.start(block.get("name"), block.get("id"))
            elif block.get("type") == "text" and block.get("text"):
                return NormalizedChunk(content=block["text"])
            return NormalizedChunk()

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return NormalizedChunk(content=delta.get("text") or "")
            if delta.get("type") == "input_json_delta":
                state.append(delta.get("partial_json") or "")
            return NormalizedChunk()

        if event_type == "content_block_stop":
            if state.active:
                call = state.finish()
                if call is not None:
                    logger.debug(f"Tool use block finished: {call.name}")
                return NormalizedChunk(function_call=call)
            return NormalizedChunk()

        if event_type == "message_delta":
            stop_reason = (data.get("delta") or {}).get("stop_reason")
            if stop_reason:
                return NormalizedChunk(
                    is_complete=True,
                    should_continue=stop_reason == STOP_REASON_TOOL_USE,
                )
            return NormalizedChunk()

        if event_type == "message_stop":
            return NormalizedChunk(is_complete=True)

        if event_type == "error":
            return provider_error(data.get("error") or data)

        # message_start, ping and anything newer
        return NormalizedChunk()
