"""Provider codecs.

A codec knows one vendor's wire format: it builds the streaming request
from the conversation history and parses each frame of the response into
a :class:`~vaultkeeper.streaming.NormalizedChunk`. Codecs share no base
class, only the :class:`ProviderCodec` protocol. Each one keeps its
partial tool-call state in an accumulator object created by
``new_state()`` for a single request.
"""

import logging
from enum import Enum
from typing import Any, Protocol

from vaultkeeper.conversation import ConversationContent
from vaultkeeper.functions import FunctionCall, FunctionDefinition, FunctionResponse
from vaultkeeper.streaming import NormalizedChunk
from vaultkeeper.transport import ProviderRequest

logger = logging.getLogger(__name__)

FUNCTION_CALL_PARSE_ERROR = "Error parsing function call"


class ProviderKind(str, Enum):
    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"


DEFAULT_MODELS: dict[ProviderKind, str] = {
    ProviderKind.CLAUDE: "claude-sonnet-4-5",
    ProviderKind.OPENAI: "gpt-5",
    ProviderKind.GEMINI: "gemini-2.5-flash",
}

NAMING_MODELS: dict[ProviderKind, str] = {
    ProviderKind.CLAUDE: "claude-haiku-4-5",
    ProviderKind.OPENAI: "gpt-5-nano",
    ProviderKind.GEMINI: "gemini-2.5-flash",
}


class ProviderCodec(Protocol):
    kind: ProviderKind
    model: str

    def new_state(self) -> Any:
        """Return a fresh accumulator for one request."""
        ...

    def build_request(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[ConversationContent],
        tools: list[FunctionDefinition],
        destructive_allowed: bool,
    ) -> ProviderRequest:
        ...

    def parse_frame(self, raw_frame: str, state: Any) -> NormalizedChunk:
        ...


def create_codec(
    kind: ProviderKind, api_key: str, model: str | None = None,
) -> ProviderCodec:
    """Build the codec for *kind*, defaulting to its standard model."""
    from vaultkeeper.claude import ClaudeCodec
    from vaultkeeper.gemini import GeminiCodec
    from vaultkeeper.openai_chat import OpenAICodec

    codecs = {
        ProviderKind.CLAUDE: ClaudeCodec,
        ProviderKind.OPENAI: OpenAICodec,
        ProviderKind.GEMINI: GeminiCodec,
    }
    return codecs[kind](api_key=api_key, model=model or DEFAULT_MODELS[kind])


# ---------------------------------------------------------------------------
# Helpers shared by the codecs
# ---------------------------------------------------------------------------

def join_instructions(system_prompt: str, user_prompt: str) -> str:
    return "\n\n".join(p for p in (system_prompt, user_prompt) if p)


def sendable(history: list[ConversationContent]) -> list[ConversationContent]:
    """Entries worth sending upstream."""
    return [entry for entry in history if not entry.is_empty()]


def stored_call(entry: ConversationContent) -> FunctionCall | None:
    try:
        return FunctionCall.from_conversation_string(entry.function_call)
    except ValueError as e:
        logger.error(f"Failed to parse function call: {e}")
        return None


def stored_response(entry: ConversationContent) -> FunctionResponse | None:
    try:
        return FunctionResponse.from_conversation_string(entry.upstream_text())
    except ValueError as e:
        logger.error(f"Failed to parse function response: {e}")
        return None


# Raised by field access on a frame that is valid JSON with the wrong shape.
FRAME_SHAPE_ERRORS = (AttributeError, TypeError, KeyError, IndexError, ValueError)


def malformed_frame(raw_frame: str, error: Exception | str) -> NormalizedChunk:
    logger.error(f"Failed to parse stream chunk: {error} Chunk: {raw_frame!r}")
    return NormalizedChunk(error=f"Failed to parse chunk: {error}")


def provider_error(error: Any) -> NormalizedChunk:
    """Terminal chunk for an error reported inside the stream."""
    if isinstance(error, dict):
        message = error.get("message") or str(error)
        kind = error.get("type") or error.get("status")
        if kind:
            message = f"{kind}: {message}"
    else:
        message = str(error)
    logger.error(f"Provider reported an error: {message}")
    return NormalizedChunk(is_complete=True, error=message)
