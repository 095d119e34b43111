"""Background conversation naming.

After the first message of a conversation a small, cheap model is asked
for a short title; the stored conversation is then renamed. Naming
never blocks the chat and its failures are only logged.
"""

import logging
import re
from collections.abc import Callable
from typing import Protocol

import httpx
import openai
from openai import AsyncOpenAI

from vaultkeeper.cancellation import CancellationToken, OperationCancelled
from vaultkeeper.claude import ANTHROPIC_VERSION, CLAUDE_URL
from vaultkeeper.conversation import Conversation
from vaultkeeper.gemini import GEMINI_BASE_URL
from vaultkeeper.provider import NAMING_MODELS, ProviderKind
from vaultkeeper.store import ConversationStore

logger = logging.getLogger(__name__)

MAX_TITLE_WORDS = 6

NAMING_PROMPT = (
    "Generate a concise title of at most six words for a conversation that "
    "starts with the message below. Reply with the title only, without "
    "quotes or punctuation at the end."
)

_SURROUNDING_QUOTES = re.compile(r'^["\'“”‘’]+|["\'“”‘’]+$')


class NamingError(Exception):
    """The naming model did not return a usable title."""


def validate_name(raw: str) -> str:
    """Trim, remove surrounding quotes and keep the first six words."""
    cleaned = _SURROUNDING_QUOTES.sub("", raw.strip()).strip()
    return " ".join(cleaned.split()[:MAX_TITLE_WORDS])


class ConversationNamer(Protocol):
    async def generate_name(self, user_prompt: str) -> str: ...


class ClaudeNamer:
    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        model: str = NAMING_MODELS[ProviderKind.CLAUDE],
    ):
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=60.0)
        self.model = model

    async def generate_name(self, user_prompt: str) -> str:
        response = await self.client.post(
            CLAUDE_URL,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            json={
                "model": self.model,
                "max_tokens": 50,
                "system": NAMING_PROMPT,
                "messages": [{"role": "user", "content": user_prompt}],
            },
        )
        response.raise_for_status()
        try:
            return response.json()["content"][0]["text"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise NamingError(f"Unexpected naming response: {e}") from e


class GeminiNamer:
    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        model: str = NAMING_MODELS[ProviderKind.GEMINI],
    ):
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=60.0)
        self.model = model

    async def generate_name(self, user_prompt: str) -> str:
        response = await self.client.post(
            f"{GEMINI_BASE_URL}/{self.model}:generateContent",
            headers={"x-goog-api-key": self.api_key},
            json={
                "system_instruction": {"parts": [{"text": NAMING_PROMPT}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            },
        )
        response.raise_for_status()
        try:
            parts = response.json()["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in parts if not p.get("thought"))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise NamingError(f"Unexpected naming response: {e}") from e


class OpenAINamer:
    def __init__(
        self,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
        model: str = NAMING_MODELS[ProviderKind.OPENAI],
    ):
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            max_retries=5,
            timeout=180.0,
        )
        self.model = model

    async def generate_name(self, user_prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": NAMING_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise NamingError("Naming model returned no content")
        return content


def create_namer(
    kind: ProviderKind, api_key: str, client: httpx.AsyncClient | None = None,
) -> ConversationNamer:
    if kind == ProviderKind.CLAUDE:
        return ClaudeNamer(api_key, client=client)
    if kind == ProviderKind.GEMINI:
        return GeminiNamer(api_key, client=client)
    return OpenAINamer(api_key)


class NamingService:
    """Names a conversation and renames its stored record."""

    def __init__(self, namer: ConversationNamer, store: ConversationStore):
        self.namer = namer
        self.store = store

    async def request_name(
        self,
        conversation: Conversation,
        user_prompt: str,
        cancel: CancellationToken | None = None,
        on_renamed: Callable[[str], None] | None = None,
    ) -> str | None:
        """Generate a title and apply it. Returns the title, or ``None``."""
        cancel = cancel or CancellationToken()
        path = self.store.current_path
        try:
            raw = await cancel.guard(self.namer.generate_name(user_prompt))
        except OperationCancelled:
            return None
        except (httpx.HTTPError, openai.OpenAIError, NamingError) as e:
            logger.error(f"Conversation naming failed: {e}")
            return None

        title = validate_name(raw)
        if not title:
            logger.warning(f"Naming model returned an unusable title: {raw!r}")
            return None
        if cancel.cancelled or self.store.current_path != path:
            # the user moved on to another conversation
            return None

        await self.store.update_conversation_title(conversation, title)
        if on_renamed is not None:
            on_renamed(title)
        return title
