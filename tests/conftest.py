import asyncio
from pathlib import Path

import pytest

from vaultkeeper.chat import ChatOrchestrator
from vaultkeeper.conversation import ConversationContent, Role
from vaultkeeper.dispatcher import FunctionDispatcher
from vaultkeeper.functions import FunctionCall, FunctionResponse, query_actions
from vaultkeeper.prompt import Prompt
from vaultkeeper.provider import ProviderKind
from vaultkeeper.streaming import NormalizedChunk
from vaultkeeper.transport import ProviderRequest
from vaultkeeper.vault import (
    FileEntry,
    OperationResult,
    SearchMatch,
    SearchSnippet,
    compile_search_pattern,
)


# ---------------------------------------------------------------------------
# Fake provider side
# ---------------------------------------------------------------------------

class FakeCodec:
    """Codec that records every request it builds. No wire format."""

    kind = ProviderKind.CLAUDE
    model = "fake-model"

    def __init__(self):
        self.histories: list[list[dict]] = []
        self.offered_tools: list[list[str]] = []
        self.system_prompts: list[str] = []

    def new_state(self):
        return None

    def build_request(self, system_prompt, user_prompt, history, tools, destructive_allowed):
        self.histories.append([entry.model_dump() for entry in history])
        self.offered_tools.append([t.name for t in query_actions(tools, destructive_allowed)])
        self.system_prompts.append(system_prompt + user_prompt)
        return ProviderRequest(url="https://provider.invalid/stream", body={})

    def parse_frame(self, raw_frame, state):
        return NormalizedChunk(content=raw_frame)


class FakeTransport:
    """Replays one scripted list of chunks per turn.

    A turn may also be an exception instance, raised when streaming starts.
    """

    def __init__(self, turns=None):
        self.turns = list(turns or [])
        self.requests: list[ProviderRequest] = []

    async def stream(self, request, parse_frame, cancel=None):
        self.requests.append(request)
        chunks = self.turns.pop(0) if self.turns else [NormalizedChunk(is_complete=True)]
        if isinstance(chunks, Exception):
            raise chunks
        for chunk in chunks:
            if cancel is not None and cancel.cancelled:
                return
            yield chunk
            await asyncio.sleep(0)

    async def aclose(self):
        pass


def text_turn(*pieces: str) -> list[NormalizedChunk]:
    chunks = [NormalizedChunk(content=p) for p in pieces]
    chunks.append(NormalizedChunk(is_complete=True))
    return chunks


def call_turn(name: str, args: dict, call_id: str = "call_1", text: str = "") -> list[NormalizedChunk]:
    chunks = [NormalizedChunk(content=text)] if text else []
    chunks.append(NormalizedChunk(function_call=FunctionCall(name=name, arguments=args, tool_id=call_id)))
    chunks.append(NormalizedChunk(is_complete=True, should_continue=True))
    return chunks


# ---------------------------------------------------------------------------
# Fake storage
# ---------------------------------------------------------------------------

class MemoryStore:
    """Records a snapshot of the conversation on every save."""

    def __init__(self):
        self.snapshots: list[list[dict]] = []
        self.titles: list[str] = []
        self.current_path: Path | None = Path("memory.json")

    async def save_conversation(self, conversation):
        self.snapshots.append([entry.model_dump() for entry in conversation.contents])

    async def update_conversation_title(self, conversation, title):
        conversation.title = title
        self.titles.append(title)
        await self.save_conversation(conversation)


class FakeVault:
    """In-memory FileStore keyed by vault-relative path."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files = dict(files or {})

    async def list_files(self, path="", recursive=True):
        prefix = path.strip("/")
        paths = sorted(p for p in self.files if not prefix or p.startswith(prefix + "/"))
        if not recursive:
            depth = prefix.count("/") + 1 if prefix else 0
            paths = [p for p in paths if p.count("/") == depth]
        return [FileEntry(path=p) for p in paths]

    async def read_file(self, path):
        return self.files.get(path)

    async def search_files(self, term):
        if not term.strip():
            return []
        pattern = compile_search_pattern(term)
        matches = []
        for path, text in sorted(self.files.items()):
            snippets = [SearchSnippet(text=m.group(0), match_index=m.start()) for m in pattern.finditer(text)]
            if snippets or pattern.search(path):
                matches.append(SearchMatch(path=path, snippets=snippets))
        return matches

    async def write_file(self, path, content):
        self.files[path] = content
        return True

    async def delete_file(self, path):
        if path not in self.files:
            return OperationResult(success=False, error=f"File not found: {path}")
        del self.files[path]
        return OperationResult(success=True)

    async def move_file(self, source, destination):
        if source not in self.files:
            return OperationResult(success=False, error=f"File not found: {source}")
        if destination in self.files:
            return OperationResult(success=False, error=f"Destination already exists: {destination}")
        self.files[destination] = self.files.pop(source)
        return OperationResult(success=True)


def call_entry(name: str, args: dict, call_id: str = "call_1", text: str = "") -> ConversationContent:
    call = FunctionCall(name=name, arguments=args, tool_id=call_id)
    return ConversationContent(
        role=Role.ASSISTANT,
        content=text,
        function_call=call.to_conversation_string(),
        is_function_call=True,
        tool_id=call_id,
    )


def response_entry(name: str, response, call_id: str = "call_1") -> ConversationContent:
    stored = FunctionResponse(name=name, response=response, tool_id=call_id).to_conversation_string()
    return ConversationContent(
        role=Role.USER,
        content=stored,
        is_function_call_response=True,
        tool_id=call_id,
    )


def entry_kinds(snapshot: list[dict]) -> list[str]:
    """Summarise a saved snapshot as ``role:kind`` strings."""
    kinds = []
    for entry in snapshot:
        if entry["is_function_call"]:
            kind = "call"
        elif entry["is_function_call_response"]:
            kind = "response"
        else:
            kind = "text"
        kinds.append(f"{entry['role']}:{kind}")
    return kinds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_vault():
    return FakeVault({
        "notes/todo.md": "- buy milk\n- call Ada",
        "notes/ideas.md": "A garden planner",
        "journal.md": "Met Ada for coffee",
    })


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def make_orchestrator(fake_codec, memory_store, fake_vault):
    """Factory fixture: build an orchestrator over the fakes."""
    def _make(turns=None, **kwargs):
        events = []
        kwargs.setdefault("listener", events.append)
        orchestrator = ChatOrchestrator(
            codec=kwargs.pop("codec", fake_codec),
            transport=kwargs.pop("transport", FakeTransport(turns)),
            dispatcher=kwargs.pop("dispatcher", FunctionDispatcher(fake_vault)),
            store=kwargs.pop("store", memory_store),
            prompt=kwargs.pop("prompt", Prompt()),
            **kwargs,
        )
        orchestrator.events = events
        return orchestrator
    return _make
