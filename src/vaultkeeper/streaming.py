"""Streaming primitives for provider responses.

Codecs turn every wire frame into a :class:`NormalizedChunk`. Tool calls
whose arguments arrive in pieces are reassembled by one of three
accumulators, matching how each provider streams them:

* :class:`BlockAccumulator`: one call at a time, raw JSON text appended
  between a start and a stop event (Claude).
* :class:`MergeAccumulator`: whole argument objects per frame,
  shallow-merged (Gemini).
* :class:`ToolCallAccumulator`: several calls interleaved by index, raw
  JSON text per index (OpenAI).

An accumulator belongs to exactly one request. Codecs hand out a fresh
one per request and never share them.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from vaultkeeper.functions import FunctionCall

logger = logging.getLogger(__name__)


@dataclass
class NormalizedChunk:
    """Normalised streaming chunk from any provider."""

    content: str = ""
    is_complete: bool = False
    function_call: FunctionCall | None = None
    should_continue: bool = False
    error: str | None = None

    @property
    def is_terminal_error(self) -> bool:
        return self.error is not None and self.is_complete


def _parse_arguments(name: str, raw: str) -> dict[str, Any] | None:
    if not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse accumulated arguments for {name}: {e}")
        return None
    if not isinstance(args, dict):
        logger.error(f"Arguments for {name} are not an object: {raw!r}")
        return None
    return args


# ---------------------------------------------------------------------------
# Block-based (start / delta / stop)
# ---------------------------------------------------------------------------

@dataclass
class PendingCall:
    name: str | None = None
    call_id: str | None = None
    arguments: str = ""


class BlockAccumulator:
    """Collects one tool call between block-start and block-stop."""

    def __init__(self) -> None:
        self.pending: PendingCall | None = None

    @property
    def active(self) -> bool:
        return self.pending is not None

    def start(self, name: str | None, call_id: str | None) -> None:
        self.pending = PendingCall(name=name, call_id=call_id)

    def append(self, partial_json: str) -> None:
        if self.pending is not None:
            self.pending.arguments += partial_json

    def finish(self) -> FunctionCall | None:
        """Parse the buffered arguments and clear the accumulator.

        Returns ``None`` when no call was in progress or its arguments
        are not valid JSON.
        """
        pending, self.pending = self.pending, None
        if pending is None or not pending.name:
            return None
        args = _parse_arguments(pending.name, pending.arguments)
        if args is None:
            return None
        return FunctionCall(name=pending.name, arguments=args, tool_id=pending.call_id)

    def reset(self) -> None:
        self.pending = None


# ---------------------------------------------------------------------------
# Object-merge
# ---------------------------------------------------------------------------

class MergeAccumulator:
    """Merges partial argument objects; later keys win."""

    def __init__(self) -> None:
        self.name: str | None = None
        self.call_id: str | None = None
        self.arguments: dict[str, Any] = {}

    @property
    def active(self) -> bool:
        return self.name is not None

    def merge(
        self,
        name: str | None = None,
        arguments: dict[str, Any] | None = None,
        call_id: str | None = None,
    ) -> None:
        if name:
            self.name = name
        if call_id:
            self.call_id = call_id
        if arguments:
            self.arguments = {**self.arguments, **arguments}

    def finish(self) -> FunctionCall | None:
        name, args, call_id = self.name, self.arguments, self.call_id
        self.reset()
        if not name:
            return None
        return FunctionCall(
            name=name,
            arguments=args,
            tool_id=call_id or f"call_{uuid.uuid4().hex[:24]}",
        )

    def reset(self) -> None:
        self.name = None
        self.call_id = None
        self.arguments = {}


# ---------------------------------------------------------------------------
# Indexed multi-call
# ---------------------------------------------------------------------------

@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class ToolCall:
    """A tool call assembled from fragments, arguments still raw."""

    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments."""

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCall()
        tc = self._pending[fragment.index]
        if fragment.call_id is not None:
            tc.id = fragment.call_id
        if fragment.name is not None:
            tc.name = fragment.name
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return accumulated tool calls in index order."""
        return [self._pending[i] for i in sorted(self._pending)]

    def first_complete(self) -> FunctionCall | None:
        """Return the lowest-index call that has a name and valid arguments."""
        for tc in self.finalize():
            if not tc.name:
                continue
            args = _parse_arguments(tc.name, tc.arguments)
            if args is None:
                continue
            return FunctionCall(name=tc.name, arguments=args, tool_id=tc.id or None)
        return None

    def reset(self) -> None:
        self._pending.clear()
