"""Events emitted by the orchestrator while a submission runs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ChatEvent:
    """Base for all chat events."""


@dataclass
class TextDeltaEvent(ChatEvent):
    """Assistant text from the provider stream."""

    content: str = ""


@dataclass
class ThoughtEvent(ChatEvent):
    """Short status line from a function call's ``user_message``.

    ``message`` is ``None`` when the previous thought should be cleared.
    """

    message: str | None = None


@dataclass
class FunctionCallEvent(ChatEvent):
    name: str = ""
    call_id: str | None = None
    arguments: dict = field(default_factory=dict)


@dataclass
class FunctionResultEvent(ChatEvent):
    name: str = ""
    call_id: str | None = None
    response: Any = None
    is_error: bool = False


@dataclass
class TurnErrorEvent(ChatEvent):
    error: str = ""


@dataclass
class TitleChangedEvent(ChatEvent):
    title: str = ""


@dataclass
class ChatCompleteEvent(ChatEvent):
    """Always the last event of a submission."""

    conversation: Any = None


ChatListener = Callable[[ChatEvent], None]
