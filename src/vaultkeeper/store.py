"""Conversation persistence."""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from vaultkeeper.conversation import Conversation

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|]')


class ConversationStore(Protocol):
    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def update_conversation_title(self, conversation: Conversation, title: str) -> None: ...

    @property
    def current_path(self) -> Path | None: ...


def filename_for(title: str) -> str:
    cleaned = _UNSAFE_FILENAME.sub("-", title).strip().strip(".")
    return f"{cleaned or 'Untitled'}.json"


class JsonConversationStore:
    """Stores each conversation as one JSON file named after its title.

    The store tracks the file of the conversation currently being edited.
    The first save of a new conversation picks the path from its title;
    renaming moves that file.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()
        self._current_path: Path | None = None
        self._lock = asyncio.Lock()

    @property
    def current_path(self) -> Path | None:
        return self._current_path

    def reset_current(self) -> None:
        """Forget the current file so the next save starts a new one."""
        self._current_path = None

    async def save_conversation(self, conversation: Conversation) -> None:
        async with self._lock:
            await self._save(conversation)

    async def _save(self, conversation: Conversation) -> None:
        if self._current_path is None:
            self._current_path = self._unused_path(conversation.title)
        conversation.updated = datetime.now(timezone.utc)
        record = conversation.to_record()
        await asyncio.to_thread(self._write, self._current_path, record)

    @staticmethod
    def _write(path: Path, record: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8")

    def _unused_path(self, title: str) -> Path:
        path = self.directory / filename_for(title)
        n = 1
        while path.exists():
            path = self.directory / filename_for(f"{title} {n}")
            n += 1
        return path

    async def load_conversation(self, path: Path | str) -> Conversation:
        """Load *path* and make it the current conversation file.

        Raises:
            ValueError: If the file is not a conversation record.
        """
        path = Path(path)
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        try:
            conversation = Conversation.from_record(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Not a conversation record: {path}") from e
        self._current_path = path
        return conversation

    async def load_all(self) -> list[Conversation]:
        """Every readable conversation, most recently updated first."""
        if not self.directory.is_dir():
            return []
        conversations = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                text = await asyncio.to_thread(path.read_text, encoding="utf-8")
                conversations.append(Conversation.from_record(json.loads(text)))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable conversation {path.name}: {e}")
        conversations.sort(key=lambda c: c.updated, reverse=True)
        return conversations

    async def update_conversation_title(self, conversation: Conversation, title: str) -> None:
        """Rename the current conversation file and save it under *title*."""
        async with self._lock:
            old_path = self._current_path
            conversation.title = title
            new_path = self.directory / filename_for(title)
            if new_path != old_path and new_path.exists():
                new_path = self._unused_path(title)
            if old_path is not None and old_path != new_path:
                if old_path.exists():
                    await asyncio.to_thread(old_path.rename, new_path)
            self._current_path = new_path
            logger.info(f"Conversation renamed to {title!r}")
            await self._save(conversation)

    async def delete_current(self) -> bool:
        path, self._current_path = self._current_path, None
        if path is None or not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        return True
