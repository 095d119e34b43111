import asyncio
from pathlib import Path

VAULT_AI_DIR = "Vault AI"
CONVERSATIONS_DIR = f"{VAULT_AI_DIR}/Conversations"
USER_INSTRUCTION_PATH = f"{VAULT_AI_DIR}/User Instructions.md"

SYSTEM_INSTRUCTION = """\
# Vault Assistant

You are an assistant with access to the user's vault of markdown notes.
You help the user find what they have written down, create and
reorganise notes, and answer general questions when the notes have
nothing to add.

## Search the vault first

Searching costs little; missing something the user wrote down costs a
lot. Search immediately when:
- the question could plausibly be answered by the user's own notes
- the user refers to something specific ("the project", "my ideas",
  "what did I decide about ...")
- the topic is something people usually keep notes about: projects,
  plans, meetings, lists, prices, research, tasks, contacts

Skip the search only for general knowledge questions with no personal
angle, or explicit requests for current information from the web.
When a search finds nothing, say that you checked the notes and then
help from general knowledge.

## Folder names carry meaning

Treat folder names as filters. When the user qualifies a request with a
word that matches a folder ("important templates", "work projects"),
restrict the answer to that folder. If it is unclear whether a word
names a folder, list the folders and ask.

## Answering

- Link to notes with wiki-link syntax: [[note name]].
- Prefer what the notes say over generic information, and combine both
  when that gives a better answer.
- Be concise. Do not describe your tools or how you work.
- Read a note before overwriting it, and only delete or move files
  when the user clearly asked for it.
"""


class Prompt:
    """System instruction plus the user's own instruction note.

    The note lives inside the vault's ``Vault AI`` folder, which the model
    cannot see, and is read again on every turn so edits take effect
    immediately.
    """

    def __init__(
        self,
        instruction_file: Path | str | None = None,
        system_instruction: str = SYSTEM_INSTRUCTION,
    ):
        self.instruction_file = Path(instruction_file) if instruction_file else None
        self._system_instruction = system_instruction

    @classmethod
    def for_vault(cls, vault_root: Path | str) -> "Prompt":
        return cls(Path(vault_root).expanduser() / USER_INSTRUCTION_PATH)

    def system_instruction(self) -> str:
        return self._system_instruction

    async def user_instruction(self) -> str:
        if self.instruction_file is None or not self.instruction_file.is_file():
            return ""
        return await asyncio.to_thread(self.instruction_file.read_text, encoding="utf-8")
