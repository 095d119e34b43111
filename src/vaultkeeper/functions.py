"""Function-calling primitives shared by every provider.

:class:`FunctionCall` and :class:`FunctionResponse` are the
provider-agnostic value objects that flow between the codecs, the
dispatcher and the conversation history. :class:`FunctionDefinition`
describes a callable function to the model; its parameter schema is
derived from the same pydantic model the dispatcher validates against.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AIFunction(str, Enum):
    SEARCH_VAULT_FILES = "search_vault_files"
    READ_VAULT_FILES = "read_vault_files"
    WRITE_VAULT_FILE = "write_vault_file"
    DELETE_VAULT_FILES = "delete_vault_files"
    MOVE_VAULT_FILES = "move_vault_files"
    LIST_VAULT_FILES = "list_vault_files"

    # only offered to gemini
    REQUEST_WEB_SEARCH = "request_web_search"

    @classmethod
    def from_name(cls, name: str) -> "AIFunction":
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown function name: {name}") from None


class FunctionCall(BaseModel):
    """A complete function call requested by the model."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    tool_id: str | None = None

    def _payload(self) -> dict:
        return {
            "functionCall": {
                "id": self.tool_id,
                "name": self.name,
                "args": self.arguments,
            }
        }

    def to_conversation_string(self) -> str:
        return json.dumps(self._payload())

    @classmethod
    def from_conversation_string(cls, value: str) -> "FunctionCall":
        """Rebuild a call from its stored form.

        Raises:
            ValueError: If *value* is not a stored function call.
        """
        try:
            stored = json.loads(value)["functionCall"]
            return cls(
                name=stored["name"],
                arguments=stored.get("args") or {},
                tool_id=stored.get("id"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Not a stored function call: {e}") from e

    def strip_from(self, content: str) -> str:
        """Remove echoes of this call's stored JSON from *content*.

        Some models repeat the call as text alongside the structured
        call. Content that does not contain the JSON is returned as-is.
        """
        if not content.strip():
            return content
        payload = self._payload()
        variants = [
            json.dumps(payload),
            json.dumps(payload, separators=(",", ":")),
            json.dumps(payload, indent=2),
            json.dumps(payload, indent=4),
        ]
        stripped = content
        for variant in variants:
            stripped = stripped.replace(variant, "")
        if stripped == content:
            return content
        return stripped.strip()


class FunctionResponse(BaseModel):
    """The result of executing a :class:`FunctionCall`."""

    model_config = ConfigDict(frozen=True)

    name: str
    response: Any = None
    tool_id: str | None = None

    @property
    def is_error(self) -> bool:
        return isinstance(self.response, dict) and "error" in self.response

    def to_conversation_string(self) -> str:
        return json.dumps({
            "id": self.tool_id,
            "functionResponse": {
                "name": self.name,
                "response": self.response,
            },
        })

    @classmethod
    def from_conversation_string(cls, value: str) -> "FunctionResponse":
        """Rebuild a response from its stored form.

        Raises:
            ValueError: If *value* is not a stored function response.
        """
        try:
            stored = json.loads(value)
            return cls(
                name=stored["functionResponse"]["name"],
                response=stored["functionResponse"].get("response"),
                tool_id=stored.get("id"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Not a stored function response: {e}") from e


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class FunctionArgs(BaseModel):
    user_message: str = Field(
        default="",
        description=(
            "A short message displayed to the user explaining the action "
            "being taken."
        ),
    )


class ListVaultFilesArgs(FunctionArgs):
    path: str = Field(
        default="",
        description="Folder to list, relative to the vault root. Empty for the whole vault.",
    )
    recursive: bool = Field(
        default=True,
        description="Whether to include the contents of sub-folders.",
    )


class ReadVaultFilesArgs(FunctionArgs):
    file_paths: list[str] = Field(
        description="Exact paths of the files to read, e.g. ['folder/note.md', 'note2.md'].",
    )


class SearchVaultFilesArgs(FunctionArgs):
    search_terms: list[str] = Field(
        description=(
            "Regex patterns to search for in file names and contents. "
            "Simple text such as 'todo' also works."
        ),
    )


class WriteVaultFileArgs(FunctionArgs):
    file_path: str = Field(
        description="Path of the file to create or overwrite, including the extension.",
    )
    content: str = Field(description="The complete new content of the file.")


class DeleteVaultFilesArgs(FunctionArgs):
    file_paths: list[str] = Field(
        description="Exact paths of the files to delete.",
    )
    confirm_deletion: bool = Field(
        description=(
            "Safety flag that must be explicitly set to true to confirm "
            "the deletion is intentional."
        ),
    )


class MoveVaultFilesArgs(FunctionArgs):
    source_paths: list[str] = Field(
        description="Current paths of the files to move.",
    )
    destination_paths: list[str] = Field(
        description=(
            "Destination paths, including file names. Must be the same "
            "length as source_paths, matched by index."
        ),
    )


class RequestWebSearchArgs(FunctionArgs):
    pass


ARGUMENT_MODELS: dict[AIFunction, type[FunctionArgs]] = {
    AIFunction.LIST_VAULT_FILES: ListVaultFilesArgs,
    AIFunction.READ_VAULT_FILES: ReadVaultFilesArgs,
    AIFunction.SEARCH_VAULT_FILES: SearchVaultFilesArgs,
    AIFunction.WRITE_VAULT_FILE: WriteVaultFileArgs,
    AIFunction.DELETE_VAULT_FILES: DeleteVaultFilesArgs,
    AIFunction.MOVE_VAULT_FILES: MoveVaultFilesArgs,
    AIFunction.REQUEST_WEB_SEARCH: RequestWebSearchArgs,
}


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

def _clean_schema(schema: dict) -> dict:
    cleaned = {}
    for key, value in schema.items():
        if key in ("title", "default"):
            continue
        if isinstance(value, dict):
            value = _clean_schema(value)
        cleaned[key] = value
    return cleaned


def parameters_schema(model: type[BaseModel]) -> dict:
    """Build the ``{type, properties, required}`` block for *model*."""
    schema = model.model_json_schema()
    properties = {
        name: _clean_schema(prop)
        for name, prop in schema.get("properties", {}).items()
    }
    return {
        "type": "object",
        "properties": properties,
        "required": list(schema.get("required", [])),
    }


class FunctionDefinition(BaseModel):
    """A function declared to the model."""

    name: str
    description: str
    parameters: dict
    destructive: bool = False

    @classmethod
    def for_function(
        cls, function: AIFunction, description: str, destructive: bool = False,
    ) -> "FunctionDefinition":
        return cls(
            name=function.value,
            description=description,
            parameters=parameters_schema(ARGUMENT_MODELS[function]),
            destructive=destructive,
        )

    def declaration(self) -> dict:
        """Return the shared ``{name, description, parameters}`` shape."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


FUNCTION_DEFINITIONS: list[FunctionDefinition] = [
    FunctionDefinition.for_function(
        AIFunction.SEARCH_VAULT_FILES,
        "Searches the names and contents of all vault files using regex "
        "pattern matching and returns matching files with contextual "
        "snippets. When no term matches anything, the complete list of "
        "vault files is returned instead so you can refine the search.",
    ),
    FunctionDefinition.for_function(
        AIFunction.READ_VAULT_FILES,
        "Reads the full content of one or more vault files. Use this after "
        "searching or listing when you need the actual text of a note.",
    ),
    FunctionDefinition.for_function(
        AIFunction.LIST_VAULT_FILES,
        "Lists the files and folders in the vault, optionally limited to a "
        "folder. Use this to discover the vault structure.",
    ),
    FunctionDefinition.for_function(
        AIFunction.WRITE_VAULT_FILE,
        "Creates a new file or overwrites an existing one with the given "
        "content. Read a file before overwriting it so no content is lost.",
        destructive=True,
    ),
    FunctionDefinition.for_function(
        AIFunction.DELETE_VAULT_FILES,
        "Permanently removes files from the vault. This is irreversible: "
        "only call it after confirming the exact paths and the user's "
        "intent to delete.",
        destructive=True,
    ),
    FunctionDefinition.for_function(
        AIFunction.MOVE_VAULT_FILES,
        "Moves or renames one or more vault files. Content is preserved. "
        "To rename in place, keep the folder and change only the file name.",
        destructive=True,
    ),
]

WEB_SEARCH_DEFINITION = FunctionDefinition.for_function(
    AIFunction.REQUEST_WEB_SEARCH,
    "Requests a web search. Call this when answering needs current "
    "information from the internet; the next response will have web "
    "search enabled.",
)


def query_actions(
    tools: list[FunctionDefinition], destructive_allowed: bool,
) -> list[FunctionDefinition]:
    """Drop destructive functions unless they are allowed."""
    return [t for t in tools if destructive_allowed or not t.destructive]
