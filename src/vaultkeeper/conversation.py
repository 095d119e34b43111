from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_title(created: datetime) -> str:
    return created.astimezone().strftime("%Y-%m-%d %H-%M-%S")


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationContent(BaseModel):
    """A single entry in a conversation.

    An entry is exactly one of: plain text, a function call made by the
    assistant, or the response to a function call (sent back upstream as a
    user-role message). ``prompt_content`` is what gets sent to the model
    for user turns and defaults to the display ``content``.
    """

    model_config = ConfigDict(populate_by_name=True)

    role: Role
    content: str = ""
    prompt_content: str = Field(default="", alias="promptContent")
    function_call: str = Field(default="", alias="functionCall")
    timestamp: datetime = Field(default_factory=_now)
    is_function_call: bool = Field(default=False, alias="isFunctionCall")
    is_function_call_response: bool = Field(
        default=False, alias="isFunctionCallResponse"
    )
    tool_id: str | None = Field(default=None, alias="toolId")

    @model_validator(mode="after")
    def _check_mode(self):
        if self.is_function_call and self.is_function_call_response:
            raise ValueError(
                "an entry cannot be both a function call and a function call response"
            )
        if self.role == Role.USER and not self.prompt_content:
            self.prompt_content = self.content
        return self

    @field_serializer("role")
    def serialize_role(self, role: Role, _info) -> str:
        return role.value

    def upstream_text(self) -> str:
        """Text sent to the model for this entry."""
        return self.prompt_content if self.role == Role.USER else self.content

    def is_empty(self) -> bool:
        return not self.content.strip() and not self.function_call.strip()


class Conversation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    created: datetime = Field(default_factory=_now)
    updated: datetime = Field(default_factory=_now)
    contents: list[ConversationContent] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fill_title(self):
        if not self.title:
            self.title = _default_title(self.created)
        return self

    def to_record(self) -> dict:
        """Serialize to the persisted JSON record (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: dict) -> "Conversation":
        return cls.model_validate(record)

    def last(self) -> ConversationContent | None:
        return self.contents[-1] if self.contents else None
