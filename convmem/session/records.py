"""Record types persisted in a session's record log."""

import json
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from convmem.utils.helpers import utc_now


class Role(str, Enum):
    """Who produced a record."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class ChatRecord(BaseModel):
    """
    One stored utterance.

    ``sequence`` is 0 until the record log assigns it on append. The older
    writer's field names (``sequence_number``, ``additional_kwargs``) are
    accepted when reading.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True, extra="ignore")

    role: Role
    content: str
    name: str | None = None
    extra: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("extra", "additional_kwargs", "additional_fields"),
    )
    timestamp: str = Field(default_factory=utc_now)
    sequence: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("sequence", "sequence_number"),
    )

    def render(self) -> str:
        """Render as a ``role: content`` line."""
        return f"{self.role}: {self.content}"

    def to_message(self) -> dict[str, Any]:
        """Convert to an LLM-style message dict (name and extra fields flattened in)."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            msg["name"] = self.name
        if self.extra:
            for key, value in self.extra.items():
                msg.setdefault(key, value)
        return msg


class SessionDocument(BaseModel):
    """The whole record log of one session, as written to disk."""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    created_at: str
    updated_at: str
    next_sequence: int | None = None
    records: list[ChatRecord] = Field(validation_alias=AliasChoices("records", "messages"))
    metadata: dict[str, Any] | None = None


def make_record(
    role: Role | str,
    content: str,
    name: str | None = None,
    extra: dict[str, Any] | None = None,
) -> ChatRecord:
    """Build an unsequenced record stamped with the current time."""
    return ChatRecord(role=role, content=content, name=name, extra=extra or None)


def normalize_assistant_content(content: str) -> str:
    """Unwrap assistant output that arrives JSON-encoded.

    A JSON string literal is decoded; a JSON object with a string
    ``content`` field is reduced to that field. Anything else is returned
    unchanged.
    """
    text = content.strip()
    if text.startswith('"') and text.endswith('"'):
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return content
        return value if isinstance(value, str) else content
    if text.startswith("{") and text.endswith("}"):
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return content
        if isinstance(value, dict) and isinstance(value.get("content"), str):
            return value["content"]
    return content
