"""Pydantic DTOs for persisted conversation data.

Messages and the commercial-offer artifact are stored as JSONB on the
conversation row; these models define that shape.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class ButtonOption(BaseModel):
    """One option of an interactive-choice button set."""

    id: str
    label: str
    value: str


class Message(BaseModel):
    """A single persisted chat message."""

    role: Literal["user", "assistant"]
    # Legacy rows may hold Anthropic content-block arrays instead of text
    content: str | list[Any]
    timestamp: datetime = Field(default_factory=utcnow)
    thinking: str | None = None
    buttons: list[ButtonOption] | None = None
    buttons_message: str | None = None
    selected_button_id: str | None = None
    is_silent: bool = False

    def select_button(self, button_id: str) -> ButtonOption:
        """Record the user's choice. A button set accepts one selection only."""
        if not self.buttons:
            raise ValueError("Message has no buttons to select")
        if self.selected_button_id is not None:
            raise ValueError(f"Button already selected: {self.selected_button_id}")
        for button in self.buttons:
            if button.id == button_id:
                self.selected_button_id = button_id
                return button
        raise ValueError(f"Unknown button id: {button_id}")


class LineChange(BaseModel):
    before: str
    after: str


class DiffChanges(BaseModel):
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    modified: list[LineChange] = Field(default_factory=list)


class DiffEntry(BaseModel):
    """One version transition of an artifact."""

    version: int
    timestamp: datetime = Field(default_factory=utcnow)
    changes: DiffChanges


class Artifact(BaseModel):
    """Versioned commercial offer extracted from assistant output."""

    id: str
    type: Literal["commercial_offer"] = "commercial_offer"
    title: str = "Komercinis pasiūlymas"
    content: str
    version: int = Field(1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    diff_history: list[DiffEntry] = Field(default_factory=list)

    @property
    def fields(self) -> dict[str, str]:
        """Offer variables parsed from the content."""
        from offerbot.conversation.artifacts import parse_offer_fields

        return parse_offer_fields(self.content)


class TokenUsage(BaseModel):
    """Token counters summed over one or more API calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, usage: dict[str, Any] | None) -> None:
        if not usage:
            return
        for key in (
            "input_tokens",
            "output_tokens",
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
        ):
            value = usage.get(key)
            if isinstance(value, int):
                setattr(self, key, getattr(self, key) + value)

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class Conversation(BaseModel):
    """A conversation record with its full message history."""

    id: UUID
    project_id: UUID
    title: str
    author_id: UUID
    author_email: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    message_count: int = 0
    last_message_at: datetime | None = None
    messages: list[Message] = Field(default_factory=list)
    artifact: Artifact | None = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
