"""Shared data models for the API layer.

Kept apart from runner.py so stream.py, tools.py and rest.py can import
them without pulling in the loop.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from offerbot.conversation.schemas import Artifact, Message


@dataclass
class ToolInvocation:
    """A tool_use block of one round."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """The answer to one ToolInvocation, sent back as a tool_result block."""

    tool_use_id: str
    tool_name: str
    content: str
    is_error: bool = False
    duration_ms: int | None = None

    def to_block(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block

    def payload(self) -> Any:
        """Content decoded as JSON, or None when it is not JSON."""
        try:
            return json.loads(self.content)
        except (json.JSONDecodeError, TypeError):
            return None


class LoopState(StrEnum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZING = "finalizing"
    PAUSED = "paused"


@dataclass
class LoopEvent:
    """A notification from the orchestration loop to the presentation layer.

    type is one of: state, chat_preview, artifact_started, artifact_preview,
    tool_active, tool_inactive, tool_results, paused, completed.
    """

    type: str
    state: LoopState | None = None
    text: str = ""
    tool_name: str = ""
    round: int = 0
    results: list[ToolResult] = field(default_factory=list)
    message: Message | None = None
    artifact: Artifact | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "round": self.round}
        if self.state is not None:
            data["state"] = self.state.value
        if self.text:
            data["text"] = self.text
        if self.tool_name:
            data["tool_name"] = self.tool_name
        if self.results:
            data["results"] = [
                {"tool_name": r.tool_name, "is_error": r.is_error, "duration_ms": r.duration_ms}
                for r in self.results
            ]
        if self.message is not None:
            data["message"] = self.message.model_dump(mode="json")
        if self.artifact is not None:
            data["artifact"] = self.artifact.model_dump(mode="json")
        return data
