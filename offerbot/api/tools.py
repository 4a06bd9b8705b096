"""Tool dispatcher for the orchestration loop.

Provides:
- ToolDispatcher: registers tools, exposes Anthropic tool definitions,
  runs all invocations of a round concurrently
- display_buttons: the interactive-choice tool, answered locally

A tool failure never aborts a round. Exceptions become a JSON failure
envelope the model can read and react to.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from offerbot.api.models import ToolInvocation, ToolResult
from offerbot.conversation.schemas import ButtonOption

logger = logging.getLogger(__name__)

INTERACTIVE_CHOICE_TOOL = "display_buttons"
CHOICE_MARKER = "buttons_displayed"

ToolHandler = Callable[..., Awaitable[str]]

DISPLAY_BUTTONS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Display interactive buttons in the UI for user confirmation or selection. "
        "Use when you need the user to choose from predefined options "
        '(e.g., "Tinka/Ne", "Ekonominis/MIDI/MAXI"). DO NOT use for open-ended '
        "questions - only for multiple choice."
    ),
    "properties": {
        "message": {
            "type": "string",
            "description": "Optional message to display above buttons for context",
        },
        "buttons": {
            "type": "array",
            "description": "Array of 1-6 buttons to display",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": 'Unique identifier (e.g., "confirm_yes")'},
                    "label": {"type": "string", "description": 'Text displayed on button (e.g., "Tinka")'},
                    "value": {"type": "string", "description": "Value returned when clicked"},
                },
                "required": ["id", "label", "value"],
            },
            "minItems": 1,
            "maxItems": 6,
        },
    },
    "required": ["buttons"],
}


def failure_envelope(tool_name: str, error: str) -> str:
    return json.dumps({"success": False, "error": error, "tool_name": tool_name}, ensure_ascii=False)


def choice_payload(result: ToolResult) -> dict[str, Any] | None:
    """Return the interactive-choice payload if result carries the marker."""
    data = result.payload()
    if isinstance(data, dict) and data.get(CHOICE_MARKER) is True:
        return data
    return None


def choice_buttons(payload: dict[str, Any]) -> list[ButtonOption]:
    return [ButtonOption.model_validate(b) for b in payload.get("buttons", [])]


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the API.

    Each handler is an async callable that accepts the tool input as
    keyword arguments and returns a string payload.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._schemas: dict[str, dict[str, Any]] = {INTERACTIVE_CHOICE_TOOL: DISPLAY_BUTTONS_SCHEMA}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        if name == INTERACTIVE_CHOICE_TOOL:
            raise ValueError(f"{name} is reserved for interactive choices")
        self._handlers[name] = handler
        self._schemas[name] = schema

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        definitions = []
        for name, schema in self._schemas.items():
            input_schema = {k: v for k, v in schema.items() if k != "description"}
            definitions.append({
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": input_schema,
            })
        return definitions

    async def dispatch(self, invocation: ToolInvocation) -> ToolResult:
        """Run one invocation. Never raises."""
        start = time.monotonic()
        if invocation.name == INTERACTIVE_CHOICE_TOOL:
            content, is_error = self._display_buttons(invocation.input)
        else:
            content, is_error = await self._run_handler(invocation)
        return ToolResult(
            tool_use_id=invocation.id,
            tool_name=invocation.name,
            content=content,
            is_error=is_error,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def dispatch_all(self, invocations: list[ToolInvocation]) -> list[ToolResult]:
        """Run all invocations of a round concurrently, results in invocation order."""
        if not invocations:
            return []
        logger.info("Dispatching %d tool call(s): %s", len(invocations), [i.name for i in invocations])
        return list(await asyncio.gather(*(self.dispatch(i) for i in invocations)))

    async def _run_handler(self, invocation: ToolInvocation) -> tuple[str, bool]:
        handler = self._handlers.get(invocation.name)
        if not handler:
            available = ", ".join(self._handlers) or "none"
            return failure_envelope(invocation.name, f"Unknown tool: {invocation.name}. Available tools: {available}"), True
        try:
            result = await handler(**invocation.input)
            if not isinstance(result, str):
                result = json.dumps(result, ensure_ascii=False)
            return result, False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool dispatch error for %s", invocation.name)
            return failure_envelope(invocation.name, str(e) or type(e).__name__), True

    def _display_buttons(self, tool_input: dict[str, Any]) -> tuple[str, bool]:
        try:
            buttons = [ButtonOption.model_validate(b) for b in tool_input.get("buttons") or []]
        except ValueError as e:
            return failure_envelope(INTERACTIVE_CHOICE_TOOL, f"Invalid buttons: {e}"), True
        if not 1 <= len(buttons) <= 6:
            return failure_envelope(INTERACTIVE_CHOICE_TOOL, "Provide between 1 and 6 buttons"), True
        payload = {
            CHOICE_MARKER: True,
            "message": tool_input.get("message") or "",
            "buttons": [b.model_dump() for b in buttons],
        }
        return json.dumps(payload, ensure_ascii=False), False
