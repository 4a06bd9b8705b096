"""Streaming response handling for the Anthropic Messages API.

Three layers over the same SSE stream:

- parse_sse_event() turns raw SSE JSON into a closed set of event
  dataclasses (StreamEvent).
- StreamClassifier keeps a StreamingPreview for live UI updates: chat
  text, in-progress offer payload, tool activity. Tool inputs assembled
  here are best effort and never drive control flow.
- FinalMessageBuilder materializes the complete message (FinalizedTurn)
  from the same events. Tool invocations for the next round are taken
  from the FinalizedTurn only.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union, assert_never

from offerbot.api.models import LoopEvent, ToolInvocation
from offerbot.conversation.artifacts import OFFER_CLOSE, OFFER_OPEN, partial_offer_content, strip_offer_blocks
from offerbot.errors import ApiError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageStart:
    message: dict[str, Any]


@dataclass(frozen=True)
class BlockStart:
    """Start of a non-tool content block (text, thinking, redacted_thinking)."""

    index: int
    block: dict[str, Any]


@dataclass(frozen=True)
class ToolStart:
    index: int
    tool_id: str
    name: str


@dataclass(frozen=True)
class ThinkingDelta:
    index: int
    text: str


@dataclass(frozen=True)
class SignatureDelta:
    index: int
    signature: str


@dataclass(frozen=True)
class TextDelta:
    index: int
    text: str


@dataclass(frozen=True)
class ToolInputDelta:
    index: int
    partial_json: str


@dataclass(frozen=True)
class BlockStop:
    index: int


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: str
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageStop:
    pass


@dataclass(frozen=True)
class StreamError:
    message: str


StreamEvent = Union[
    MessageStart,
    BlockStart,
    ToolStart,
    ThinkingDelta,
    SignatureDelta,
    TextDelta,
    ToolInputDelta,
    BlockStop,
    MessageDelta,
    MessageStop,
    StreamError,
]


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one Anthropic SSE data payload. Pings and unknown types give None."""
    event_type = data.get("type")

    if event_type == "message_start":
        return MessageStart(message=data.get("message", {}))

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return ToolStart(index=index, tool_id=block.get("id", ""), name=block.get("name", ""))
        return BlockStart(index=index, block=block)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return TextDelta(index=index, text=delta.get("text", ""))
        if delta_type == "thinking_delta":
            return ThinkingDelta(index=index, text=delta.get("thinking", ""))
        if delta_type == "signature_delta":
            return SignatureDelta(index=index, signature=delta.get("signature", ""))
        if delta_type == "input_json_delta":
            return ToolInputDelta(index=index, partial_json=delta.get("partial_json", ""))
        return None

    if event_type == "content_block_stop":
        return BlockStop(index=data.get("index", 0))

    if event_type == "message_delta":
        # stop_reason lives in message_delta.delta, not message_start
        return MessageDelta(
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=data.get("usage") or {},
        )

    if event_type == "message_stop":
        return MessageStop()

    if event_type == "error":
        error = data.get("error", {})
        return StreamError(message=f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    return None


# ---------------------------------------------------------------------------
# Authoritative message
# ---------------------------------------------------------------------------


@dataclass
class FinalizedTurn:
    """The complete assistant message of one round."""

    content: list[dict[str, Any]]
    stop_reason: str
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_invocations(self) -> list[ToolInvocation]:
        return [
            ToolInvocation(id=b["id"], name=b["name"], input=b.get("input") or {})
            for b in self.content
            if b.get("type") == "tool_use"
        ]

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")

    @property
    def thinking(self) -> str:
        parts = [b.get("thinking", "") for b in self.content if b.get("type") == "thinking"]
        return "\n\n".join(p for p in parts if p)

    def followup_content(self) -> list[dict[str, Any]]:
        """Content to resend as the assistant turn of the next request.

        The API rejects empty thinking and empty text blocks on follow-up calls.
        """
        blocks = []
        for block in self.content:
            block_type = block.get("type")
            if block_type == "thinking" and not block.get("thinking"):
                continue
            if block_type == "text" and not block.get("text"):
                continue
            blocks.append(block)
        return blocks


class FinalMessageBuilder:
    """Accumulates every stream event into a FinalizedTurn."""

    def __init__(self) -> None:
        self._message: dict[str, Any] = {}
        self._blocks: dict[int, dict[str, Any]] = {}
        self._json_parts: dict[int, list[str]] = {}
        self._stop_reason = ""
        self._usage: dict[str, Any] = {}
        self._stopped = False

    def feed(self, event: StreamEvent) -> None:
        if isinstance(event, MessageStart):
            self._message = event.message
            self._usage.update(event.message.get("usage") or {})
        elif isinstance(event, BlockStart):
            self._blocks[event.index] = dict(event.block)
        elif isinstance(event, ToolStart):
            self._blocks[event.index] = {"type": "tool_use", "id": event.tool_id, "name": event.name, "input": {}}
            self._json_parts[event.index] = []
        elif isinstance(event, ThinkingDelta):
            block = self._blocks.setdefault(event.index, {"type": "thinking", "thinking": ""})
            block["thinking"] = block.get("thinking", "") + event.text
        elif isinstance(event, SignatureDelta):
            block = self._blocks.setdefault(event.index, {"type": "thinking", "thinking": ""})
            block["signature"] = block.get("signature", "") + event.signature
        elif isinstance(event, TextDelta):
            block = self._blocks.setdefault(event.index, {"type": "text", "text": ""})
            block["text"] = block.get("text", "") + event.text
        elif isinstance(event, ToolInputDelta):
            self._json_parts.setdefault(event.index, []).append(event.partial_json)
        elif isinstance(event, BlockStop):
            self._close_tool_block(event.index)
        elif isinstance(event, MessageDelta):
            self._stop_reason = event.stop_reason or self._stop_reason
            self._usage.update(event.usage)
        elif isinstance(event, MessageStop):
            self._stopped = True
        elif isinstance(event, StreamError):
            raise ApiError(f"Stream error: {event.message}")
        else:
            assert_never(event)

    def _close_tool_block(self, index: int) -> None:
        block = self._blocks.get(index)
        if not block or block.get("type") != "tool_use":
            return
        raw = "".join(self._json_parts.pop(index, []))
        if not raw:
            block["input"] = {}
            return
        try:
            block["input"] = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Finalized tool input for %s is not valid JSON: %.200s", block.get("name"), raw)
            block["input"] = {}

    def finalize(self) -> FinalizedTurn:
        if not self._stopped and not self._stop_reason:
            raise ApiError("Stream ended before the message was complete")
        for index in list(self._json_parts):
            self._close_tool_block(index)
        content = [self._blocks[i] for i in sorted(self._blocks)]
        return FinalizedTurn(content=content, stop_reason=self._stop_reason, usage=dict(self._usage))


# ---------------------------------------------------------------------------
# Live preview
# ---------------------------------------------------------------------------


@dataclass
class ToolDraft:
    """Tool call being assembled from input_json fragments."""

    index: int
    id: str
    name: str
    raw_input: str = ""


@dataclass
class StreamingPreview:
    """Live state for the UI. Never used for control flow."""

    thinking: str = ""
    text: str = ""
    full_text: str = ""
    chat_text: str = ""
    artifact_started: bool = False
    in_artifact: bool = False
    artifact_content: str = ""
    open_tool: ToolDraft | None = None
    tool_active: bool = False
    tool_name: str = ""


def chat_preview_text(text: str) -> str:
    """Visible chat text: offer blocks removed, partial open tag held back."""
    chat = strip_offer_blocks(text)
    idx = chat.rfind(OFFER_OPEN)
    if idx != -1 and ">" not in chat[idx:]:
        return chat[:idx]
    for k in range(len(OFFER_OPEN) - 1, 0, -1):
        if chat.endswith(OFFER_OPEN[:k]):
            return chat[:-k]
    return chat


class StreamClassifier:
    """Splits a streamed response into chat text, offer payload and tool activity."""

    def __init__(self, round_index: int = 0) -> None:
        self.preview = StreamingPreview()
        self._round = round_index

    def feed(self, event: StreamEvent) -> list[LoopEvent]:
        """Update the preview and return the UI notifications it produced."""
        if isinstance(event, ThinkingDelta):
            self.preview.thinking += event.text
            self.preview.full_text += event.text
            return []
        if isinstance(event, TextDelta):
            return self._on_text(event.text)
        if isinstance(event, ToolStart):
            return self._on_tool_start(event)
        if isinstance(event, ToolInputDelta):
            draft = self.preview.open_tool
            if draft is not None and draft.index == event.index:
                draft.raw_input += event.partial_json
            return []
        if isinstance(event, BlockStop):
            return self._on_block_stop(event.index)
        if isinstance(event, (MessageStart, BlockStart, SignatureDelta, MessageDelta, MessageStop, StreamError)):
            return []
        assert_never(event)

    def _on_text(self, text: str) -> list[LoopEvent]:
        p = self.preview
        p.text += text
        p.full_text += text
        updates: list[LoopEvent] = []

        if OFFER_OPEN in p.text:
            content = partial_offer_content(p.text)
            if content is not None:
                if not p.artifact_started:
                    p.artifact_started = True
                    updates.append(LoopEvent(type="artifact_started", round=self._round))
                open_count = len(p.text.split(OFFER_OPEN)) - 1
                p.in_artifact = open_count > p.text.count(OFFER_CLOSE)
                if content != p.artifact_content:
                    p.artifact_content = content
                    updates.append(LoopEvent(type="artifact_preview", text=content, round=self._round))

        chat = chat_preview_text(p.text)
        if chat != p.chat_text:
            p.chat_text = chat
            updates.append(LoopEvent(type="chat_preview", text=chat, round=self._round))
        return updates

    def _on_tool_start(self, event: ToolStart) -> list[LoopEvent]:
        p = self.preview
        if p.open_tool is not None:
            logger.warning("Tool block %s started before %s closed, dropping it", event.name, p.open_tool.name)
        p.open_tool = ToolDraft(index=event.index, id=event.tool_id, name=event.name)
        p.tool_active = True
        p.tool_name = event.name
        return [LoopEvent(type="tool_active", tool_name=event.name, round=self._round)]

    def _on_block_stop(self, index: int) -> list[LoopEvent]:
        p = self.preview
        draft = p.open_tool
        if draft is None or draft.index != index:
            return []

        if draft.raw_input:
            try:
                json.loads(draft.raw_input)
            except json.JSONDecodeError:
                logger.warning("Dropping streamed tool call %s: malformed input %.200s", draft.name, draft.raw_input)

        p.open_tool = None
        p.tool_active = False
        p.tool_name = ""
        return [LoopEvent(type="tool_inactive", tool_name=draft.name, round=self._round)]
