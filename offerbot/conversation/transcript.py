"""Display-only tool-call transcript embedded in persisted messages.

The UI replays which tools ran during a multi-round answer from a
<tool_calls> block appended to the assistant message. The block is
never sent back to the model: strip_transcript() removes it again.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

TRANSCRIPT_OPEN = "<tool_calls>"
TRANSCRIPT_CLOSE = "</tool_calls>"

# Each entry is a single JSON line, so "\n</tool_calls>" cannot occur inside a block
_TRANSCRIPT_RE = re.compile(r"\n\n<tool_calls>\n.*?\n</tool_calls>", re.DOTALL)


@dataclass
class TranscriptEntry:
    """One rendered tool call."""

    name: str
    input: dict[str, Any]
    result: str | None = None

    def to_json(self) -> str:
        data: dict[str, Any] = {"name": self.name, "input": self.input}
        if self.result is not None:
            data["result"] = self.result
        return json.dumps(data, ensure_ascii=False)


def render_transcript(entries: list[TranscriptEntry]) -> str:
    """Render entries as a transcript block (empty string for no entries)."""
    if not entries:
        return ""
    lines = "\n".join(entry.to_json() for entry in entries)
    return f"\n\n{TRANSCRIPT_OPEN}\n{lines}\n{TRANSCRIPT_CLOSE}"


def embed_transcript(text: str, entries: list[TranscriptEntry]) -> str:
    """Append a transcript block to text.

    strip_transcript() undoes this exactly when text carries no transcript
    block of its own. Blocks already in text are stripped along with the
    new one, which is what multi-round replies rely on.
    """
    return text + render_transcript(entries)


def strip_transcript(text: str) -> str:
    """Remove every transcript block from text, wherever it sits."""
    if TRANSCRIPT_OPEN not in text:
        return text
    return _TRANSCRIPT_RE.sub("", text)


def parse_transcript(text: str) -> list[TranscriptEntry]:
    """Rebuild transcript entries from persisted message content."""
    entries: list[TranscriptEntry] = []
    for block in _TRANSCRIPT_RE.findall(text):
        body = block.strip()[len(TRANSCRIPT_OPEN):-len(TRANSCRIPT_CLOSE)]
        for line in body.strip().split("\n"):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            entries.append(TranscriptEntry(
                name=data.get("name", ""),
                input=data.get("input") or {},
                result=data.get("result"),
            ))
    return entries
