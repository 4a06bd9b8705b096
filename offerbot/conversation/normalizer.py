"""Turn persisted history into a request sequence the Messages API accepts.

Persisted history carries display-only markup, rows written by older
schema versions, and occasional placeholders left behind by aborted
rounds. normalize_history() filters all of that out and guarantees strict
user/assistant alternation starting with a user turn. It never raises:
every dropped message is logged with the reason.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from offerbot.conversation.schemas import Message
from offerbot.conversation.transcript import strip_transcript

logger = logging.getLogger(__name__)

# Prefixes written by earlier versions that serialized tool results as text
SYNTHETIC_RESULT_MARKERS = ("[Tool result", "[tool_result", "Tool results:")

_EMPTY_LITERALS = frozenset({"{}", "[]"})

# Anthropic tool_use ids look like toolu_01AbC...
_TOOL_ID_RE = re.compile(r"\btoolu_[A-Za-z0-9]+")


def rejection_reason(message: Message) -> str | None:
    """Return why a message cannot be sent to the model, or None if it can."""
    content = message.content
    if not isinstance(content, str):
        return "legacy non-text content"
    stripped = content.strip()
    if not stripped and not message.buttons:
        return "empty content"
    if stripped in _EMPTY_LITERALS:
        return f"placeholder literal {stripped}"
    if stripped.startswith(SYNTHETIC_RESULT_MARKERS):
        return "synthetic tool result"
    if _TOOL_ID_RE.search(content):
        return "contains internal tool-call id"
    return None


def request_content(message: Message) -> str:
    """Text the model sees for a message that passed rejection_reason().

    A button-bearing reply whose round produced only tool calls keeps its
    question in buttons_message; that question stands in for the empty text.
    """
    content = strip_transcript(message.content).strip()
    if not content and message.buttons:
        content = (message.buttons_message or "").strip()
        if not content:
            content = " / ".join(button.label for button in message.buttons)
    return content


def normalize_history(
    history: Iterable[Message],
    outgoing: Message | None = None,
) -> list[dict[str, Any]]:
    """Build the alternating {"role", "content"} list for the next request.

    The outgoing message, when given, always ends up as the last turn: if
    it collides with a trailing user turn (a round that died before the
    assistant reply was stored) the stale turn is replaced.
    """
    requests: list[dict[str, Any]] = []
    last_role: str | None = None

    for index, message in enumerate(history):
        reason = rejection_reason(message)
        if reason:
            logger.info("Skipping history message %d (%s): %s", index, message.role, reason)
            continue

        content = request_content(message)
        if not content:
            logger.info("Skipping history message %d (%s): only a tool transcript", index, message.role)
            continue

        if last_role is None and message.role != "user":
            logger.info("Skipping history message %d: conversation must start with user", index)
            continue
        if message.role == last_role:
            logger.info("Skipping history message %d: repeated role %s", index, message.role)
            continue

        requests.append({"role": message.role, "content": content})
        last_role = message.role

    if outgoing is not None:
        reason = rejection_reason(outgoing)
        content = request_content(outgoing) if not reason else ""
        if reason or not content:
            logger.warning("Outgoing message rejected: %s", reason or "only a tool transcript")
        elif outgoing.role == last_role:
            if outgoing.role == "user":
                dropped = requests.pop()
                logger.info(
                    "Replacing stale trailing user turn (%d chars) with outgoing message",
                    len(dropped["content"]),
                )
                requests.append({"role": "user", "content": content})
            else:
                logger.info("Skipping outgoing message: repeated role %s", outgoing.role)
        elif last_role is None and outgoing.role != "user":
            logger.info("Skipping outgoing message: conversation must start with user")
        else:
            requests.append({"role": outgoing.role, "content": content})

    return requests
