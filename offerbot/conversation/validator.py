"""Pre-flight check of the tool_use/tool_result pairing invariant.

The Messages API rejects a request in which an assistant tool_use turn
is not immediately answered by a user turn holding one tool_result per
tool_use id. Catching that locally gives a precise error instead of an
opaque 400, and keeps broken history from burning a request.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from offerbot.errors import StructuralViolation


def _blocks(turn: dict[str, Any], block_type: str) -> list[dict[str, Any]]:
    content = turn.get("content")
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict) and b.get("type") == block_type]


def find_violations(messages: list[dict[str, Any]]) -> list[str]:
    """Return a human-readable reason for every pairing violation found."""
    reasons: list[str] = []
    answered: set[int] = set()

    for i, turn in enumerate(messages):
        tool_uses = _blocks(turn, "tool_use")
        if not tool_uses:
            continue

        if turn.get("role") != "assistant":
            reasons.append(f"turn {i}: tool_use blocks in a {turn.get('role')} turn")
            continue

        invocation_ids = [b.get("id") for b in tool_uses]
        if i + 1 >= len(messages):
            reasons.append(f"turn {i}: tool_use ids {invocation_ids} have no following turn")
            continue

        reply = messages[i + 1]
        if reply.get("role") == turn.get("role"):
            reasons.append(f"turn {i + 1}: expected user tool results, got another {reply.get('role')} turn")
            continue

        content = reply.get("content")
        if not isinstance(content, list):
            reasons.append(f"turn {i + 1}: expected a list of tool_result blocks, got plain text")
            continue

        results = _blocks(reply, "tool_result")
        if len(results) != len(content):
            reasons.append(f"turn {i + 1}: contains blocks other than tool_result")

        result_counts = Counter(b.get("tool_use_id") for b in results)
        for tool_id in invocation_ids:
            count = result_counts.get(tool_id, 0)
            if count == 0:
                reasons.append(f"turn {i + 1}: missing tool_result for {tool_id}")
            elif count > 1:
                reasons.append(f"turn {i + 1}: {count} tool_results for {tool_id}")
        answered.add(i + 1)

    for i, turn in enumerate(messages):
        if i not in answered and _blocks(turn, "tool_result"):
            reasons.append(f"turn {i}: tool_result blocks without a preceding tool_use turn")

    return reasons


def validate_structure(messages: list[dict[str, Any]]) -> None:
    """Raise StructuralViolation if the request sequence breaks pairing."""
    reasons = find_violations(messages)
    if reasons:
        raise StructuralViolation(reasons)
