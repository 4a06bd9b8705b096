"""Conversation module -- history normalization, validation and artifacts.

Public API:
    normalize_history   - Clean persisted history into API request turns
    validate_structure  - Enforce tool_use/tool_result pairing
    extract_artifact    - Build the next commercial-offer artifact version
    embed_transcript / strip_transcript - Display-only tool transcript

Schemas:
    Message, ButtonOption, Artifact, DiffEntry, DiffChanges, LineChange,
    TokenUsage, Conversation
"""

from offerbot.conversation.artifacts import calculate_diff, extract_artifact, parse_offer_fields
from offerbot.conversation.normalizer import normalize_history
from offerbot.conversation.schemas import (
    Artifact,
    ButtonOption,
    Conversation,
    DiffChanges,
    DiffEntry,
    LineChange,
    Message,
    TokenUsage,
)
from offerbot.conversation.transcript import TranscriptEntry, embed_transcript, strip_transcript
from offerbot.conversation.validator import validate_structure

__all__ = [
    "Artifact",
    "ButtonOption",
    "Conversation",
    "DiffChanges",
    "DiffEntry",
    "LineChange",
    "Message",
    "TokenUsage",
    "TranscriptEntry",
    "calculate_diff",
    "embed_transcript",
    "extract_artifact",
    "normalize_history",
    "parse_offer_fields",
    "strip_transcript",
    "validate_structure",
]
