"""Commercial offer artifact extraction and versioning.

The model wraps the offer in sentinel tags:

    <commercial_offer artifact_id="new">
    economy_HNV: "Biologinis valymo įrenginys HNV-N-10"
    components_bulletlist: |
      • ...
    </commercial_offer>

artifact_id="new" (or no current artifact) starts a fresh artifact at
version 1. Anything else updates the conversation's current artifact,
bumping its version and appending a line diff.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import yaml

from offerbot.conversation.schemas import Artifact, DiffChanges, DiffEntry, LineChange

logger = logging.getLogger(__name__)

OFFER_TAG = "commercial_offer"
OFFER_OPEN = f"<{OFFER_TAG}"
OFFER_CLOSE = f"</{OFFER_TAG}>"
NEW_ARTIFACT_ID = "new"

_OFFER_RE = re.compile(
    r"<commercial_offer(?:\s+artifact_id=\"([^\"]*)\")?\s*>(.*?)</commercial_offer>",
    re.DOTALL,
)
# Complete blocks plus a trailing unterminated one (still streaming)
_OFFER_STRIP_RE = re.compile(r"<commercial_offer\b[^>]*>.*?(?:</commercial_offer>|\Z)", re.DOTALL)
_OPEN_TAG_RE = re.compile(r"<commercial_offer\b[^>]*>")


@dataclass
class OfferBlock:
    """A complete sentinel-delimited offer found in text."""

    artifact_id: str | None
    content: str


def has_offer(text: str) -> bool:
    return OFFER_OPEN in text


def find_offer_block(text: str) -> OfferBlock | None:
    """Return the first complete offer block in text."""
    match = _OFFER_RE.search(text)
    if not match:
        return None
    return OfferBlock(artifact_id=match.group(1), content=match.group(2).strip())


def partial_offer_content(text: str) -> str | None:
    """Content after the last open tag, up to the close tag or end of text.

    Used while streaming, when the close tag may not have arrived yet.
    """
    matches = list(_OPEN_TAG_RE.finditer(text))
    if not matches:
        return None
    rest = text[matches[-1].end():]
    end = rest.find(OFFER_CLOSE)
    if end != -1:
        rest = rest[:end]
    return rest.strip()


def strip_offer_blocks(text: str) -> str:
    """Remove offer blocks, including an unterminated trailing one."""
    if OFFER_OPEN not in text:
        return text
    return _OFFER_STRIP_RE.sub("", text)


def parse_offer_fields(content: str) -> dict[str, str]:
    """Parse the flat key/value offer payload.

    Values are returned as strings. Partial or invalid payloads yield {}.
    """
    if not content.strip():
        return {}
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.debug("Offer payload is not valid YAML: %s", e)
        return {}
    if not isinstance(data, dict):
        return {}
    fields: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            fields[str(key)] = ""
        elif isinstance(value, str):
            fields[str(key)] = value.rstrip("\n")
        else:
            fields[str(key)] = str(value)
    return fields


def calculate_diff(old_content: str, new_content: str) -> DiffChanges:
    """Positional line diff between two versions of offer content."""
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")
    changes = DiffChanges()

    for i in range(max(len(old_lines), len(new_lines))):
        old_line = old_lines[i] if i < len(old_lines) else None
        new_line = new_lines[i] if i < len(new_lines) else None
        if old_line is None and new_line is not None:
            changes.added.append(new_line)
        elif new_line is None and old_line is not None:
            changes.removed.append(old_line)
        elif old_line != new_line:
            changes.modified.append(LineChange(before=old_line, after=new_line))

    return changes


def extract_artifact(
    text: str,
    current: Artifact | None,
    title: str = "Komercinis pasiūlymas",
) -> Artifact | None:
    """Build the next artifact from finalized assistant text.

    Returns None if the text holds no complete offer block. The caller
    persists the result.
    """
    block = find_offer_block(text)
    if block is None:
        if has_offer(text):
            logger.warning("Offer open tag found but block is not terminated, ignoring")
        return None

    now = datetime.now(UTC)

    if current is None or block.artifact_id == NEW_ARTIFACT_ID:
        artifact = Artifact(
            id=str(uuid.uuid4()),
            title=title,
            content=block.content,
            version=1,
            created_at=now,
            updated_at=now,
        )
        logger.info("Created artifact %s", artifact.id)
        return artifact

    if block.artifact_id and block.artifact_id != current.id:
        logger.warning(
            "Offer artifact_id %s does not match current artifact %s, updating current",
            block.artifact_id,
            current.id,
        )

    version = current.version + 1
    entry = DiffEntry(
        version=version,
        timestamp=now,
        changes=calculate_diff(current.content, block.content),
    )
    artifact = current.model_copy(update={
        "content": block.content,
        "version": version,
        "updated_at": now,
        "diff_history": [*current.diff_history, entry],
    })
    logger.info("Updated artifact %s to version %d", artifact.id, version)
    return artifact
