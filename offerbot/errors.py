"""Exception hierarchy for offerbot.

Orchestration errors abort the current loop and reach the caller.
ToolExecutionError never leaves the dispatcher: it is turned into a
failure envelope that the model sees as a tool result.
"""

from __future__ import annotations


class OfferbotError(Exception):
    """Base class for all offerbot errors."""


class OrchestrationError(OfferbotError):
    """A loop round failed and was discarded."""


class StructuralViolation(OrchestrationError):
    """The request sequence breaks the tool_use/tool_result pairing rules.

    Raised before any network call. Indicates a bug in history
    reconstruction and must not be retried.
    """

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("Invalid message structure: " + "; ".join(self.reasons))


class ApiError(OrchestrationError):
    """The LLM endpoint refused the request or failed mid-stream."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RoundLimitExceeded(OrchestrationError):
    """The model kept requesting tools past the configured round limit."""


class RoundTimeout(OrchestrationError):
    """A single round did not finish within the configured deadline."""


class ConversationBusy(OrchestrationError):
    """Another loop is already running for this conversation."""


class ConversationNotFound(OrchestrationError):
    """No conversation with the given id exists."""


class ToolExecutionError(OfferbotError):
    """A tool handler could not produce a result."""
