"""Orchestration loop -- drives tool-use rounds via direct Anthropic API.

One loop invocation turns the persisted conversation plus the outgoing
user message into request turns, streams the response, dispatches tools
and repeats until the model stops asking for tools (or asks the user to
pick a button). Every state change and preview update is yielded as a
LoopEvent so the HTTP layer can forward it over SSE.

States: idle -> requesting -> streaming -> (tool_dispatch -> requesting)*
-> finalizing -> idle, or -> paused on an interactive choice.

Control flow only ever reads the FinalizedTurn built from the complete
stream; the StreamClassifier output is for display.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import httpx

from offerbot.api.models import LoopEvent, LoopState, ToolInvocation, ToolResult
from offerbot.api.stream import (
    FinalizedTurn,
    FinalMessageBuilder,
    StreamClassifier,
    StreamEvent,
    parse_sse_event,
)
from offerbot.api.tools import INTERACTIVE_CHOICE_TOOL, ToolDispatcher, choice_buttons, choice_payload
from offerbot.config import Settings
from offerbot.conversation.artifacts import extract_artifact, find_offer_block, has_offer
from offerbot.conversation.normalizer import normalize_history
from offerbot.conversation.schemas import Artifact, Conversation, Message, TokenUsage
from offerbot.conversation.transcript import TranscriptEntry, render_transcript
from offerbot.conversation.validator import validate_structure
from offerbot.errors import ApiError, ConversationBusy, RoundLimitExceeded, RoundTimeout
from offerbot.events import (
    ARTIFACT_UPDATED,
    BUTTON_SELECTED,
    LOOP_FAILED,
    LOOP_PAUSED,
    MESSAGE_SENT,
    Event,
    EventBus,
)
from offerbot.prompts import SystemPromptBuilder
from offerbot.storage.repository import ConversationStore

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


@dataclass
class LoopAccumulator:
    """Everything one loop invocation carries from round to round."""

    requests: list[dict[str, Any]]
    carry: str = ""  # visible text + transcripts of completed tool rounds
    round: int = 0
    thinking: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def thinking_text(self) -> str | None:
        return "\n\n".join(self.thinking) or None

    def reply_text(self, text: str) -> str:
        """Carried text followed by this round's text, paragraph-separated."""
        if text and self.carry:
            return f"{self.carry}\n\n{text}"
        return self.carry + text

    def add_round(self, text: str, entries: list[TranscriptEntry]) -> None:
        self.carry = self.reply_text(text) + render_transcript(entries)


def transcript_entries(invocations: list[ToolInvocation], results: list[ToolResult]) -> list[TranscriptEntry]:
    """Display transcript for a round. The interactive-choice call is left out."""
    by_id = {r.tool_use_id: r for r in results}
    entries = []
    for invocation in invocations:
        if invocation.name == INTERACTIVE_CHOICE_TOOL:
            continue
        result = by_id.get(invocation.id)
        entries.append(TranscriptEntry(
            name=invocation.name,
            input=invocation.input,
            result=result.content if result else None,
        ))
    return entries


class OrchestrationLoop:
    """Runs tool-use loops for conversations.

    Uses direct httpx calls to the Anthropic Messages API. At most one
    loop runs per conversation at a time.
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher: ToolDispatcher,
        store: ConversationStore,
        prompts: SystemPromptBuilder,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._dispatcher = dispatcher
        self._store = store
        self._prompts = prompts
        self._bus = bus
        self._http: httpx.AsyncClient | None = None
        self._active: set[UUID] = set()

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers.
        # Regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )

        is_oat = "sk-ant-oat" in (auth_token or api_key)
        auth_type = "OAT/subscription" if is_oat else ("Bearer token" if auth_token else "API key")
        logger.info("httpx client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def is_busy(self, conversation_id: UUID) -> bool:
        return conversation_id in self._active

    @asynccontextmanager
    async def _claim(self, conversation_id: UUID) -> AsyncIterator[None]:
        if conversation_id in self._active:
            raise ConversationBusy(f"Conversation {conversation_id} already has an active loop")
        self._active.add(conversation_id)
        try:
            yield
        finally:
            self._active.discard(conversation_id)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def send_message(
        self,
        conversation_id: UUID,
        text: str,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> AsyncGenerator[LoopEvent, None]:
        """Persist a user message, then run the loop for it.

        Raises ConversationBusy or ConversationNotFound before the first
        event is yielded.
        """
        async with self._claim(conversation_id):
            conversation = await self._store.get(conversation_id)
            message = Message(role="user", content=text)
            await self._store.append_message(conversation_id, message)
            await self._emit(Event(
                type=MESSAGE_SENT,
                conversation_id=str(conversation_id),
                data={"message": text[:200], "message_count": len(conversation.messages) + 1},
                user_id=user_id,
                user_email=user_email,
            ))

            async with aclosing(self.run(conversation, message)) as events:
                async for event in events:
                    yield event

    async def choose_button(
        self,
        conversation_id: UUID,
        message_index: int,
        button_id: str,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> AsyncGenerator[LoopEvent, None]:
        """Record a button choice and continue with its value as a silent user message.

        Raises ValueError for an invalid choice, before the first event.
        """
        async with self._claim(conversation_id):
            button = await self._store.select_button(conversation_id, message_index, button_id)
            conversation = await self._store.get(conversation_id)
            message = Message(role="user", content=button.value, is_silent=True)
            await self._store.append_message(conversation_id, message)
            await self._emit(Event(
                type=BUTTON_SELECTED,
                conversation_id=str(conversation_id),
                data={"message": button.label, "button_id": button.id, "message_index": message_index},
                user_id=user_id,
                user_email=user_email,
            ))

            async with aclosing(self.run(conversation, message)) as events:
                async for event in events:
                    yield event

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(
        self,
        conversation: Conversation,
        outgoing: Message | None = None,
    ) -> AsyncGenerator[LoopEvent, None]:
        """Run rounds until the model finishes or pauses for a choice.

        outgoing must already be persisted. Any error aborts the loop:
        an idle state event is yielded and the error re-raised. Nothing is
        persisted for the failed round; tool side effects are not undone.
        """
        acc = LoopAccumulator(requests=normalize_history(conversation.messages, outgoing))
        if outgoing is not None:
            conversation.messages.append(outgoing)

        try:
            system_prompt = await self._prompts.build()
            tools = self._dispatcher.tool_definitions()

            while True:
                if acc.round >= self._settings.max_rounds:
                    raise RoundLimitExceeded(
                        f"Model still requested tools after {self._settings.max_rounds} rounds"
                    )
                acc.round += 1

                yield self._state(LoopState.REQUESTING, acc.round)
                validate_structure(acc.requests)
                payload = self._build_api_payload(system_prompt, acc.requests, tools)

                yield self._state(LoopState.STREAMING, acc.round)
                classifier = StreamClassifier(acc.round)
                builder = FinalMessageBuilder()
                async with aclosing(self._round_updates(payload, classifier, builder)) as updates:
                    async for update in updates:
                        yield update

                turn = builder.finalize()
                acc.usage.add(turn.usage)
                if turn.thinking:
                    acc.thinking.append(turn.thinking)
                if turn.stop_reason == "max_tokens":
                    logger.warning("Round %d hit max_tokens, response may be truncated", acc.round)

                invocations = turn.tool_invocations
                if not invocations:
                    yield self._state(LoopState.FINALIZING, acc.round)
                    message, artifact = await self._finalize(conversation, acc, turn)
                    yield LoopEvent(type="completed", round=acc.round, message=message, artifact=artifact)
                    break

                yield self._state(LoopState.TOOL_DISPATCH, acc.round)
                results = await self._dispatcher.dispatch_all(invocations)
                yield LoopEvent(type="tool_results", round=acc.round, results=results)

                entries = transcript_entries(invocations, results)
                choice = next((p for p in map(choice_payload, results) if p is not None), None)
                if choice is not None:
                    message = await self._pause(conversation, acc, turn, entries, choice)
                    yield self._state(LoopState.PAUSED, acc.round)
                    yield LoopEvent(type="paused", round=acc.round, message=message)
                    return

                acc.requests.append({"role": "assistant", "content": turn.followup_content()})
                acc.requests.append({"role": "user", "content": [r.to_block() for r in results]})
                acc.add_round(turn.text, entries)

        except Exception as e:
            logger.error("Loop for conversation %s failed in round %d: %s", conversation.id, acc.round, e)
            await self._emit(Event(
                type=LOOP_FAILED,
                conversation_id=str(conversation.id),
                data={"message": str(e), "error_type": type(e).__name__, "round": acc.round},
            ))
            yield self._state(LoopState.IDLE, acc.round)
            raise

        yield self._state(LoopState.IDLE, acc.round)

    async def _finalize(
        self,
        conversation: Conversation,
        acc: LoopAccumulator,
        turn: FinalizedTurn,
    ) -> tuple[Message, Artifact | None]:
        """Persist the assistant message and, if present, the new artifact version."""
        content = acc.reply_text(turn.text)
        message = Message(role="assistant", content=content, thinking=acc.thinking_text)
        await self._store.append_message(conversation.id, message)
        conversation.messages.append(message)

        # A revised offer in the final round supersedes one from an earlier tool round
        offer_text = turn.text if find_offer_block(turn.text) is not None else content
        artifact = None
        if has_offer(offer_text):
            artifact = extract_artifact(offer_text, conversation.artifact, title=self._settings.artifact_title)
            if artifact is not None:
                await self._store.replace_artifact(conversation.id, artifact)
                conversation.artifact = artifact
                await self._emit(Event(
                    type=ARTIFACT_UPDATED,
                    conversation_id=str(conversation.id),
                    data={"message": artifact.title, "artifact_id": artifact.id, "version": artifact.version},
                ))

        await self._record_usage(conversation, acc)
        logger.info(
            "Loop finished for %s after %d round(s) (%d output tokens)",
            conversation.id,
            acc.round,
            acc.usage.output_tokens,
        )
        return message, artifact

    async def _pause(
        self,
        conversation: Conversation,
        acc: LoopAccumulator,
        turn: FinalizedTurn,
        entries: list[TranscriptEntry],
        choice: dict[str, Any],
    ) -> Message:
        """Persist the message carrying the button set. The loop stops here."""
        buttons = choice_buttons(choice)
        message = Message(
            role="assistant",
            content=acc.reply_text(turn.text) + render_transcript(entries),
            thinking=acc.thinking_text,
            buttons=buttons,
            buttons_message=choice.get("message") or None,
        )
        await self._store.append_message(conversation.id, message)
        conversation.messages.append(message)
        await self._record_usage(conversation, acc)
        await self._emit(Event(
            type=LOOP_PAUSED,
            conversation_id=str(conversation.id),
            data={"message": message.buttons_message or "", "buttons": [b.id for b in buttons]},
        ))
        logger.info("Loop for %s paused for a choice between %d button(s)", conversation.id, len(buttons))
        return message

    async def _record_usage(self, conversation: Conversation, acc: LoopAccumulator) -> None:
        await self._store.add_usage(conversation.id, acc.usage)
        conversation.usage.add(acc.usage.model_dump())

    # ------------------------------------------------------------------
    # Streaming round
    # ------------------------------------------------------------------

    async def _round_updates(
        self,
        payload: dict[str, Any],
        classifier: StreamClassifier,
        builder: FinalMessageBuilder,
    ) -> AsyncGenerator[LoopEvent, None]:
        """Stream one round under the round deadline, yielding preview updates.

        The stream is consumed by a separate task so the deadline covers
        only the request and the stream, not the caller's handling of
        each yielded update.
        """
        queue: asyncio.Queue[LoopEvent | None] = asyncio.Queue()
        task = asyncio.create_task(
            asyncio.wait_for(
                self._consume_stream(payload, classifier, builder, queue),
                timeout=self._settings.round_timeout,
            ),
            name="llm-stream",
        )
        try:
            while (update := await queue.get()) is not None:
                yield update
            await task
        except asyncio.TimeoutError as e:
            raise RoundTimeout(
                f"Round did not finish within {self._settings.round_timeout:.0f}s"
            ) from e
        except httpx.HTTPError as e:
            raise ApiError(f"HTTP error: {e}") from e
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _consume_stream(
        self,
        payload: dict[str, Any],
        classifier: StreamClassifier,
        builder: FinalMessageBuilder,
        queue: asyncio.Queue[LoopEvent | None],
    ) -> None:
        try:
            async with aclosing(self._call_api_stream(payload)) as events:
                async for event in events:
                    builder.feed(event)
                    for update in classifier.feed(event):
                        queue.put_nowait(update)
        finally:
            queue.put_nowait(None)

    # ------------------------------------------------------------------
    # API call
    # ------------------------------------------------------------------

    def _build_api_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Build the streaming Anthropic Messages API request payload."""
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
            "stream": True,
        }
        if self._settings.thinking_enabled:
            payload["thinking"] = {
                "type": "enabled",
                "budget_tokens": self._settings.thinking_budget,
            }
        if tools:
            payload["tools"] = tools
        return payload

    async def _call_api_stream(self, payload: dict[str, Any]) -> AsyncGenerator[StreamEvent, None]:
        """POST the payload with streaming enabled and yield parsed events.

        Only data: lines are processed. Undecodable lines are logged and
        skipped; a non-200 answer raises ApiError.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        async with self._http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode(errors="replace")
                raise ApiError(
                    f"Anthropic API error ({response.status_code}): {_error_message(body)}",
                    status_code=response.status_code,
                )

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    logger.warning("Skipping undecodable SSE line: %.200s", line)
                    continue
                event = parse_sse_event(data)
                if event is not None:
                    yield event

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _state(state: LoopState, round_index: int) -> LoopEvent:
        return LoopEvent(type="state", state=state, round=round_index)

    async def _emit(self, event: Event) -> None:
        if self._bus is not None:
            await self._bus.emit(event)


def _error_message(body: str) -> str:
    """Pull "type - message" out of an API error body, else the raw text."""
    try:
        error = json.loads(body).get("error", {})
        return f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    except (json.JSONDecodeError, AttributeError):
        return body[:500]
