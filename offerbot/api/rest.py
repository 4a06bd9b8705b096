"""REST API for offerbot.

Endpoints:
  GET    /health                                - Health check (DB connectivity)
  POST   /projects/{project_id}/conversations   - Create a conversation
  GET    /projects/{project_id}/conversations   - List conversations (no messages)
  GET    /conversations/{id}                    - Conversation with messages
  PATCH  /conversations/{id}                    - Rename
  DELETE /conversations/{id}                    - Delete
  GET    /conversations/{id}/artifact           - Current commercial offer + parsed fields
  POST   /conversations/{id}/messages           - Send a message (SSE of loop events)
  POST   /conversations/{id}/choices            - Pick a button (SSE of loop events)
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any
from uuid import UUID

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from offerbot.api.models import LoopEvent
from offerbot.api.runner import OrchestrationLoop
from offerbot.config import Settings
from offerbot.conversation.schemas import Conversation
from offerbot.errors import ConversationBusy, ConversationNotFound
from offerbot.events import CONVERSATION_CREATED, CONVERSATION_DELETED, Event, EventBus
from offerbot.storage.database import Database
from offerbot.storage.repository import ConversationStore

logger = logging.getLogger(__name__)


def _summary(conversation: Conversation) -> dict[str, Any]:
    return conversation.model_dump(mode="json", exclude={"messages"})


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _read_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    loop: OrchestrationLoop,
    store: ConversationStore,
    database: Database,
    settings: Settings,
    bus: EventBus | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def emit(event: Event) -> None:
        if bus is not None:
            await bus.emit(event)

    async def stream_events(events: AsyncGenerator[LoopEvent, None]) -> Response:
        """Start a loop and stream its events.

        The first event is pulled before the response starts so that a busy
        or missing conversation or an invalid choice becomes a status code.
        """
        try:
            first = await anext(events)
        except StopAsyncIteration:
            return JSONResponse({"error": "Loop produced no events"}, status_code=500)
        except ConversationBusy as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except ConversationNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        async def event_generator() -> AsyncIterator[str]:
            try:
                yield _sse(first.to_dict())
                async for event in events:
                    yield _sse(event.to_dict())
            except Exception as e:
                logger.error("Stream error: %s", e)
                yield _sse({"type": "error", "error_type": type(e).__name__, "text": str(e)})
            finally:
                await events.aclose()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /projects/{project_id}/conversations"""
        project_id: UUID = request.path_params["project_id"]
        body = await _read_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        author_email = body.get("author_email")
        if not body.get("author_id") or not author_email:
            return JSONResponse({"error": "Missing required fields: author_id, author_email"}, status_code=400)
        try:
            author_id = UUID(str(body["author_id"]))
        except ValueError:
            return JSONResponse({"error": "author_id must be a UUID"}, status_code=400)

        conversation = await store.create(project_id, author_id, author_email, title=body.get("title"))
        await emit(Event(
            type=CONVERSATION_CREATED,
            conversation_id=str(conversation.id),
            data={"message": conversation.title, "project_id": str(project_id)},
            user_id=str(author_id),
            user_email=author_email,
        ))
        return JSONResponse(_summary(conversation), status_code=201)

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /projects/{project_id}/conversations"""
        project_id: UUID = request.path_params["project_id"]
        conversations = await store.list_by_project(project_id)
        return JSONResponse({
            "conversations": [_summary(c) for c in conversations],
            "total": len(conversations),
        })

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id}"""
        try:
            conversation = await store.get(request.path_params["conversation_id"])
        except ConversationNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse(conversation.model_dump(mode="json"))

    async def update_conversation(request: Request) -> JSONResponse:
        """PATCH /conversations/{id} - rename."""
        conversation_id: UUID = request.path_params["conversation_id"]
        body = await _read_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        title = (body.get("title") or "").strip()
        if not title:
            return JSONResponse({"error": "Missing required field: title"}, status_code=400)
        try:
            await store.rename(conversation_id, title)
        except ConversationNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse({"id": str(conversation_id), "title": title})

    async def delete_conversation(request: Request) -> Response:
        """DELETE /conversations/{id}"""
        conversation_id: UUID = request.path_params["conversation_id"]
        if loop.is_busy(conversation_id):
            return JSONResponse({"error": "Conversation has an active loop"}, status_code=409)
        try:
            await store.delete(conversation_id)
        except ConversationNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        await emit(Event(type=CONVERSATION_DELETED, conversation_id=str(conversation_id)))
        return Response(status_code=204)

    async def get_artifact(request: Request) -> JSONResponse:
        """GET /conversations/{id}/artifact"""
        try:
            conversation = await store.get(request.path_params["conversation_id"])
        except ConversationNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        if conversation.artifact is None:
            return JSONResponse({"error": "Conversation has no artifact yet"}, status_code=404)
        return JSONResponse({
            "artifact": conversation.artifact.model_dump(mode="json"),
            "fields": conversation.artifact.fields,
        })

    async def send_message(request: Request) -> Response:
        """POST /conversations/{id}/messages - SSE stream of loop events."""
        body = await _read_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        return await stream_events(loop.send_message(
            request.path_params["conversation_id"],
            message,
            user_id=body.get("user_id"),
            user_email=body.get("user_email"),
        ))

    async def choose_button(request: Request) -> Response:
        """POST /conversations/{id}/choices - SSE stream of loop events."""
        body = await _read_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message_index = body.get("message_index")
        button_id = body.get("button_id")
        if not isinstance(message_index, int) or not isinstance(button_id, str) or not button_id:
            return JSONResponse(
                {"error": "Required fields: message_index (int), button_id (str)"},
                status_code=400,
            )

        return await stream_events(loop.choose_button(
            request.path_params["conversation_id"],
            message_index,
            button_id,
            user_id=body.get("user_id"),
            user_email=body.get("user_email"),
        ))

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "model": settings.model})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/health", health),
        Route("/projects/{project_id:uuid}/conversations", create_conversation, methods=["POST"]),
        Route("/projects/{project_id:uuid}/conversations", list_conversations, methods=["GET"]),
        Route("/conversations/{conversation_id:uuid}", get_conversation, methods=["GET"]),
        Route("/conversations/{conversation_id:uuid}", update_conversation, methods=["PATCH"]),
        Route("/conversations/{conversation_id:uuid}", delete_conversation, methods=["DELETE"]),
        Route("/conversations/{conversation_id:uuid}/artifact", get_artifact),
        Route("/conversations/{conversation_id:uuid}/messages", send_message, methods=["POST"]),
        Route("/conversations/{conversation_id:uuid}/choices", choose_button, methods=["POST"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
