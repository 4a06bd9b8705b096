"""Conversation persistence.

Messages and the artifact live as JSONB on the sdk_conversations row.
Every mutation reads the row, rebuilds the value and writes it back whole;
the orchestration loop is the only writer while it runs.

All methods follow the session injection pattern: pass an AsyncSession to
join an outer transaction, or omit it to get a committed unit of work.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from offerbot.conversation.schemas import (
    Artifact,
    ButtonOption,
    Conversation,
    Message,
    TokenUsage,
    utcnow,
)
from offerbot.errors import ConversationNotFound
from offerbot.storage.database import Database
from offerbot.storage.models import SdkConversation

logger = logging.getLogger(__name__)


class ConversationStore:
    """CRUD over sdk_conversations, returning Conversation DTOs."""

    def __init__(self, db: Database, default_title: str = "Naujas pokalbis") -> None:
        self.db = db
        self.default_title = default_title

    # ------------------------------------------------------------------
    # create() / get() / list_by_project()
    # ------------------------------------------------------------------

    async def create(
        self,
        project_id: UUID,
        author_id: UUID,
        author_email: str,
        title: str | None = None,
        session: AsyncSession | None = None,
    ) -> Conversation:
        if session is None:
            async with self.db.session() as session:
                result = await self._create(project_id, author_id, author_email, title, session)
                await session.commit()
                return result
        return await self._create(project_id, author_id, author_email, title, session)

    async def _create(
        self,
        project_id: UUID,
        author_id: UUID,
        author_email: str,
        title: str | None,
        session: AsyncSession,
    ) -> Conversation:
        now = utcnow()
        row = SdkConversation(
            project_id=project_id,
            author_id=author_id,
            author_email=author_email,
            title=title or self.default_title,
            created_at=now,
            updated_at=now,
            last_message_at=now,
            message_count=0,
            messages=[],
            artifact=None,
        )
        session.add(row)
        await session.flush()
        logger.info("Created conversation %s in project %s", row.id, project_id)
        return self._to_dto(row)

    async def get(self, conversation_id: UUID, session: AsyncSession | None = None) -> Conversation:
        """Load a conversation. Raises ConversationNotFound."""
        if session is None:
            async with self.db.session() as session:
                return self._to_dto(await self._load(conversation_id, session))
        return self._to_dto(await self._load(conversation_id, session))

    async def list_by_project(
        self,
        project_id: UUID,
        session: AsyncSession | None = None,
    ) -> list[Conversation]:
        """All conversations of a project, most recently active first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_by_project(project_id, session)
        return await self._list_by_project(project_id, session)

    async def _list_by_project(self, project_id: UUID, session: AsyncSession) -> list[Conversation]:
        result = await session.execute(
            select(SdkConversation)
            .where(SdkConversation.project_id == project_id)
            .order_by(SdkConversation.last_message_at.desc())
        )
        return [self._to_dto(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def append_message(
        self,
        conversation_id: UUID,
        message: Message,
        session: AsyncSession | None = None,
    ) -> None:
        """Append one message and bump the activity counters."""
        if session is None:
            async with self.db.session() as session:
                await self._append_message(conversation_id, message, session)
                await session.commit()
                return
        await self._append_message(conversation_id, message, session)

    async def _append_message(self, conversation_id: UUID, message: Message, session: AsyncSession) -> None:
        row = await self._load(conversation_id, session, for_update=True)
        messages = [*(row.messages or []), message.model_dump(mode="json")]
        # Assign a new list so the JSONB column is flagged dirty
        row.messages = messages
        row.message_count = len(messages)
        row.last_message_at = message.timestamp
        row.updated_at = utcnow()
        await session.flush()

    async def select_button(
        self,
        conversation_id: UUID,
        message_index: int,
        button_id: str,
        session: AsyncSession | None = None,
    ) -> ButtonOption:
        """Record a button choice on the message at message_index.

        Raises ValueError if the index is out of range, the message has no
        buttons, a choice was already made, or the button id is unknown.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._select_button(conversation_id, message_index, button_id, session)
                await session.commit()
                return result
        return await self._select_button(conversation_id, message_index, button_id, session)

    async def _select_button(
        self,
        conversation_id: UUID,
        message_index: int,
        button_id: str,
        session: AsyncSession,
    ) -> ButtonOption:
        row = await self._load(conversation_id, session, for_update=True)
        raw = list(row.messages or [])
        if not 0 <= message_index < len(raw):
            raise ValueError(f"Message index {message_index} out of range")

        message = Message.model_validate(raw[message_index])
        button = message.select_button(button_id)
        raw[message_index] = message.model_dump(mode="json")
        row.messages = raw
        row.updated_at = utcnow()
        await session.flush()
        return button

    async def replace_artifact(
        self,
        conversation_id: UUID,
        artifact: Artifact,
        session: AsyncSession | None = None,
    ) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._replace_artifact(conversation_id, artifact, session)
                await session.commit()
                return
        await self._replace_artifact(conversation_id, artifact, session)

    async def _replace_artifact(self, conversation_id: UUID, artifact: Artifact, session: AsyncSession) -> None:
        row = await self._load(conversation_id, session, for_update=True)
        row.artifact = artifact.model_dump(mode="json")
        row.updated_at = utcnow()
        await session.flush()
        logger.info("Stored artifact %s v%d for conversation %s", artifact.id, artifact.version, conversation_id)

    async def add_usage(
        self,
        conversation_id: UUID,
        usage: TokenUsage,
        session: AsyncSession | None = None,
    ) -> None:
        """Add a loop's token usage to the conversation counters."""
        if session is None:
            async with self.db.session() as session:
                await self._add_usage(conversation_id, usage, session)
                await session.commit()
                return
        await self._add_usage(conversation_id, usage, session)

    async def _add_usage(self, conversation_id: UUID, usage: TokenUsage, session: AsyncSession) -> None:
        row = await self._load(conversation_id, session, for_update=True)
        row.total_input_tokens = (row.total_input_tokens or 0) + usage.input_tokens
        row.total_output_tokens = (row.total_output_tokens or 0) + usage.output_tokens
        row.total_cache_creation_tokens = (row.total_cache_creation_tokens or 0) + usage.cache_creation_input_tokens
        row.total_cache_read_tokens = (row.total_cache_read_tokens or 0) + usage.cache_read_input_tokens
        await session.flush()

    async def rename(self, conversation_id: UUID, title: str, session: AsyncSession | None = None) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._rename(conversation_id, title, session)
                await session.commit()
                return
        await self._rename(conversation_id, title, session)

    async def _rename(self, conversation_id: UUID, title: str, session: AsyncSession) -> None:
        row = await self._load(conversation_id, session, for_update=True)
        row.title = title
        row.updated_at = utcnow()
        await session.flush()

    async def delete(self, conversation_id: UUID, session: AsyncSession | None = None) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._delete(conversation_id, session)
                await session.commit()
                return
        await self._delete(conversation_id, session)

    async def _delete(self, conversation_id: UUID, session: AsyncSession) -> None:
        result = await session.execute(delete(SdkConversation).where(SdkConversation.id == conversation_id))
        if result.rowcount == 0:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        logger.info("Deleted conversation %s", conversation_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(
        self,
        conversation_id: UUID,
        session: AsyncSession,
        for_update: bool = False,
    ) -> SdkConversation:
        stmt = select(SdkConversation).where(SdkConversation.id == conversation_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return row

    @staticmethod
    def _to_dto(row: SdkConversation) -> Conversation:
        return Conversation(
            id=row.id,
            project_id=row.project_id,
            title=row.title,
            author_id=row.author_id,
            author_email=row.author_email,
            created_at=row.created_at,
            updated_at=row.updated_at,
            message_count=row.message_count or 0,
            last_message_at=row.last_message_at,
            messages=[Message.model_validate(m) for m in row.messages or []],
            artifact=Artifact.model_validate(row.artifact) if row.artifact else None,
            usage=TokenUsage(
                input_tokens=row.total_input_tokens or 0,
                output_tokens=row.total_output_tokens or 0,
                cache_creation_input_tokens=row.total_cache_creation_tokens or 0,
                cache_read_input_tokens=row.total_cache_read_tokens or 0,
            ),
        )
