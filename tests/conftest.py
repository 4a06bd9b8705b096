"""Shared fixtures.

Most tests run against FakeConversationStore. DB-backed tests use a real
Postgres (DB_* env vars, docker-compose defaults) and are skipped when it
is not reachable.
"""

from __future__ import annotations

from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from offerbot.config import Settings
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
from offerbot.storage.migrator import run_migrations

# ---------------------------------------------------------------------------
# In-memory conversation store
# ---------------------------------------------------------------------------


class FakeConversationStore:
    """ConversationStore double with the same read-modify-write semantics."""

    def __init__(self) -> None:
        self.conversations: dict[UUID, Conversation] = {}

    async def create(self, project_id, author_id, author_email, title=None, session=None) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            id=uuid4(),
            project_id=project_id,
            title=title or "Naujas pokalbis",
            author_id=author_id,
            author_email=author_email,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )
        self.conversations[conversation.id] = conversation
        return conversation.model_copy(deep=True)

    async def get(self, conversation_id, session=None) -> Conversation:
        return self._load(conversation_id).model_copy(deep=True)

    async def list_by_project(self, project_id, session=None) -> list[Conversation]:
        found = [c for c in self.conversations.values() if c.project_id == project_id]
        found.sort(key=lambda c: c.last_message_at, reverse=True)
        return [c.model_copy(deep=True) for c in found]

    async def append_message(self, conversation_id, message: Message, session=None) -> None:
        conversation = self._load(conversation_id)
        conversation.messages.append(message.model_copy(deep=True))
        conversation.message_count = len(conversation.messages)
        conversation.last_message_at = message.timestamp

    async def select_button(self, conversation_id, message_index, button_id, session=None) -> ButtonOption:
        conversation = self._load(conversation_id)
        if not 0 <= message_index < len(conversation.messages):
            raise ValueError(f"Message index {message_index} out of range")
        return conversation.messages[message_index].select_button(button_id)

    async def replace_artifact(self, conversation_id, artifact: Artifact, session=None) -> None:
        self._load(conversation_id).artifact = artifact.model_copy(deep=True)

    async def add_usage(self, conversation_id, usage: TokenUsage, session=None) -> None:
        self._load(conversation_id).usage.add(usage.model_dump())

    async def rename(self, conversation_id, title, session=None) -> None:
        self._load(conversation_id).title = title

    async def delete(self, conversation_id, session=None) -> None:
        self._load(conversation_id)
        del self.conversations[conversation_id]

    def _load(self, conversation_id) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation


@pytest.fixture
def store() -> FakeConversationStore:
    return FakeConversationStore()


@pytest_asyncio.fixture
async def conversation(store) -> Conversation:
    """An empty conversation in the fake store."""
    return await store.create(uuid4(), uuid4(), "vadybininkas@example.com")


@pytest.fixture
def settings() -> Settings:
    """Settings with short loop limits for tests."""
    return Settings(max_rounds=5, round_timeout=5.0, api_base_url="https://api.test")


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Database with migrations applied. Skips when Postgres is unreachable."""
    database = Database(Settings())
    try:
        await database.connect()
    except Exception as e:
        await database.disconnect()
        pytest.skip(f"Postgres not available: {e}")
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def session(db):
    """Function-scoped session with SAVEPOINT isolation.

    Tests can call session.commit() freely -- everything is rolled back
    after each test via the outer transaction.
    """
    async with db.engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        nested = await conn.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(sess, transaction):
            nonlocal nested
            if transaction.nested and not transaction._parent.nested:
                nested = conn.sync_connection.begin_nested()

        yield session

        await session.close()
        await trans.rollback()
