"""PostgreSQL persistence: engine, ORM models, migrations, conversation store."""

from offerbot.storage.database import Database
from offerbot.storage.repository import ConversationStore

__all__ = ["ConversationStore", "Database"]
