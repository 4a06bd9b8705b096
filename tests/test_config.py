"""Tests for Settings validation."""

import pytest
from pydantic import ValidationError

from offerbot.config import Settings


class TestThinkingValidation:
    def test_defaults_valid(self):
        settings = Settings()
        assert settings.thinking_budget < settings.max_tokens

    def test_budget_below_minimum(self):
        with pytest.raises(ValidationError, match="1024"):
            Settings(thinking_budget=500)

    def test_budget_not_below_max_tokens(self):
        with pytest.raises(ValidationError, match="max_tokens"):
            Settings(thinking_budget=4000, max_tokens=4000)

    def test_disabled_thinking_skips_checks(self):
        settings = Settings(thinking_enabled=False, thinking_budget=0)
        assert settings.thinking_budget == 0


def test_db_url():
    settings = Settings(DB_HOST="db", DB_PORT=5433, DB_USER="u", DB_PASSWORD="p", DB_NAME="n")
    assert settings.db_url == "postgresql+asyncpg://u:p@db:5433/n"


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("OFFERBOT_MAX_ROUNDS", "3")
    monkeypatch.setenv("N8N_MCP_SERVER_URL", "https://n8n.test/mcp")
    settings = Settings()
    assert settings.max_rounds == 3
    assert settings.tool_webhook_url == "https://n8n.test/mcp"
