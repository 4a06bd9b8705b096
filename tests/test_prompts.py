"""Tests for system prompt assembly.

inject_variables is pure. SystemPromptBuilder runs against a mocked
Database session so no Postgres is needed.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from offerbot.prompts import DEFAULT_TEMPLATE, SystemPromptBuilder, inject_variables


def _mock_database(template_row, variables) -> MagicMock:
    result = MagicMock()
    result.all.return_value = variables
    session = MagicMock()
    session.get = AsyncMock(return_value=template_row)
    session.execute = AsyncMock(return_value=result)

    @asynccontextmanager
    async def _session():
        yield session

    database = MagicMock()
    database.session = _session
    return database


class TestInjectVariables:
    def test_replaces_all_occurrences(self):
        result = inject_variables("{a} ir {a}, {b}", [("a", "x"), ("b", "y")])
        assert result == "x ir x, y"

    def test_empty_value_substituted_and_logged(self, caplog):
        with caplog.at_level("WARNING"):
            result = inject_variables("[{a}]", [("a", None)])
        assert result == "[]"
        assert "empty value" in caplog.text

    def test_unreplaced_placeholder_logged(self, caplog):
        with caplog.at_level("WARNING"):
            result = inject_variables("{a} {missing}", [("a", "x")])
        assert result == "x {missing}"
        assert "{missing}" in caplog.text

    def test_json_braces_not_reported(self, caplog):
        with caplog.at_level("WARNING"):
            inject_variables('Example: {"key": "value"}', [])
        assert "Unreplaced" not in caplog.text


class TestSystemPromptBuilder:
    @pytest.mark.asyncio
    async def test_custom_template(self):
        row = MagicMock(template_content="Rolė: {role}. Fazė: {phase}.")
        builder = SystemPromptBuilder(_mock_database(row, [("role", "specialistas"), ("phase", "1")]))
        assert await builder.build() == "Rolė: specialistas. Fazė: 1."

    @pytest.mark.asyncio
    async def test_default_template_fallback(self):
        builder = SystemPromptBuilder(_mock_database(None, [("darbo_eigos_apzvalga", "Penkios fazės.")]))
        prompt = await builder.build()
        assert "Penkios fazės." in prompt
        assert "{darbo_eigos_apzvalga}" not in prompt
        assert "<commercial_offer" in prompt

    @pytest.mark.asyncio
    async def test_empty_template_row_uses_default(self):
        row = MagicMock(template_content="")
        prompt = await SystemPromptBuilder(_mock_database(row, [])).build()
        assert prompt == DEFAULT_TEMPLATE
