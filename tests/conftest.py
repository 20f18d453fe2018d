"""
Pytest configuration and shared fixtures.

This module provides fixtures and configuration used across all tests.
"""

import json
import logging
from unittest.mock import AsyncMock

import pytest

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires API keys and external services)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (may require external services)"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly enabled."""
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(
        reason="Integration tests disabled (use --run-integration to enable)."
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(autouse=True)
def configure_test_logging(caplog):
    """Capture everything down to DEBUG for every test."""
    caplog.set_level(logging.DEBUG)
    yield


# ============================================================================
# Environment and Configuration
# ============================================================================


@pytest.fixture(autouse=True)
def mock_openai_api_key(monkeypatch):
    """
    Provide a syntactically valid OpenAI key and reset cached settings.

    Runs automatically so building Settings never fails on a missing key and
    no test sees settings cached by another.
    """
    from chatbi.config import clear_settings_cache

    clear_settings_cache()
    test_key = "sk-test-key-1234567890-abcdefghijklmnop"
    monkeypatch.setenv("LLM_OPENAI_API_KEY", test_key)
    monkeypatch.setenv("LLM_DEFAULT_PROVIDER", "openai")
    yield test_key
    clear_settings_cache()


# ============================================================================
# Mock LLM Provider
# ============================================================================


def make_llm_response(content: str):
    from chatbi.llm.models import LLMResponse, LLMUsage

    return LLMResponse(
        content=content,
        model="mock-model",
        usage=LLMUsage(prompt_tokens=1, completion_tokens=1, total_tokens=2),
        finish_reason="stop",
        provider="mock",
    )


def generation_payload(sql: str | None, explanation: str = "", **extra) -> str:
    """A model answer in the JSON contract the SQL prompt asks for."""
    return json.dumps({"explanation": explanation, "sql": sql, **extra}, ensure_ascii=False)


@pytest.fixture
def mock_llm_provider():
    """
    Mock LLM provider for testing agents and the pipeline.

    Usage:
        mock_llm_provider.set_response("text")
        mock_llm_provider.set_responses(["first", "second"])
    """

    class MockLLMProvider:
        provider_name = "mock"

        def __init__(self):
            self.complete = AsyncMock()
            self.aclose = AsyncMock()

        def count_tokens(self, text: str) -> int:
            return len(text) // 4

        def set_response(self, response: str):
            self.complete.side_effect = None
            self.complete.return_value = make_llm_response(response)

        def set_responses(self, responses: list[str]):
            self.complete.side_effect = [make_llm_response(r) for r in responses]

        @property
        def requests(self):
            return [call.args[0] for call in self.complete.await_args_list]

    return MockLLMProvider()


# ============================================================================
# Mock Database Connectors
# ============================================================================


@pytest.fixture
def mock_connector():
    """
    Mock target-database connector.

    Usage:
        mock_connector.execute.return_value = QueryResult(...)
    """
    connector = AsyncMock()
    connector.connect = AsyncMock()
    connector.close = AsyncMock()
    connector.execute = AsyncMock()
    return connector


# ============================================================================
# Common Test Data
# ============================================================================


@pytest.fixture
def shop_schema():
    """customers / orders / products, the schema most tests talk about."""
    from chatbi.models.schema import Column, Table

    return [
        Table(
            name="customers",
            columns=[
                Column(name="id", type="int", nullable=False, is_primary_key=True),
                Column(name="name", type="varchar"),
                Column(name="email", type="varchar"),
            ],
        ),
        Table(
            name="orders",
            columns=[
                Column(name="id", type="int", nullable=False, is_primary_key=True),
                Column(name="customer_id", type="int", is_foreign_key=True),
                Column(name="amount", type="decimal"),
                Column(name="created_at", type="datetime"),
            ],
        ),
    ]


@pytest.fixture
def shop_whitelist(shop_schema):
    from chatbi.models.schema import FieldWhitelist

    return FieldWhitelist(
        tables={table.name: tuple(table.column_names()) for table in shop_schema},
        source="schema",
    )


@pytest.fixture
def admin_policy():
    from chatbi.security.policy import compile_permission

    return compile_permission(None, is_admin=True)


@pytest.fixture
def admin_user():
    from chatbi.models.chat import UserContext

    return UserContext(user_id="u-admin", role="admin")


@pytest.fixture
def make_payload():
    """Factory for model answers in the SQL-generation JSON contract."""
    return generation_payload


@pytest.fixture
def make_query_result():
    """Factory for connector results: make_query_result(columns, rows)."""
    from chatbi.connectors.base import QueryResult

    def _make(columns, rows=None):
        rows = [dict(zip(columns, row)) for row in (rows or [])]
        return QueryResult(rows=rows, row_count=len(rows), columns=list(columns))

    return _make
