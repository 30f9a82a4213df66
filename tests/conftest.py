"""Shared test fixtures for the flow engine."""
from unittest.mock import AsyncMock

import pytest

from backend.http_client import HttpResponse
from channels.base import ChannelRegistry
from channels.console_adapter import ConsoleAdapter
from config.settings import Settings
from core.ai import MockAICompletionService
from core.engine import FlowEngine
from database.store_memory import InMemoryFlowStore


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def console() -> ConsoleAdapter:
    return ConsoleAdapter()


@pytest.fixture
def registry(console) -> ChannelRegistry:
    return ChannelRegistry(default=console)


@pytest.fixture
def http() -> AsyncMock:
    client = AsyncMock()
    client.request.return_value = HttpResponse(status=200, data={"ok": True})
    return client


@pytest.fixture
def ai() -> MockAICompletionService:
    return MockAICompletionService(reply="AI says hi")


@pytest.fixture
def engine(store, registry, http, ai, settings) -> FlowEngine:
    return FlowEngine(store, registry, http=http, ai=ai, settings=settings)
