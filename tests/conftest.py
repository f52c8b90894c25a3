"""Shared pytest fixtures for testing."""

from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport


SESSION_KEY = ("tenant-1", "user-1", "session-1")
FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Template Fixtures
# =============================================================================


@pytest.fixture
def greeting_template() -> Dict[str, Any]:
    """start (message) -> ask_name (input) -> end (terminal)."""
    return {
        "entryNodeId": "start",
        "nodes": [
            {"id": "start", "type": "message", "content": "Welcome! What's your name?", "next": "ask_name"},
            {"id": "ask_name", "type": "input", "variableName": "name", "next": "end"},
            {"id": "end", "type": "terminal", "content": "Thanks {name}!"},
        ],
    }


@pytest.fixture
def branching_template() -> Dict[str, Any]:
    """Condition node with yes/no predicates and a default."""
    return {
        "entryNodeId": "ask",
        "nodes": [
            {
                "id": "ask",
                "type": "condition",
                "content": "Are you interested?",
                "next": [
                    {"condition": {"type": "contains", "value": "yes"}, "nextNodeId": "A"},
                    {"condition": {"type": "contains", "value": "no"}, "nextNodeId": "B"},
                    {"condition": {"type": "default"}, "nextNodeId": "C"},
                ],
            },
            {"id": "A", "type": "terminal", "content": "Great!"},
            {"id": "B", "type": "terminal", "content": "No problem."},
            {"id": "C", "type": "terminal", "content": "Sorry, I didn't get that."},
        ],
    }


@pytest.fixture
def funnel_template() -> Dict[str, Any]:
    """Email capture followed by a lead-stage node."""
    return {
        "entryNodeId": "start",
        "nodes": [
            {"id": "start", "type": "message", "content": "Hi there", "next": "ask_email"},
            {
                "id": "ask_email",
                "type": "input",
                "content": "What's your email?",
                "variableName": "email",
                "inputType": "email",
                "next": "qualified",
            },
            {
                "id": "qualified",
                "type": "message",
                "content": "We'll write to {email}",
                "metadata": {"salesStageId": "qualified"},
                "next": "end",
            },
            {"id": "end", "type": "terminal", "content": "Bye"},
        ],
    }


@pytest.fixture
def greeting_graph(greeting_template):
    """Validated greeting graph."""
    from convoflow_core.flow.graph import FlowGraph

    return FlowGraph.from_template(greeting_template, template_id="greeting")


@pytest.fixture
def branching_graph(branching_template):
    """Validated branching graph."""
    from convoflow_core.flow.graph import FlowGraph

    return FlowGraph.from_template(branching_template, template_id="branching")


@pytest.fixture
def funnel_graph(funnel_template):
    """Validated funnel graph."""
    from convoflow_core.flow.graph import FlowGraph

    return FlowGraph.from_template(funnel_template, template_id="funnel")


@pytest.fixture
def interpreter():
    """Interpreter with a fixed clock."""
    from convoflow_core.flow.interpreter import FlowInterpreter

    return FlowInterpreter(clock=lambda: FIXED_NOW)


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def registry(greeting_template, branching_template, funnel_template):
    """Registry with the test templates activated."""
    from convoflow_core.flow.registry import GraphRegistry

    registry = GraphRegistry()
    await registry.register("greeting", greeting_template)
    await registry.register("branching", branching_template)
    await registry.register("funnel", funnel_template)
    return registry


@pytest.fixture
def store():
    """In-memory state store."""
    from convoflow_core.store.memory import InMemoryStateStore

    return InMemoryStateStore()


@pytest.fixture
def no_sleep_retry():
    """Retry policy that does not actually sleep."""
    from unittest.mock import AsyncMock

    from convoflow_core.resilience.retry import RetryPolicy

    return RetryPolicy(sleep=AsyncMock())


@pytest_asyncio.fixture
async def processor(registry, store, no_sleep_retry):
    """Conversation processor over in-memory collaborators."""
    from convoflow_core.processing import ConversationProcessor

    processor = ConversationProcessor(registry, store, retry=no_sleep_retry)
    yield processor
    await processor.dispatcher.drain()


# =============================================================================
# API Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def app(processor) -> FastAPI:
    """Create test FastAPI application."""
    from convoflow_core.api.app import create_app
    from convoflow_core.config import Settings

    return create_app(Settings(), processor)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
