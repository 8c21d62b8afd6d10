# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Flowforge test suite.

This module provides:
- Engine configuration without pacing delays
- Orchestrators wired to mocked HTTP and gateway transports
- Script capability sets for sandbox tests
- Small graph builders

Usage:
    Fixtures are discovered implicitly by pytest.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from flowforge.core.config import EngineConfig
from flowforge.core.database import (
    ConnectionRegistry,
    DatabaseConnection,
    DatabaseProxy,
    GatewayClient,
)
from flowforge.core.graph_engine import GraphOrchestrator
from flowforge.core.graph_schema import WorkflowEdge, WorkflowNode
from flowforge.core.state import RunLog
from flowforge.core.variables import VariableStore
from flowforge.sandbox.capabilities import Capabilities, HttpClient, NodeLogger, VariableHandle

GATEWAY_URL = "http://gateway.test"


# =============================================================================
# Graph Builders
# =============================================================================


def node(node_id: str, script: str, kind: str = "basic") -> WorkflowNode:
    return WorkflowNode(id=node_id, kind=kind, script=script)


def edge(source: str, target: str, handle: str | None = None) -> WorkflowEdge:
    return WorkflowEdge(source=source, target=target, source_handle=handle)


# =============================================================================
# Transport Fixtures
# =============================================================================


class GatewayRecorder:
    """Mock gateway: records request bodies and replies with a canned response."""

    def __init__(self):
        self.requests: list[dict[str, Any]] = []
        self.paths: list[str] = []
        self.response: dict[str, Any] = {"success": True, "result": []}
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        self.requests.append(json.loads(request.content or b"{}"))
        return httpx.Response(self.status_code, json=self.response)


@pytest.fixture
def gateway() -> GatewayRecorder:
    return GatewayRecorder()


@pytest.fixture
def http_handler() -> Callable[[httpx.Request], httpx.Response]:
    """Default outbound HTTP handler: echoes method and path as JSON."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/missing":
            return httpx.Response(404, json={"detail": "not found"})
        return httpx.Response(
            200, json={"method": request.method, "path": request.url.path}
        )

    return handler


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def headless_config() -> EngineConfig:
    """Config with pacing and loop delays disabled."""
    return EngineConfig(gateway_url=GATEWAY_URL).headless()


@pytest.fixture
def make_orchestrator(headless_config, gateway, http_handler):
    """Factory for orchestrators bound to the mock transports."""
    created: list[GraphOrchestrator] = []

    def factory(**overrides) -> GraphOrchestrator:
        config = headless_config.model_copy(update=overrides)
        orchestrator = GraphOrchestrator.create(
            config,
            http_transport=httpx.MockTransport(http_handler),
            gateway_transport=httpx.MockTransport(gateway),
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.close()


@pytest.fixture
def orchestrator(make_orchestrator) -> GraphOrchestrator:
    return make_orchestrator()


@pytest.fixture
def users_db() -> DatabaseConnection:
    return DatabaseConnection(
        name="users-db", engine="mongodb", connection_string="mongodb://localhost/app"
    )


# =============================================================================
# Sandbox Fixtures
# =============================================================================


@pytest.fixture
def run_log() -> RunLog:
    return RunLog()


@pytest.fixture
def variables(run_log) -> VariableStore:
    return VariableStore(run_log)


@pytest.fixture
def registry(gateway, run_log) -> ConnectionRegistry:
    client = GatewayClient(GATEWAY_URL, transport=httpx.MockTransport(gateway))
    yield ConnectionRegistry(client, run_log)
    client.close()


@pytest.fixture
def make_caps(run_log, variables, registry, http_handler):
    """Factory for script capability sets."""
    http = HttpClient(transport=httpx.MockTransport(http_handler))

    def factory(input: Any = None, loop: dict | None = None, tag: str = "node") -> Capabilities:
        return Capabilities(
            input=input,
            log=NodeLogger(run_log, tag),
            http=http,
            vars=VariableHandle(variables),
            db=DatabaseProxy(registry),
            loop=loop if loop is not None else {},
        )

    yield factory
    http.close()
