"""FastAPI backend for Flowforge Studio.

This module provides:
- Workflow load/validate and execution endpoints
- Webhook CRUD and delivery (``POST /api/webhooks/{id}/trigger``)
- Interval schedules, variables, database connections
- Node status, run log and execution history views

State is held in a single in-memory Studio instance per process; there is
no persistence across restarts.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from flowforge import __version__
from flowforge.core.config import EngineConfig
from flowforge.core.database import DatabaseConnection
from flowforge.core.graph_engine import GraphOrchestrator, RunState
from flowforge.core.graph_schema import WorkflowDocument
from flowforge.core.triggers import ScheduleRunner, WebhookRegistry

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Flowforge Studio API",
    description="API for visual workflow execution",
    version=__version__,
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Studio:
    """Process-wide session: one orchestrator, one loaded workflow."""

    def __init__(
        self,
        config: EngineConfig,
        workflow: WorkflowDocument | None = None,
        max_runs: int = 100,
    ):
        self.orchestrator = GraphOrchestrator.create(config)
        self.workflow = workflow or WorkflowDocument()
        self.webhooks = WebhookRegistry(self.orchestrator, lambda: self.workflow)
        self.schedules = ScheduleRunner(self.orchestrator, lambda: self.workflow)
        self.runs: OrderedDict[str, RunState] = OrderedDict()
        self.max_runs = max_runs
        self.cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: set[asyncio.Task] = set()

    async def execute(self, payload: Any = None, run_id: str | None = None) -> RunState:
        run_id = run_id or str(uuid.uuid4())
        cancel = self.cancel_events.setdefault(run_id, asyncio.Event())
        try:
            state = await self.orchestrator.run_workflow(
                self.workflow.nodes,
                self.workflow.edges,
                seed_payload=payload,
                cancel=cancel,
                run_id=run_id,
            )
        finally:
            self.cancel_events.pop(run_id, None)
        self.remember(state)
        return state

    def remember(self, state: RunState) -> None:
        """Keep a finished run for lookup, evicting the oldest past ``max_runs``."""
        self.runs[state.run_id] = state
        self.runs.move_to_end(state.run_id)
        while len(self.runs) > self.max_runs:
            self.runs.popitem(last=False)

    def execute_in_background(self, payload: Any = None) -> str:
        run_id = str(uuid.uuid4())
        self.cancel_events[run_id] = asyncio.Event()
        task = asyncio.create_task(self.execute(payload, run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run_id


_studio: Studio | None = None


def configure(config: EngineConfig | None = None, workflow: WorkflowDocument | None = None) -> Studio:
    """Replace the process-wide Studio (used by ``flowforge serve`` and tests)."""
    global _studio
    if _studio is not None:
        _studio.orchestrator.close()
    _studio = Studio(config or EngineConfig.load(), workflow)
    return _studio


def get_studio() -> Studio:
    """Get or create the Studio instance."""
    if _studio is None:
        return configure()
    return _studio


def _run_summary(state: RunState) -> dict[str, Any]:
    return jsonable_encoder(
        {
            "run_id": state.run_id,
            "status": state.status.value,
            "trigger": state.trigger,
            "duration_ms": state.duration_ms,
            "cancelled": state.cancelled,
            "error": state.error,
            "node_status": {k: v.value for k, v in state.node_status.items()},
            "node_errors": state.node_errors,
            "results": state.executed,
        }
    )


# ========== API Models ==========


class ExecutionRequest(BaseModel):
    """Request to execute the loaded workflow"""

    payload: Any = None
    wait: bool = True


class WebhookCreateRequest(BaseModel):
    name: str = Field(min_length=1)


class ScheduleCreateRequest(BaseModel):
    interval_seconds: float = Field(gt=0)


class VariableSetRequest(BaseModel):
    value: Any = None


# ========== Workflow Endpoints ==========


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


@app.get("/api/workflow")
def get_workflow() -> dict[str, Any]:
    """Return the loaded workflow."""
    return jsonable_encoder(get_studio().workflow)


@app.put("/api/workflow")
def put_workflow(document: WorkflowDocument) -> dict[str, Any]:
    """Replace the loaded workflow after structural validation."""
    errors = document.validate_graph()
    if errors:
        raise HTTPException(status_code=400, detail={"validation_errors": errors})

    studio = get_studio()
    removed = {n.id for n in studio.workflow.nodes} - {n.id for n in document.nodes}
    for node_id in removed:
        studio.orchestrator.discard_node(node_id)
    studio.workflow = document
    return {"status": "loaded", "nodes": len(document.nodes), "edges": len(document.edges)}


# ========== Execution Endpoints ==========


@app.post("/api/execute")
async def execute_workflow(request: ExecutionRequest | None = None) -> dict[str, Any]:
    """Run the loaded workflow, waiting for completion unless ``wait`` is false."""
    request = request or ExecutionRequest()
    studio = get_studio()
    if not request.wait:
        run_id = studio.execute_in_background(request.payload)
        return {"run_id": run_id, "status": "running"}

    state = await studio.execute(request.payload)
    return _run_summary(state)


@app.get("/api/executions")
def list_executions() -> list[dict[str, Any]]:
    return jsonable_encoder(get_studio().orchestrator.history.records())


@app.get("/api/executions/{run_id}")
def get_execution(run_id: str) -> dict[str, Any]:
    studio = get_studio()
    if run_id in studio.runs:
        return _run_summary(studio.runs[run_id])
    if run_id in studio.cancel_events:
        return {"run_id": run_id, "status": "running"}
    raise HTTPException(status_code=404, detail="Execution not found")


@app.post("/api/executions/{run_id}/cancel")
async def cancel_execution(run_id: str) -> dict[str, str]:
    """Signal a running execution to stop at its next dequeue."""
    event = get_studio().cancel_events.get(run_id)
    if event is None:
        raise HTTPException(status_code=404, detail="No running execution with that ID")
    event.set()
    return {"status": "cancelling", "run_id": run_id}


@app.get("/api/nodes/status")
def node_status() -> dict[str, Any]:
    snapshots = get_studio().orchestrator.status_board.all()
    return jsonable_encoder(snapshots)


@app.get("/api/logs")
def get_logs(run_id: str | None = None) -> list[dict[str, Any]]:
    return jsonable_encoder(get_studio().orchestrator.log.entries(run_id))


@app.delete("/api/logs")
def clear_logs() -> dict[str, str]:
    get_studio().orchestrator.log.clear()
    return {"status": "cleared"}


# ========== Webhook Endpoints ==========


@app.get("/api/webhooks")
def list_webhooks() -> list[dict[str, Any]]:
    return jsonable_encoder(get_studio().webhooks.webhooks())


@app.post("/api/webhooks", status_code=201)
def create_webhook(request: WebhookCreateRequest) -> dict[str, Any]:
    return jsonable_encoder(get_studio().webhooks.add(request.name))


@app.get("/api/webhooks/events")
def webhook_events() -> list[dict[str, Any]]:
    return jsonable_encoder(get_studio().webhooks.events())


@app.delete("/api/webhooks/{webhook_id}")
def delete_webhook(webhook_id: str) -> dict[str, str]:
    if get_studio().webhooks.remove(webhook_id) is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return {"status": "deleted", "id": webhook_id}


@app.post("/api/webhooks/{webhook_id}/toggle")
def toggle_webhook(webhook_id: str) -> dict[str, Any]:
    webhook = get_studio().webhooks.toggle(webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return jsonable_encoder(webhook)


@app.post("/api/webhooks/{webhook_id}/trigger")
async def trigger_webhook(webhook_id: str, payload: Any = Body(default=None)) -> dict[str, Any]:
    """Deliver a payload; the run is seeded with it."""
    studio = get_studio()
    webhook = studio.webhooks.get(webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    if not webhook.active:
        raise HTTPException(status_code=409, detail="Webhook is inactive")

    state = await studio.webhooks.trigger(webhook_id, payload)
    studio.remember(state)
    return _run_summary(state)


# ========== Schedule Endpoints ==========


@app.get("/api/schedules")
def list_schedules() -> dict[str, Any]:
    runner = get_studio().schedules
    return jsonable_encoder({"running": runner.running, "schedules": runner.schedules()})


@app.post("/api/schedules", status_code=201)
async def create_schedule(request: ScheduleCreateRequest) -> dict[str, Any]:
    return jsonable_encoder(get_studio().schedules.add(request.interval_seconds))


@app.delete("/api/schedules/{schedule_id}")
async def delete_schedule(schedule_id: str) -> dict[str, str]:
    if get_studio().schedules.remove(schedule_id) is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"status": "deleted", "id": schedule_id}


@app.post("/api/schedules/start")
async def start_schedules() -> dict[str, bool]:
    runner = get_studio().schedules
    runner.start()
    return {"running": runner.running}


@app.post("/api/schedules/stop")
async def stop_schedules() -> dict[str, bool]:
    runner = get_studio().schedules
    await runner.stop()
    return {"running": runner.running}


# ========== Variable Endpoints ==========


@app.get("/api/variables")
def list_variables() -> dict[str, Any]:
    return get_studio().orchestrator.variables.all()


@app.get("/api/variables/{key}")
def get_variable(key: str) -> dict[str, Any]:
    variables = get_studio().orchestrator.variables
    if not variables.has(key):
        raise HTTPException(status_code=404, detail="Variable not found")
    return {"key": key, "value": variables.get(key)}


@app.put("/api/variables/{key}")
def set_variable(key: str, request: VariableSetRequest) -> dict[str, Any]:
    try:
        get_studio().orchestrator.variables.set(key, request.value)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"key": key, "value": request.value}


@app.delete("/api/variables/{key}")
def delete_variable(key: str) -> dict[str, str]:
    if not get_studio().orchestrator.variables.delete(key):
        raise HTTPException(status_code=404, detail="Variable not found")
    return {"status": "deleted", "key": key}


@app.delete("/api/variables")
def clear_variables() -> dict[str, str]:
    get_studio().orchestrator.variables.clear()
    return {"status": "cleared"}


# ========== Database Connection Endpoints ==========


@app.get("/api/connections")
def list_connections() -> list[dict[str, Any]]:
    return get_studio().orchestrator.db.connections


@app.post("/api/connections", status_code=201)
def add_connection(connection: DatabaseConnection) -> dict[str, Any]:
    try:
        added = get_studio().orchestrator.connections.add(connection)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return jsonable_encoder(added, exclude={"password", "connection_string"})


@app.delete("/api/connections/{name}")
def remove_connection(name: str) -> dict[str, str]:
    if get_studio().orchestrator.connections.remove(name) is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"status": "deleted", "name": name}


@app.post("/api/connections/{name}/test")
async def test_connection(name: str) -> dict[str, Any]:
    registry = get_studio().orchestrator.connections
    if registry.get(name) is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    ok = await registry.test(name)
    connection = registry.get(name)
    return {"name": name, "connected": ok, "status": connection.status.value, "error": connection.error}
