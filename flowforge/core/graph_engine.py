"""Workflow graph execution engine.

Runs one in-memory graph per call to ``run_workflow``:
- Start nodes (in-degree zero) seed a FIFO queue
- Nodes execute strictly one at a time, each through the script sandbox
- CONDITION nodes release only the children behind the selected handle
- LOOP nodes re-enter the front of the queue until they stop continuing
- Other children wait until every parent has a result (join barrier)
- A failing node marks the run failed but the queue keeps draining

Each run keeps its own status/result view in RunState and publishes
snapshots to the shared StatusBoard. Node records are never mutated.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from flowforge.core.config import EngineConfig
from flowforge.core.database import ConnectionRegistry, DatabaseProxy, GatewayClient
from flowforge.core.graph_schema import (
    GraphIndex,
    NodeKind,
    NodeStatus,
    StructuralError,
    WorkflowEdge,
    WorkflowNode,
)
from flowforge.core.state import (
    SYSTEM,
    ExecutionHistory,
    ExecutionRecord,
    NodeSnapshot,
    RunLog,
    StatusBoard,
    format_value,
)
from flowforge.core.steps import Branched, Completed, Continuing, StepOutcome, step
from flowforge.core.variables import VariableStore
from flowforge.sandbox.capabilities import Capabilities, HttpClient, NodeLogger, VariableHandle
from flowforge.sandbox.executor import ScriptError, ScriptSandbox

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class LoopLimitExceeded(ScriptError):
    """Loop node kept continuing past ``max_loop_iterations``."""

    pass


@dataclass
class RunState:
    """Isolated state of one run."""

    run_id: str
    trigger: str = "manual"
    executed: dict[str, Any] = field(default_factory=dict)
    loop_state: dict[str, dict[str, Any]] = field(default_factory=dict)
    queue: deque[str] = field(default_factory=deque)
    status: RunStatus = RunStatus.SUCCESS

    node_status: dict[str, NodeStatus] = field(default_factory=dict)
    node_errors: dict[str, str] = field(default_factory=dict)
    # Sandbox invocations per node (loop nodes count every iteration)
    invocations: dict[str, int] = field(default_factory=dict)
    loop_iterations: dict[str, int] = field(default_factory=dict)
    edge_payloads: dict[str, Any] = field(default_factory=dict)

    cancelled: bool = False
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    duration_ms: int = 0

    def fail(self) -> None:
        # Never upgraded back to SUCCESS
        self.status = RunStatus.FAILED

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS


class GraphOrchestrator:
    """
    Executes workflow graphs against shared session resources.

    Shared across runs: variable store, database connections, run log,
    status board and execution history. Everything else lives in RunState.
    """

    def __init__(
        self,
        config: EngineConfig,
        variables: VariableStore,
        connections: ConnectionRegistry,
        run_log: RunLog,
        http: HttpClient,
        status_board: StatusBoard | None = None,
        history: ExecutionHistory | None = None,
        sandbox: ScriptSandbox | None = None,
    ):
        self.config = config
        self.variables = variables
        self.connections = connections
        self.db = DatabaseProxy(connections)
        self.log = run_log
        self.http = http
        self.status_board = status_board or StatusBoard()
        self.history = history or ExecutionHistory()
        self.sandbox = sandbox or ScriptSandbox(timeout=config.script_timeout)
        self._active: dict[str, GraphIndex] = {}

    @classmethod
    def create(
        cls,
        config: EngineConfig | None = None,
        http_transport=None,
        gateway_transport=None,
    ) -> GraphOrchestrator:
        """Build an orchestrator with fresh session resources."""
        config = config or EngineConfig()
        run_log = RunLog()
        gateway = GatewayClient(
            config.gateway_url, timeout=config.http_timeout, transport=gateway_transport
        )
        return cls(
            config=config,
            variables=VariableStore(run_log),
            connections=ConnectionRegistry(gateway, run_log),
            run_log=run_log,
            http=HttpClient(timeout=config.http_timeout, transport=http_transport),
        )

    def close(self) -> None:
        self.http.close()
        self.connections.gateway.close()

    # ========== Public API ==========

    def active_runs(self) -> list[str]:
        return list(self._active)

    def discard_node(self, node_id: str) -> None:
        """Drop a node deleted by the editor from all in-flight runs.

        Queued occurrences are skipped silently when dequeued.
        """
        for index in self._active.values():
            index.nodes.pop(node_id, None)

    async def run_workflow(
        self,
        nodes: Iterable[WorkflowNode | dict],
        edges: Iterable[WorkflowEdge | dict],
        seed_payload: Any = None,
        cancel: asyncio.Event | None = None,
        trigger: str = "manual",
        run_id: str | None = None,
    ) -> RunState:
        """
        Execute a workflow graph to completion.

        Args:
            nodes: Node records (models or persisted dicts)
            edges: Edge records (models or persisted dicts)
            seed_payload: Input for the very first node executed (webhooks)
            cancel: Checked before every dequeue; set it to stop the run
            trigger: Label recorded in execution history
            run_id: Id for the run (generated when omitted)

        Returns:
            The run's final RunState
        """
        node_list = [n if isinstance(n, WorkflowNode) else WorkflowNode.model_validate(n) for n in nodes]
        edge_list = [e if isinstance(e, WorkflowEdge) else WorkflowEdge.model_validate(e) for e in edges]

        state = RunState(run_id=run_id or str(uuid.uuid4()), trigger=trigger)
        started = time.monotonic()

        if not node_list:
            state.error = "No nodes to execute"
            state.fail()
            self.log.error(SYSTEM, state.error, run_id=state.run_id)
            return state

        self.log.info(SYSTEM, "~~~ EXECUTION START ~~~", run_id=state.run_id)

        try:
            index = GraphIndex.build(node_list, edge_list)
        except StructuralError as e:
            state.error = str(e)
            state.fail()
            state.finished_at = datetime.now(UTC)
            self.log.error(SYSTEM, f"ERROR: {e}", run_id=state.run_id)
            return state

        self._active[state.run_id] = index
        try:
            for node_id in index.nodes:
                state.node_status[node_id] = NodeStatus.READY
            state.queue.extend(index.start_nodes())
            await self._drain(state, index, seed_payload, cancel)
        finally:
            self._active.pop(state.run_id, None)

        state.finished_at = datetime.now(UTC)
        state.duration_ms = int((time.monotonic() - started) * 1000)
        self.log.info(
            SYSTEM,
            f"▶ EXECUTION COMPLETE ({state.status.value}, {state.duration_ms}ms)",
            run_id=state.run_id,
        )
        self.history.append(
            ExecutionRecord(
                id=f"exec_{uuid.uuid4().hex[:12]}",
                run_id=state.run_id,
                status=state.status.value,
                duration_ms=state.duration_ms,
                trigger=trigger,
            )
        )
        return state

    # ========== Main Loop ==========

    async def _drain(
        self,
        state: RunState,
        index: GraphIndex,
        seed_payload: Any,
        cancel: asyncio.Event | None,
    ) -> None:
        while state.queue:
            if cancel is not None and cancel.is_set():
                state.cancelled = True
                state.fail()
                self.log.error(SYSTEM, "Execution cancelled", run_id=state.run_id)
                return

            node_id = state.queue.popleft()
            node = index.nodes.get(node_id)
            if node is None:
                continue

            input_data = self._resolve_input(state, index, node_id, seed_payload)
            self._set_status(state, node, NodeStatus.RUNNING)
            await self._pace(self.config.pacing_delay)

            self.log.info(SYSTEM, f"▶ Executing {node_id}...", run_id=state.run_id)
            try:
                outcome = await self._step(state, node, input_data)
            except ScriptError as e:
                self._fail_node(state, node, str(e))
                continue

            if isinstance(outcome, Continuing):
                await self._continue_loop(state, node, outcome)
            elif isinstance(outcome, Branched):
                self._complete_branch(state, index, node, outcome)
            else:
                self._complete(state, index, node, outcome)

    def _resolve_input(
        self, state: RunState, index: GraphIndex, node_id: str, seed_payload: Any
    ) -> Any:
        """Input is the seed for the first node run, else the first parent's result.

        Join nodes only see their first parent's output.
        """
        if seed_payload is not None and not state.executed:
            return seed_payload
        parents = index.parents(node_id)
        if parents:
            return state.executed.get(parents[0])
        return None

    async def _step(self, state: RunState, node: WorkflowNode, input_data: Any) -> StepOutcome:
        if node.kind == NodeKind.LOOP:
            loop = state.loop_state.setdefault(node.id, {})
        else:
            loop = {}

        caps = Capabilities(
            input=input_data,
            log=NodeLogger(self.log, node.label, run_id=state.run_id),
            http=self.http,
            vars=VariableHandle(self.variables),
            db=self.db,
            loop=loop,
        )
        state.invocations[node.id] = state.invocations.get(node.id, 0) + 1
        return await step(self.sandbox, node, caps)

    # ========== Outcomes ==========

    async def _continue_loop(self, state: RunState, node: WorkflowNode, outcome: Continuing) -> None:
        iterations = state.loop_iterations.get(node.id, 0) + 1
        state.loop_iterations[node.id] = iterations

        cap = self.config.max_loop_iterations
        if cap is not None and iterations >= cap:
            self._fail_node(
                state, node, str(LoopLimitExceeded(f"{node.id} exceeded {cap} loop iterations"))
            )
            return

        state.loop_state[node.id] = outcome.loop_state
        iteration = outcome.loop_state.get("iteration", iterations)
        self.log.info(
            SYSTEM, f"↻ {node.id} looping (iteration {iteration})", run_id=state.run_id
        )
        self._publish(state, node, loop_count=iterations)

        await self._pace(self.config.loop_requeue_delay)
        if node.id not in state.queue:
            state.queue.appendleft(node.id)

    def _complete_branch(
        self, state: RunState, index: GraphIndex, node: WorkflowNode, outcome: Branched
    ) -> None:
        state.executed[node.id] = outcome.result
        self._set_status(state, node, NodeStatus.COMPLETE, result=outcome.result)
        self.log.info(
            SYSTEM, f"✓ {node.id} → {outcome.handle.upper()} path", run_id=state.run_id
        )

        branch_key = f"{node.id}:{outcome.handle}"
        for edge in index.outgoing.get(node.id, []):
            if edge.adjacency_key == branch_key:
                state.edge_payloads[edge.id] = outcome.result

        # Branch children skip the join barrier
        for child_id in index.children(branch_key):
            self._enqueue(state, child_id)

    def _complete(
        self, state: RunState, index: GraphIndex, node: WorkflowNode, outcome: Completed
    ) -> None:
        state.executed[node.id] = outcome.result
        state.loop_state.pop(node.id, None)
        self._set_status(state, node, NodeStatus.COMPLETE, result=outcome.result)
        self.log.info(
            SYSTEM,
            f"▶ ✓ {node.id} completed → {format_value(outcome.result)}",
            run_id=state.run_id,
        )

        for edge in index.outgoing.get(node.id, []):
            if edge.source_handle is None:
                state.edge_payloads[edge.id] = outcome.result

        for child_id in index.children(node.id):
            if all(parent in state.executed for parent in index.parents(child_id)):
                self._enqueue(state, child_id)

    def _fail_node(self, state: RunState, node: WorkflowNode, message: str) -> None:
        state.fail()
        state.loop_state.pop(node.id, None)
        state.node_errors[node.id] = message
        self._set_status(state, node, NodeStatus.ERROR, error=message)
        self.log.error(node.id, f"▶ ✗ {message}", run_id=state.run_id)
        self.log.error(SYSTEM, f"▶ ✗ {node.id} failed", run_id=state.run_id)

    # ========== Helpers ==========

    def _enqueue(self, state: RunState, node_id: str) -> None:
        """Idempotent enqueue; nodes that already produced a result stay done."""
        if node_id in state.queue or node_id in state.executed:
            return
        state.queue.append(node_id)

    def _set_status(
        self,
        state: RunState,
        node: WorkflowNode,
        status: NodeStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        state.node_status[node.id] = status
        self._publish(state, node, result=result, error=error)

    def _publish(
        self,
        state: RunState,
        node: WorkflowNode,
        result: Any = None,
        error: str | None = None,
        loop_count: int | None = None,
    ) -> None:
        self.status_board.publish(
            NodeSnapshot(
                run_id=state.run_id,
                node_id=node.id,
                status=state.node_status.get(node.id, NodeStatus.READY),
                last_executed_at=datetime.now(UTC),
                last_result=result,
                loop_count=loop_count,
                error=error,
            )
        )

    @staticmethod
    async def _pace(delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
