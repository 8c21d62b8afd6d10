"""Tests for the workflow execution engine.

Tests cover:
- End-to-end runs: linear, branching, looping, database failure
- Join barrier and first-parent input
- Failure propagation (run fails, queue keeps draining)
- Structural errors, seed payloads, cancellation, loop caps
- Per-run isolation and published status snapshots
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import edge, node
from flowforge.core.graph_engine import RunStatus
from flowforge.core.graph_schema import NodeStatus
from flowforge.core.state import SYSTEM

LOOP_THREE_TIMES = """
loop["i"] = loop.get("i", 0) + 1
return {"continue": loop["i"] < 3, "loopData": loop, "data": "done"}
"""


def run(orchestrator, nodes, edges, **kwargs):
    return asyncio.run(orchestrator.run_workflow(nodes, edges, **kwargs))


# =============================================================================
# End-to-End Scenarios
# =============================================================================


class TestScenarios:
    """Reference workflows executed end to end."""

    def test_linear_chain(self, orchestrator):
        """A returns 5, B doubles its input."""
        state = run(
            orchestrator,
            [node("A", "return 5"), node("B", "return input * 2")],
            [edge("A", "B")],
        )

        assert state.status == RunStatus.SUCCESS
        assert state.executed == {"A": 5, "B": 10}
        assert state.node_status == {"A": NodeStatus.COMPLETE, "B": NodeStatus.COMPLETE}
        assert state.edge_payloads == {"e-A-B": 5}
        assert len(orchestrator.history) == 1
        assert orchestrator.history.latest().status == "success"

    def test_condition_follows_true_branch_only(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("S", "return 5"),
                node("C", "return input > 3", "condition"),
                node("T", 'return "big"'),
                node("F", 'return "small"'),
            ],
            [edge("S", "C"), edge("C", "T", "true"), edge("C", "F", "false")],
        )

        assert state.succeeded
        assert state.executed == {"S": 5, "C": True, "T": "big"}
        assert state.node_status["F"] == NodeStatus.READY
        assert state.edge_payloads["e-C-T-true"] is True
        assert "e-C-F-false" not in state.edge_payloads
        messages = [e.message for e in orchestrator.log.entries(state.run_id)]
        assert "✓ C → TRUE path" in messages

    def test_condition_false_branch(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("C", "return input", "condition"),
                node("T", "return 1"),
                node("F", "return 0"),
            ],
            [edge("C", "T", "true"), edge("C", "F", "false")],
        )
        assert set(state.executed) == {"C", "F"}

    def test_loop_runs_until_it_stops(self, orchestrator):
        state = run(
            orchestrator,
            [node("L", LOOP_THREE_TIMES, "loop"), node("D", "return input")],
            [edge("L", "D")],
        )

        assert state.succeeded
        assert state.invocations == {"L": 3, "D": 1}
        assert state.loop_iterations == {"L": 2}
        assert state.node_status["L"] == NodeStatus.COMPLETE
        assert state.executed == {"L": "done", "D": "done"}
        assert state.loop_state == {}
        messages = [e.message for e in orchestrator.log.entries(state.run_id)]
        assert "↻ L looping (iteration 2)" in messages

    def test_unknown_database_connection(self, orchestrator, gateway):
        state = run(
            orchestrator,
            [node("Q", 'return db.find("missing", "users")', "database"), node("X", "return 1")],
            [],
        )

        assert state.status == RunStatus.FAILED
        assert state.node_status["Q"] == NodeStatus.ERROR
        assert "connection not found" in state.node_errors["Q"]
        assert state.executed == {"X": 1}
        assert gateway.requests == []

    def test_database_node_uses_gateway(self, orchestrator, gateway, users_db):
        orchestrator.connections.add(users_db)
        gateway.response = {"success": True, "result": [{"id": 1}]}

        state = run(orchestrator, [node("Q", 'return db.find("users-db", "users")')], [])

        assert state.executed == {"Q": [{"id": 1}]}
        assert gateway.requests[0]["operation"] == "find"

    def test_http_node(self, orchestrator):
        state = run(
            orchestrator, [node("H", 'return http.post("https://api.test/hooks")["data"]', "http")], []
        )
        assert state.executed["H"] == {"method": "POST", "path": "/hooks"}


# =============================================================================
# Scheduling Rules
# =============================================================================


class TestScheduling:
    """Join barrier, input resolution and failure handling."""

    def test_join_waits_for_all_parents(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("A", "return 1"),
                node("B", "return 2"),
                node("J", "return input"),
            ],
            [edge("A", "J"), edge("B", "J")],
        )

        assert state.invocations["J"] == 1
        # Join input is the first incoming edge's source result
        assert state.executed["J"] == 1

    def test_join_is_enqueued_only_after_its_last_parent(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("A", "return 1"),
                node("X", "return 2"),
                node("B", "return input"),
                node("J", "return input"),
            ],
            [edge("A", "J"), edge("X", "B"), edge("B", "J")],
        )

        assert list(state.executed) == ["A", "X", "B", "J"]
        assert state.invocations["J"] == 1

    def test_join_never_runs_when_a_parent_fails(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("A", "return 1"),
                node("B", 'raise ValueError("nope")'),
                node("J", "return input"),
            ],
            [edge("A", "J"), edge("B", "J")],
        )

        assert state.status == RunStatus.FAILED
        assert "J" not in state.executed
        assert state.node_status["J"] == NodeStatus.READY

    def test_failure_does_not_stop_other_branches(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("A", 'raise RuntimeError("boom")'),
                node("A2", "return 1"),
                node("B", "return 2"),
                node("B2", "return input + 1"),
            ],
            [edge("A", "A2"), edge("B", "B2")],
        )

        assert state.status == RunStatus.FAILED
        assert state.executed == {"B": 2, "B2": 3}
        assert state.node_errors == {"A": "boom"}
        error_entries = [e for e in orchestrator.log.entries(state.run_id) if e.node_id == "A"]
        assert error_entries[0].message == "▶ ✗ boom"

    def test_start_nodes_run_in_declaration_order(self, orchestrator):
        state = run(
            orchestrator,
            [node("Z", "return 1"), node("Y", "return 2"), node("X", "return 3")],
            [],
        )
        assert list(state.executed) == ["Z", "Y", "X"]

    def test_variables_are_shared_between_nodes(self, orchestrator):
        state = run(
            orchestrator,
            [node("W", 'vars.set("token", "abc")'), node("R", 'return vars.get("token")')],
            [edge("W", "R")],
        )
        assert state.executed["R"] == "abc"
        assert orchestrator.variables.get("token") == "abc"

    def test_branch_child_with_plain_parent_runs_once(self, orchestrator):
        state = run(
            orchestrator,
            [
                node("C", "return True", "condition"),
                node("P", "return 1"),
                node("T", "return input"),
            ],
            [edge("C", "T", "true"), edge("P", "T")],
        )
        assert state.invocations["T"] == 1


# =============================================================================
# Run Lifecycle
# =============================================================================


class TestRunLifecycle:
    """Structural errors, seeds, cancellation and caps."""

    def test_dangling_edge_aborts_before_execution(self, orchestrator):
        state = run(orchestrator, [node("A", "return 1")], [edge("A", "ghost")])

        assert state.status == RunStatus.FAILED
        assert "ghost" in state.error
        assert state.executed == {}
        assert len(orchestrator.history) == 0

    def test_cycle_without_start_aborts(self, orchestrator):
        state = run(
            orchestrator,
            [node("A", "return 1"), node("B", "return 2")],
            [edge("A", "B"), edge("B", "A")],
        )
        assert state.error == "No starting nodes found (circular dependency?)"
        assert state.invocations == {}

    def test_empty_graph(self, orchestrator):
        state = run(orchestrator, [], [])
        assert state.status == RunStatus.FAILED
        assert state.error == "No nodes to execute"

    def test_seed_payload_feeds_first_node_only(self, orchestrator):
        state = run(
            orchestrator,
            [node("W", "return input", "webhook"), node("S", "return input"), node("N", "return input")],
            [edge("W", "N")],
            seed_payload={"event": "push"},
            trigger="webhook",
        )

        assert state.executed["W"] == {"event": "push"}
        assert state.executed["S"] is None
        assert state.executed["N"] == {"event": "push"}
        assert orchestrator.history.latest().trigger == "webhook"

    def test_accepts_persisted_dicts(self, orchestrator):
        state = run(
            orchestrator,
            [
                {"id": "a", "data": {"label": "A", "code": "return 2", "nodeType": "BASIC"}},
                {"id": "b", "data": {"label": "B", "code": "return input + 1"}},
            ],
            [{"id": "e1", "source": "a", "target": "b", "sourceHandle": None}],
        )
        assert state.executed == {"a": 2, "b": 3}

    def test_cancel_before_start(self, orchestrator):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            return await orchestrator.run_workflow([node("A", "return 1")], [], cancel=cancel)

        state = asyncio.run(scenario())

        assert state.cancelled
        assert state.status == RunStatus.FAILED
        assert state.executed == {}
        assert orchestrator.history.latest().status == "failed"

    def test_cancel_mid_run(self, orchestrator):
        async def scenario():
            cancel = asyncio.Event()

            def on_snapshot(snapshot):
                if snapshot.node_id == "A" and snapshot.status == NodeStatus.COMPLETE:
                    cancel.set()

            orchestrator.status_board.subscribe(on_snapshot)
            return await orchestrator.run_workflow(
                [node("A", "return 1"), node("B", "return 2")], [edge("A", "B")], cancel=cancel
            )

        state = asyncio.run(scenario())

        assert state.cancelled
        assert state.executed == {"A": 1}

    def test_loop_cap_fails_runaway_loop(self, make_orchestrator):
        orchestrator = make_orchestrator(max_loop_iterations=3)
        state = run(
            orchestrator,
            [node("L", 'return {"continue": True}', "loop"), node("D", "return 1")],
            [edge("L", "D")],
        )

        assert state.status == RunStatus.FAILED
        assert state.invocations["L"] == 3
        assert "exceeded 3 loop iterations" in state.node_errors["L"]
        assert "D" not in state.executed
        assert state.loop_state == {}

    def test_loop_within_cap_succeeds(self, make_orchestrator):
        orchestrator = make_orchestrator(max_loop_iterations=3)
        state = run(orchestrator, [node("L", LOOP_THREE_TIMES, "loop")], [])
        assert state.succeeded

    def test_runaway_script_times_out_without_blocking_shutdown(self, make_orchestrator):
        """A timed-out script's thread must not keep asyncio.run from returning."""
        orchestrator = make_orchestrator(script_timeout=0.2)
        spin = 'while not vars.get("release"):\n    pass'
        try:
            state = run(orchestrator, [node("S", spin), node("OK", "return 1")], [])
        finally:
            orchestrator.variables.set("release", True)

        assert state.node_status["S"] == NodeStatus.ERROR
        assert state.node_errors["S"] == "Script timed out after 0.2s"
        assert state.executed == {"OK": 1}

    def test_terminal_log_entries(self, orchestrator):
        state = run(orchestrator, [node("A", "return 1")], [])

        messages = [e.message for e in orchestrator.log.entries(state.run_id) if e.node_id == SYSTEM]
        assert messages[0] == "~~~ EXECUTION START ~~~"
        assert messages[-1].startswith("▶ EXECUTION COMPLETE (success,")


# =============================================================================
# Isolation and Status
# =============================================================================


class TestIsolation:
    """Runs never mutate node records and keep separate views."""

    def test_node_records_are_not_mutated(self, orchestrator):
        nodes = [node("A", "return 1")]
        run(orchestrator, nodes, [])
        assert nodes[0].status == NodeStatus.READY
        assert nodes[0].last_result is None

    def test_status_board_receives_snapshots(self, orchestrator):
        seen = []
        orchestrator.status_board.subscribe(lambda s: seen.append((s.node_id, s.status)))

        state = run(orchestrator, [node("A", "return 1")], [])

        assert seen == [("A", NodeStatus.RUNNING), ("A", NodeStatus.COMPLETE)]
        snapshot = orchestrator.status_board.get("A")
        assert snapshot.run_id == state.run_id
        assert snapshot.last_result == 1

    def test_concurrent_runs_are_isolated(self, orchestrator):
        nodes = [node("A", "return input"), node("B", "return input")]
        edges = [edge("A", "B")]

        async def scenario():
            return await asyncio.gather(
                orchestrator.run_workflow(nodes, edges, seed_payload="first"),
                orchestrator.run_workflow(nodes, edges, seed_payload="second"),
            )

        first, second = asyncio.run(scenario())

        assert first.executed == {"A": "first", "B": "first"}
        assert second.executed == {"A": "second", "B": "second"}
        assert first.run_id != second.run_id
        assert len(orchestrator.history) == 2

    def test_discarded_node_is_skipped(self, orchestrator):
        def on_snapshot(snapshot):
            if snapshot.node_id == "A" and snapshot.status == NodeStatus.COMPLETE:
                orchestrator.discard_node("B")

        orchestrator.status_board.subscribe(on_snapshot)
        state = run(
            orchestrator, [node("A", "return 1"), node("B", "return 2")], [edge("A", "B")]
        )

        assert state.succeeded
        assert state.executed == {"A": 1}
        assert orchestrator.active_runs() == []


@pytest.mark.parametrize("delay", [0.0, 0.01])
def test_pacing_delay_is_applied(make_orchestrator, mocker, delay):
    orchestrator = make_orchestrator(pacing_delay=delay)
    sleep = mocker.patch("flowforge.core.graph_engine.asyncio.sleep", new=mocker.AsyncMock())

    run(orchestrator, [node("A", "return 1"), node("B", "return 2")], [])

    if delay:
        assert sleep.await_count == 2
        sleep.assert_awaited_with(delay)
    else:
        sleep.assert_not_awaited()
