"""Node-kind dispatch.

Each node kind maps to a step function that runs the node's script and
interprets its result as a StepOutcome:

- Completed(result): record the result and release children (join barrier)
- Branched(result, handle): release only the children behind ``handle``
- Continuing(loop_state): re-enter the node later; children stay blocked

The scheduler only ever looks at the outcome, never at the node kind.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowforge.core.graph_schema import NodeKind, WorkflowNode
from flowforge.sandbox.capabilities import Capabilities
from flowforge.sandbox.executor import ScriptError, ScriptSandbox


class NodeExecutionError(ScriptError):
    """Node script failed; carries the sandbox's message."""

    pass


@dataclass
class Completed:
    result: Any


@dataclass
class Branched:
    result: Any
    handle: str


@dataclass
class Continuing:
    loop_state: dict[str, Any] = field(default_factory=dict)


StepOutcome = Completed | Branched | Continuing

StepFunction = Callable[[ScriptSandbox, WorkflowNode, Capabilities], Awaitable[StepOutcome]]


async def _run_script(sandbox: ScriptSandbox, node: WorkflowNode, caps: Capabilities) -> Any:
    outcome = await sandbox.execute(node.script, caps)
    if not outcome.ok:
        raise NodeExecutionError(outcome.error)
    return outcome.result


async def basic_step(sandbox: ScriptSandbox, node: WorkflowNode, caps: Capabilities) -> StepOutcome:
    return Completed(await _run_script(sandbox, node, caps))


async def condition_step(
    sandbox: ScriptSandbox, node: WorkflowNode, caps: Capabilities
) -> StepOutcome:
    result = await _run_script(sandbox, node, caps)
    return Branched(result, "true" if result else "false")


async def loop_step(sandbox: ScriptSandbox, node: WorkflowNode, caps: Capabilities) -> StepOutcome:
    """Run one loop iteration.

    ``{"continue": True, "loopData": {...}}`` keeps looping; the returned
    ``loopData`` (or the mutated ``loop`` dict) becomes the next iteration's
    state. ``{"continue": False, "data": D}`` finishes with result ``D``.
    Any other result finishes the loop with that value.
    """
    result = await _run_script(sandbox, node, caps)
    if not isinstance(result, dict):
        return Completed(result)

    if result.get("continue"):
        loop_state = result.get("loopData")
        if not isinstance(loop_state, dict):
            loop_state = caps.loop
        return Continuing(loop_state)
    return Completed(result.get("data"))


STEP_FUNCTIONS: dict[NodeKind, StepFunction] = {
    NodeKind.CONDITION: condition_step,
    NodeKind.LOOP: loop_step,
}


async def step(sandbox: ScriptSandbox, node: WorkflowNode, caps: Capabilities) -> StepOutcome:
    """Run ``node`` once and classify the outcome by its kind."""
    step_fn = STEP_FUNCTIONS.get(node.kind, basic_step)
    return await step_fn(sandbox, node, caps)
