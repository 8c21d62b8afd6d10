"""Restricted execution of node scripts.

A node script is the body of a function::

    def node_script(input, log, http, loop, vars, db):
        <script>

compiled with RestrictedPython and called with the node's Capabilities.
The return value becomes the node result. Scripts run on a daemon thread so
blocking HTTP and database calls never stall the event loop.

Any failure (syntax, runtime, capability, timeout) is returned as an error on
the SandboxResult; ``execute`` never raises for script problems.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import operator
import textwrap
import threading
import warnings
from dataclasses import dataclass
from types import CodeType, SimpleNamespace
from typing import Any

from RestrictedPython import compile_restricted, limited_builtins, safe_builtins, utility_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

from flowforge.core.state import format_value
from flowforge.sandbox.capabilities import Capabilities, NodeLogger

logger = logging.getLogger(__name__)

SCRIPT_FUNCTION = "node_script"
SCRIPT_FILENAME = "<node_script>"


class ScriptError(Exception):
    """Error raised while running a node script."""

    pass


class ScriptCompileError(ScriptError):
    """Script failed restricted compilation."""

    pass


@dataclass
class SandboxResult:
    """Outcome of one script execution."""

    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    try:
        return _INPLACE_OPS[op](x, y)
    except KeyError:
        raise ScriptError(f"Unsupported in-place operator: {op}") from None


def _apply(func, *args, **kwargs):
    return func(*args, **kwargs)


class _LogPrinter:
    """Routes ``print()`` inside scripts to the node logger."""

    def __init__(self, node_log: NodeLogger):
        self._node_log = node_log

    def _call_print(self, *objects, **kwargs) -> None:
        self._node_log.info(" ".join(format_value(o) for o in objects))


def _build_builtins() -> dict[str, Any]:
    builtins = dict(safe_builtins)
    builtins.update(limited_builtins)
    builtins.update(utility_builtins)
    builtins.update(
        {
            "dict": dict,
            "list": list,
            "set": set,
            "min": min,
            "max": max,
            "sum": sum,
            "any": any,
            "all": all,
            "enumerate": enumerate,
            "map": map,
            "filter": filter,
            "reversed": reversed,
        }
    )
    return builtins


SCRIPT_BUILTINS = _build_builtins()

# Restricted JSON helper exposed to scripts
_JSON = SimpleNamespace(loads=json.loads, dumps=json.dumps)


def wrap_script(script: str) -> str:
    """Turn script text into the source of the node function."""
    body = textwrap.dedent(script or "").strip("\n")
    indented = textwrap.indent(body, "    ") if body.strip() else ""
    params = ", ".join(Capabilities.NAMES)
    return f"def {SCRIPT_FUNCTION}({params}):\n{indented}\n    pass\n"


@functools.lru_cache(maxsize=256)
def compile_script(script: str) -> CodeType:
    """Compile (and cache) a script under RestrictedPython policy."""
    try:
        with warnings.catch_warnings():
            # print() goes to the node logger, never to ``printed``
            warnings.filterwarnings(
                "ignore", message=".*Prints, but never reads 'printed' variable", category=SyntaxWarning
            )
            return compile_restricted(wrap_script(script), SCRIPT_FILENAME, "exec")
    except SyntaxError as e:
        raise ScriptCompileError(f"Script rejected: {e}") from e


class ScriptSandbox:
    """Executes node scripts with an explicit capability set."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    def _globals(self, capabilities: Capabilities) -> dict[str, Any]:
        return {
            "__builtins__": SCRIPT_BUILTINS,
            "__name__": "node_script",
            "_getattr_": safer_getattr,
            "_getitem_": default_guarded_getitem,
            "_getiter_": default_guarded_getiter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_write_": full_write_guard,
            "_inplacevar_": _inplacevar,
            "_apply_": _apply,
            "_print_": lambda *_: _LogPrinter(capabilities.log),
            "json": _JSON,
        }

    def run(self, script: str, capabilities: Capabilities) -> Any:
        """Run a script synchronously, raising on failure."""
        code = compile_script(script)
        namespace = self._globals(capabilities)
        exec(code, namespace)
        return namespace[SCRIPT_FUNCTION](*capabilities.as_args())

    async def execute(self, script: str, capabilities: Capabilities) -> SandboxResult:
        """Run a script on its own daemon thread and capture its result or error.

        A timed-out script cannot be stopped; its thread is abandoned and
        never holds up interpreter or event loop shutdown.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def call() -> None:
            try:
                outcome = (self.run(script, capabilities), None)
            except BaseException as e:
                outcome = (None, e)
            try:
                loop.call_soon_threadsafe(_settle, future, *outcome)
            except RuntimeError:
                # Loop closed after the timeout fired
                logger.debug("Dropping result of abandoned script")

        threading.Thread(target=call, name="node-script", daemon=True).start()
        try:
            if self.timeout:
                result = await asyncio.wait_for(future, timeout=self.timeout)
            else:
                result = await future
        except asyncio.TimeoutError:
            return SandboxResult(error=f"Script timed out after {self.timeout}s")
        except Exception as e:
            logger.debug(f"Script failed: {type(e).__name__}: {e}")
            return SandboxResult(error=str(e) or type(e).__name__)
        return SandboxResult(result=result)


def _settle(future: asyncio.Future, result: Any, error: BaseException | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
