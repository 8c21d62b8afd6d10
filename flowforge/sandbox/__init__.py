"""Sandbox module for restricted execution of node scripts."""

from flowforge.sandbox.capabilities import (
    Capabilities,
    HttpClient,
    HttpRequestError,
    NodeLogger,
    VariableHandle,
)
from flowforge.sandbox.executor import SandboxResult, ScriptError, ScriptSandbox

__all__ = [
    "Capabilities",
    "HttpClient",
    "HttpRequestError",
    "NodeLogger",
    "SandboxResult",
    "ScriptError",
    "ScriptSandbox",
    "VariableHandle",
]
