"""Session-wide variable storage shared by scripts and the UI."""

from __future__ import annotations

import copy
import json
import threading
from typing import Any

from flowforge.core.state import STORAGE, RunLog


class VariableStore:
    """Unscoped key/value map holding JSON-typed values.

    A single instance lives for the whole session. Writes are last-write-wins;
    there is no isolation between concurrent runs.
    """

    def __init__(self, log: RunLog | None = None):
        self._values: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._log = log

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._values.get(key, default))

    def set(self, key: str, value: Any) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError("Variable key must be a non-empty string")
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise TypeError(f"Variable '{key}' is not JSON-serializable: {e}") from e

        with self._lock:
            self._values[key] = json.loads(encoded)
        if self._log:
            self._log.info(STORAGE, f"Variable set: {key} = {encoded[:50]}")

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = key in self._values
            self._values.pop(key, None)
        if self._log:
            self._log.info(STORAGE, f"Variable deleted: {key}")
        return existed

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def all(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
        if self._log:
            self._log.info(STORAGE, "All variables cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __contains__(self, key: object) -> bool:
        return self.has(key)  # type: ignore[arg-type]
