"""Run-scoped observability state.

- RunLog: the console trail shown to users (tagged log entries)
- StatusBoard: UI-facing node snapshots published by the scheduler
- ExecutionHistory: outcome of every finished run

None of these are read by the scheduler to make decisions; they are sinks.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from flowforge.core.graph_schema import NodeStatus

logger = logging.getLogger(__name__)

# Tags used for entries that do not come from a node
SYSTEM = "SYSTEM"
STORAGE = "STORAGE"
DB = "DB"
WEBHOOK = "WEBHOOK"
SCHEDULER = "SCHEDULER"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and Paths."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return repr(obj)


def format_value(value: Any) -> str:
    """Render a script value for log messages."""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, cls=_SafeJSONEncoder)
    return str(value)


class LogLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


class LogEntry(BaseModel):
    """One line of the console trail."""

    node_id: str
    message: str
    level: LogLevel = LogLevel.INFO
    run_id: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


class RunLog:
    """Append-only, thread-safe console trail.

    Scripts run in worker threads and log through here, so writes are locked.
    Every entry is also forwarded to the ``flowforge`` Python logger.
    """

    def __init__(self, max_entries: int | None = 10_000):
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._listeners: list[Callable[[LogEntry], None]] = []

    def add(
        self,
        node_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        run_id: str | None = None,
    ) -> LogEntry:
        entry = LogEntry(node_id=node_id, message=message, level=level, run_id=run_id)
        with self._lock:
            self._entries.append(entry)
            if self._max_entries and len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            listeners = list(self._listeners)

        if level == LogLevel.ERROR:
            logger.error(f"[{node_id}] {message}")
        else:
            logger.info(f"[{node_id}] {message}")

        for listener in listeners:
            listener(entry)
        return entry

    def info(self, node_id: str, message: str, run_id: str | None = None) -> LogEntry:
        return self.add(node_id, message, LogLevel.INFO, run_id)

    def error(self, node_id: str, message: str, run_id: str | None = None) -> LogEntry:
        return self.add(node_id, message, LogLevel.ERROR, run_id)

    def subscribe(self, listener: Callable[[LogEntry], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def entries(self, run_id: str | None = None) -> list[LogEntry]:
        with self._lock:
            entries = list(self._entries)
        if run_id is None:
            return entries
        return [e for e in entries if e.run_id == run_id]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self.info(SYSTEM, "Console cleared")


class NodeSnapshot(BaseModel):
    """Published view of one node's state in a given run."""

    run_id: str
    node_id: str
    status: NodeStatus
    last_executed_at: datetime | None = None
    last_result: Any = None
    loop_count: int | None = None
    error: str | None = None


class StatusBoard:
    """Shared, UI-facing store of the latest node snapshots.

    Runs never mutate node records; they publish here. With concurrent runs
    the latest publish wins, but each run's own RunState stays isolated.
    """

    def __init__(self):
        self._snapshots: dict[str, NodeSnapshot] = {}
        self._lock = threading.Lock()
        self._listeners: list[Callable[[NodeSnapshot], None]] = []

    def publish(self, snapshot: NodeSnapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.node_id] = snapshot
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Status listener failed for {snapshot.node_id}: {e}")

    def subscribe(self, listener: Callable[[NodeSnapshot], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def get(self, node_id: str) -> NodeSnapshot | None:
        with self._lock:
            return self._snapshots.get(node_id)

    def all(self) -> dict[str, NodeSnapshot]:
        with self._lock:
            return dict(self._snapshots)

    def reset(self) -> None:
        with self._lock:
            self._snapshots.clear()


class ExecutionRecord(BaseModel):
    """Outcome of a finished run."""

    id: str
    run_id: str
    status: str
    duration_ms: int
    trigger: str = "manual"
    timestamp: datetime = Field(default_factory=_utc_now)


class ExecutionHistory:
    """In-memory execution history sink."""

    def __init__(self, max_records: int | None = 10_000):
        self._records: list[ExecutionRecord] = []
        self._lock = threading.Lock()
        self._max_records = max_records

    def append(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            self._records.append(record)
            if self._max_records and len(self._records) > self._max_records:
                del self._records[: len(self._records) - self._max_records]
        return record

    def records(self) -> list[ExecutionRecord]:
        with self._lock:
            return list(self._records)

    def latest(self) -> ExecutionRecord | None:
        with self._lock:
            return self._records[-1] if self._records else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
