"""Database access for scripts through an external gateway service.

The gateway owns all driver logic. This module only shapes requests, keeps
the list of named connections and turns every gateway failure into a single
exception:

- ConnectionRegistry: named connections, asynchronous connection tests
- GatewayClient: HTTP transport to the gateway (``/api/database/*``)
- DatabaseProxy: the ``db`` handle handed to scripts
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from flowforge.core.state import DB, RunLog

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base error for database operations."""

    pass


class ConnectionNotFoundError(DatabaseError):
    """Script referenced a connection name that does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Database connection not found: {name}")


class GatewayError(DatabaseError):
    """Gateway reported failure or could not be reached."""

    pass


class DatabaseEngine(str, Enum):
    MONGODB = "mongodb"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    FIREBASE = "firebase"


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    TESTING = "testing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DatabaseOperation(str, Enum):
    FIND = "find"
    FIND_ONE = "findOne"
    INSERT = "insert"
    INSERT_MANY = "insertMany"
    UPDATE = "update"
    UPDATE_MANY = "updateMany"
    DELETE = "delete"
    DELETE_MANY = "deleteMany"
    COUNT = "count"
    QUERY = "query"  # SQL (PostgreSQL/MySQL)


class DatabaseConnection(BaseModel):
    """A named connection. Scripts refer to it by ``name`` only."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: f"db_{uuid.uuid4().hex[:12]}")
    name: str
    engine: DatabaseEngine = Field(validation_alias=AliasChoices("engine", "type"))
    connection_string: str | None = Field(
        default=None, validation_alias=AliasChoices("connection_string", "connectionString")
    )
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None

    status: ConnectionStatus = ConnectionStatus.IDLE
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    connected_at: datetime | None = None

    def to_gateway_config(self) -> dict[str, Any]:
        """Connection descriptor in the gateway's wire format."""
        config: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.engine.value,
            "status": self.status.value,
        }
        optional = {
            "connectionString": self.connection_string,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
        }
        config.update({k: v for k, v in optional.items() if v is not None})
        return config


class GatewayClient:
    """Blocking HTTP client for the database gateway.

    Scripts run in worker threads, so the blocking client is used directly
    from script code; async callers go through ``asyncio.to_thread``.
    """

    EXECUTE_PATH = "/api/database/execute"
    TEST_PATH = "/api/database/test"

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"Database operation failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            raise GatewayError(
                f"Database operation failed: unexpected gateway response "
                f"(HTTP {response.status_code})"
            )
        if not data.get("success"):
            message = data.get("error") or data.get("message") or f"HTTP {response.status_code}"
            raise GatewayError(f"Database operation failed: {message}")
        return data

    def execute(
        self,
        connection: DatabaseConnection,
        operation: DatabaseOperation | str,
        options: dict[str, Any],
    ) -> Any:
        op = operation.value if isinstance(operation, DatabaseOperation) else operation
        data = self._post(
            self.EXECUTE_PATH,
            {
                "connectionConfig": connection.to_gateway_config(),
                "operation": op,
                "options": options,
            },
        )
        return data.get("result")

    def test_connection(self, connection: DatabaseConnection) -> dict[str, Any]:
        return self._post(self.TEST_PATH, {"connectionConfig": connection.to_gateway_config()})

    def close(self) -> None:
        self._client.close()


class ConnectionRegistry:
    """Shared list of database connections, keyed by unique name."""

    def __init__(self, gateway: GatewayClient, log: RunLog | None = None):
        self.gateway = gateway
        self._connections: dict[str, DatabaseConnection] = {}
        self._lock = threading.Lock()
        self._log = log

    def _emit(self, message: str, error: bool = False) -> None:
        if self._log is None:
            return
        if error:
            self._log.error(DB, message)
        else:
            self._log.info(DB, message)

    def add(self, connection: DatabaseConnection) -> DatabaseConnection:
        with self._lock:
            if connection.name in self._connections:
                raise ValueError(f"Connection name already in use: {connection.name}")
            self._connections[connection.name] = connection
        self._emit(f"Added: {connection.name}")
        return connection

    def remove(self, name: str) -> DatabaseConnection | None:
        with self._lock:
            removed = self._connections.pop(name, None)
        if removed:
            self._emit(f"Disconnected: {name}")
        return removed

    def get(self, name: str) -> DatabaseConnection | None:
        with self._lock:
            return self._connections.get(name)

    def connections(self) -> list[DatabaseConnection]:
        with self._lock:
            return list(self._connections.values())

    async def test(self, name: str) -> bool:
        """Test a connection against the gateway and record the outcome."""
        connection = self.get(name)
        if connection is None:
            raise ConnectionNotFoundError(name)

        self._emit(f"Testing: {name}...")
        connection.status = ConnectionStatus.TESTING
        try:
            await asyncio.to_thread(self.gateway.test_connection, connection)
        except GatewayError as e:
            connection.status = ConnectionStatus.ERROR
            connection.error = str(e)
            self._emit(f"Connection failed: {name}", error=True)
            return False

        connection.status = ConnectionStatus.CONNECTED
        connection.error = None
        connection.connected_at = datetime.now(UTC)
        self._emit(f"Connected: {name}")
        return True


class DatabaseProxy:
    """The ``db`` handle available to scripts.

    Every call resolves ``connection_name`` against the registry first, so an
    unknown name fails before any network traffic.
    """

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

    @property
    def connections(self) -> list[dict[str, str]]:
        return [
            {"name": c.name, "type": c.engine.value, "status": c.status.value}
            for c in self._registry.connections()
        ]

    def get_connection(self, name: str) -> dict[str, str] | None:
        connection = self._registry.get(name)
        if connection is None:
            return None
        return {"name": connection.name, "type": connection.engine.value, "status": connection.status.value}

    def query(
        self,
        connection_name: str,
        operation: DatabaseOperation | str,
        options: dict[str, Any] | None = None,
    ) -> Any:
        connection = self._registry.get(connection_name)
        if connection is None:
            raise ConnectionNotFoundError(connection_name)
        op = DatabaseOperation(operation)
        logger.debug(f"db {op.value} on '{connection_name}'")
        return self._registry.gateway.execute(connection, op, dict(options or {}))

    # Document stores (MongoDB/Firebase)

    def find(self, connection_name: str, collection: str, query: dict | None = None) -> Any:
        return self.query(
            connection_name, DatabaseOperation.FIND, {"collection": collection, "query": query or {}}
        )

    def find_one(self, connection_name: str, collection: str, query: dict | None = None) -> Any:
        return self.query(
            connection_name,
            DatabaseOperation.FIND_ONE,
            {"collection": collection, "query": query or {}},
        )

    def insert(self, connection_name: str, collection: str, data: dict) -> Any:
        return self.query(
            connection_name, DatabaseOperation.INSERT, {"collection": collection, "data": data}
        )

    def insert_many(self, connection_name: str, collection: str, data: list[dict]) -> Any:
        return self.query(
            connection_name,
            DatabaseOperation.INSERT_MANY,
            {"collection": collection, "data": list(data)},
        )

    def update(self, connection_name: str, collection: str, query: dict, data: dict) -> Any:
        return self.query(
            connection_name,
            DatabaseOperation.UPDATE,
            {"collection": collection, "query": query, "data": data},
        )

    def update_many(self, connection_name: str, collection: str, query: dict, data: dict) -> Any:
        return self.query(
            connection_name,
            DatabaseOperation.UPDATE_MANY,
            {"collection": collection, "query": query, "data": data},
        )

    def delete(self, connection_name: str, collection: str, query: dict) -> Any:
        return self.query(
            connection_name, DatabaseOperation.DELETE, {"collection": collection, "query": query}
        )

    def delete_many(self, connection_name: str, collection: str, query: dict) -> Any:
        return self.query(
            connection_name,
            DatabaseOperation.DELETE_MANY,
            {"collection": collection, "query": query},
        )

    def count(self, connection_name: str, collection: str, query: dict | None = None) -> Any:
        return self.query(
            connection_name, DatabaseOperation.COUNT, {"collection": collection, "query": query or {}}
        )

    # SQL (PostgreSQL/MySQL)

    def find_sql(self, connection_name: str, sql: str, params: list | None = None) -> Any:
        return self.query(
            connection_name, DatabaseOperation.QUERY, {"sql": sql, "params": list(params or [])}
        )

    def insert_sql(self, connection_name: str, options: dict) -> Any:
        if "sql" not in options:
            raise ValueError("insert_sql requires an options dict with 'sql'")
        return self.query(
            connection_name,
            DatabaseOperation.QUERY,
            {"sql": options["sql"], "params": list(options.get("params") or [])},
        )
