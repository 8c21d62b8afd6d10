"""Capability handles passed to node scripts.

A script only ever sees the names in ``Capabilities``: ``input``, ``log``,
``http``, ``loop``, ``vars`` and ``db``. Nothing else is injected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from flowforge.core.database import DatabaseProxy
from flowforge.core.state import RunLog, format_value
from flowforge.core.variables import VariableStore


class HttpRequestError(Exception):
    """Outbound HTTP call failed (transport error or 4xx/5xx status)."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class NodeLogger:
    """``log`` handle: forwards script output to the run log tagged with the node label."""

    def __init__(self, run_log: RunLog, tag: str, run_id: str | None = None):
        self._run_log = run_log
        self._tag = tag
        self._run_id = run_id

    @staticmethod
    def _join(args: tuple) -> str:
        return " ".join(format_value(a) for a in args)

    def info(self, *args: Any) -> None:
        self._run_log.info(self._tag, self._join(args), run_id=self._run_id)

    def error(self, *args: Any) -> None:
        self._run_log.error(self._tag, self._join(args), run_id=self._run_id)

    # console.log-style alias
    log = info


class HttpClient:
    """``http`` handle for outbound calls.

    Responses come back as plain dicts (``status``, ``headers``, ``data``)
    so scripts can index them without touching response objects. Like most
    browser clients, 4xx/5xx statuses raise.
    """

    def __init__(self, timeout: float = 30.0, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(timeout=timeout, transport=transport, follow_redirects=True)

    def request(
        self,
        method: str,
        url: str,
        params: dict | None = None,
        json: Any = None,
        data: Any = None,
        headers: dict | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(
                method.upper(), url, params=params, json=json, data=data, headers=headers
            )
        except httpx.HTTPError as e:
            raise HttpRequestError(f"{method.upper()} {url} failed: {e}") from e

        if response.is_error:
            raise HttpRequestError(
                f"{method.upper()} {url} failed with status {response.status_code}",
                status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = response.text

        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "data": body,
        }

    def get(self, url: str, params: dict | None = None, headers: dict | None = None) -> dict:
        return self.request("GET", url, params=params, headers=headers)

    def post(self, url: str, json: Any = None, data: Any = None, headers: dict | None = None) -> dict:
        return self.request("POST", url, json=json, data=data, headers=headers)

    def put(self, url: str, json: Any = None, data: Any = None, headers: dict | None = None) -> dict:
        return self.request("PUT", url, json=json, data=data, headers=headers)

    def patch(self, url: str, json: Any = None, data: Any = None, headers: dict | None = None) -> dict:
        return self.request("PATCH", url, json=json, data=data, headers=headers)

    def delete(self, url: str, params: dict | None = None, headers: dict | None = None) -> dict:
        return self.request("DELETE", url, params=params, headers=headers)

    def close(self) -> None:
        self._client.close()


class VariableHandle:
    """``vars`` handle: the script-visible subset of the variable store."""

    def __init__(self, store: VariableStore):
        self._store = store

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._store.set(key, value)

    def delete(self, key: str) -> bool:
        return self._store.delete(key)

    def has(self, key: str) -> bool:
        return self._store.has(key)

    def all(self) -> dict[str, Any]:
        return self._store.all()


@dataclass(frozen=True)
class Capabilities:
    """Everything a script may touch, passed positionally to the script function."""

    input: Any
    log: NodeLogger
    http: HttpClient
    vars: VariableHandle
    db: DatabaseProxy
    loop: dict[str, Any] = field(default_factory=dict)

    # Order matches the generated script function signature
    NAMES = ("input", "log", "http", "loop", "vars", "db")

    def as_args(self) -> tuple:
        return tuple(getattr(self, name) for name in self.NAMES)
