"""Trigger sources that start workflow runs.

- WebhookRegistry: named, toggleable webhooks; each trigger seeds a run
  with its payload
- ScheduleRunner: interval schedules, one asyncio task per schedule

Both read the current workflow through a provider callable, so edits made
between triggers are picked up by the next run. Triggers never coordinate
with each other; overlapping runs are independent.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from flowforge.core.graph_engine import GraphOrchestrator, RunState
from flowforge.core.graph_schema import WorkflowDocument
from flowforge.core.state import SCHEDULER, WEBHOOK

logger = logging.getLogger(__name__)

WorkflowProvider = Callable[[], WorkflowDocument]


def _short_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


class Webhook(BaseModel):
    id: str = Field(default_factory=lambda: _short_id("wh"))
    name: str
    active: bool = True
    trigger_count: int = 0


class WebhookEvent(BaseModel):
    """A delivered webhook payload."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    webhook: str
    data: Any = None


class WebhookRegistry:
    """Webhooks that start a run seeded with the delivered payload."""

    def __init__(
        self,
        orchestrator: GraphOrchestrator,
        workflow: WorkflowProvider,
        max_retained: int = 100,
    ):
        self.orchestrator = orchestrator
        self.workflow = workflow
        self._webhooks: dict[str, Webhook] = {}
        self._events: deque[WebhookEvent] = deque(maxlen=max_retained)

    @property
    def log(self):
        return self.orchestrator.log

    def add(self, name: str) -> Webhook:
        webhook = Webhook(name=name)
        self._webhooks[webhook.id] = webhook
        self.log.info(WEBHOOK, f"Created: {name}")
        return webhook

    def remove(self, webhook_id: str) -> Webhook | None:
        webhook = self._webhooks.pop(webhook_id, None)
        if webhook is not None:
            self.log.info(WEBHOOK, "Removed")
        return webhook

    def toggle(self, webhook_id: str) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is not None:
            webhook.active = not webhook.active
        return webhook

    def get(self, webhook_id: str) -> Webhook | None:
        return self._webhooks.get(webhook_id)

    def webhooks(self) -> list[Webhook]:
        return list(self._webhooks.values())

    def events(self) -> list[WebhookEvent]:
        return list(self._events)

    async def trigger(self, webhook_id: str, payload: Any = None) -> RunState | None:
        """
        Deliver a payload to a webhook.

        Unknown or inactive webhooks are ignored and return None. Otherwise
        the trigger is counted, recorded and a run is executed with the
        payload as the first node's input.
        """
        webhook = self._webhooks.get(webhook_id)
        if webhook is None or not webhook.active:
            logger.debug(f"Ignoring trigger for unknown/inactive webhook {webhook_id}")
            return None

        self._events.append(WebhookEvent(webhook=webhook.name, data=payload))
        webhook.trigger_count += 1
        self.log.info(WEBHOOK, f"Triggered: {webhook.name}")

        doc = self.workflow()
        return await self.orchestrator.run_workflow(
            doc.nodes, doc.edges, seed_payload=payload, trigger="webhook"
        )


class Schedule(BaseModel):
    id: str = Field(default_factory=lambda: _short_id("sch"))
    interval_seconds: float = Field(gt=0)
    next_run_at: datetime | None = None


class ScheduleRunner:
    """
    Fires unseeded runs on fixed intervals.

    Each schedule owns an asyncio task. A fire spawns the run as its own
    task, so a slow run never delays the next fire.
    """

    def __init__(
        self,
        orchestrator: GraphOrchestrator,
        workflow: WorkflowProvider,
        max_retained: int = 100,
    ):
        self.orchestrator = orchestrator
        self.workflow = workflow
        self._schedules: list[Schedule] = []
        self._tasks: dict[str, asyncio.Task] = {}
        self._runs: set[asyncio.Task] = set()
        # Most recent finished runs only
        self.results: deque[RunState] = deque(maxlen=max_retained)

    @property
    def log(self):
        return self.orchestrator.log

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def schedules(self) -> list[Schedule]:
        return list(self._schedules)

    def add(self, interval_seconds: float) -> Schedule:
        schedule = Schedule(interval_seconds=interval_seconds)
        self._schedules.append(schedule)
        self.log.info(SCHEDULER, f"Schedule added: every {interval_seconds:g}s")
        if self.running:
            self._spawn(schedule)
        return schedule

    def remove(self, schedule_id: str) -> Schedule | None:
        for schedule in self._schedules:
            if schedule.id == schedule_id:
                self._schedules.remove(schedule)
                task = self._tasks.pop(schedule_id, None)
                if task is not None:
                    task.cancel()
                self.log.info(SCHEDULER, "Schedule removed")
                return schedule
        return None

    def start(self) -> None:
        """Start one timer task per schedule. Must be called inside a running loop."""
        if self.running:
            return
        self.log.info(SCHEDULER, "Schedule started")
        for schedule in self._schedules:
            self._spawn(schedule)

    async def stop(self) -> None:
        """Cancel all timers, then wait for runs already in flight."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for schedule in self._schedules:
            schedule.next_run_at = None

        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        self.log.info(SCHEDULER, "Schedule stopped")

    # ========== Internals ==========

    def _spawn(self, schedule: Schedule) -> None:
        schedule.next_run_at = self._next_run(schedule)
        self._tasks[schedule.id] = asyncio.create_task(self._tick(schedule))

    @staticmethod
    def _next_run(schedule: Schedule) -> datetime:
        return datetime.fromtimestamp(time.time() + schedule.interval_seconds, UTC)

    async def _tick(self, schedule: Schedule) -> None:
        while True:
            await asyncio.sleep(schedule.interval_seconds)
            position = self._schedules.index(schedule) + 1
            self.log.info(SCHEDULER, f"Triggered execution (Schedule {position})")
            schedule.next_run_at = self._next_run(schedule)

            run = asyncio.create_task(self._run())
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)

    async def _run(self) -> RunState:
        doc = self.workflow()
        state = await self.orchestrator.run_workflow(doc.nodes, doc.edges, trigger="schedule")
        self.results.append(state)
        return state
