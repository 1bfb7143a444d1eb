"""Controller run loop for DHCPTemplate objects.

The controller keeps a local store of DHCPTemplates from a watch and
reconciles them from a single worker:

1. Template watch: new objects and generation changes enqueue the object
   (status-only updates do not)
2. Node state changes: every known template is enqueued
3. Both triggers are debounced, so bursts of changes cause one pass

Each pass renders the template against the registry snapshot, plans the
difference to the objects recorded in status, records a Pending
condition, executes the plan and records Ready or Error. The outcome
decides when the object is reconciled again:

- success: after ``ready_requeue_seconds``
- template errors and invalid DHCPTemplate objects: only after the next change
- any other error: after ``error_requeue_seconds``

A failing pass never stops the controller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .config import OperatorConfig
from .kube import Cluster, WatchEvent, WatchEventType
from .models import ConditionType, DHCPTemplate, ObjectRefError, Reason
from .plan import Plan, PlanExecutionError
from .registry import NodeRegistry
from .status import set_template_error, set_template_status
from .template import TemplateError, render

logger = logging.getLogger(__name__)


class InvalidTemplateError(Exception):
    """Raised when a fetched DHCPTemplate does not match its schema."""

    pass


@dataclass(frozen=True)
class Action:
    """What to do with an object after a pass."""

    requeue_after: float | None = None

    @classmethod
    def requeue(cls, seconds: float) -> Action:
        return cls(requeue_after=seconds)

    @classmethod
    def await_change(cls) -> Action:
        return cls(requeue_after=None)


class Outcome(str, Enum):
    READY = "ready"
    SKIPPED = "skipped"
    FAILED = "failed"
    GONE = "gone"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    name: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcome: Outcome = Outcome.FAILED
    nodes: int = 0
    objects_applied: int = 0
    objects_deleted: int = 0
    action: Action | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


class ReconcileQueue:
    """Per-object due times, served earliest first.

    ``trigger`` debounces: each call pushes the due time out to
    ``now + delay``. ``requeue`` schedules a timed pass and keeps an
    earlier due time if one is already pending.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._due: dict[str, float] = {}
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._due)

    def __contains__(self, name: object) -> bool:
        return name in self._due

    def due(self, name: str) -> float | None:
        return self._due.get(name)

    def trigger(self, name: str, delay: float) -> None:
        self._due[name] = self._clock() + delay
        self._changed.set()

    def requeue(self, name: str, delay: float) -> None:
        due = self._clock() + delay
        current = self._due.get(name)
        if current is None or due < current:
            self._due[name] = due
            self._changed.set()

    def discard(self, name: str) -> None:
        if self._due.pop(name, None) is not None:
            self._changed.set()

    async def get(self) -> str:
        """Wait for the earliest due object and remove it from the queue."""
        while True:
            timeout: float | None = None
            if self._due:
                name, due = min(self._due.items(), key=lambda item: item[1])
                timeout = due - self._clock()
                if timeout <= 0:
                    del self._due[name]
                    return name

            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=timeout)
            except TimeoutError:
                pass


class Controller:
    """Watches DHCPTemplates and reconciles them one at a time."""

    def __init__(
        self,
        cluster: Cluster,
        registry: NodeRegistry,
        config: OperatorConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cluster = cluster
        self._registry = registry
        self._config = config
        self._queue = ReconcileQueue(clock)
        self._store: dict[str, DHCPTemplate] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def queue(self) -> ReconcileQueue:
        return self._queue

    @property
    def store(self) -> dict[str, DHCPTemplate]:
        return self._store

    async def run(self) -> None:
        """Run watch, node change and worker tasks until shutdown."""
        logger.info(
            "Starting controller",
            extra={
                "debounce_seconds": self._config.debounce_seconds,
                "ready_requeue_seconds": self._config.ready_requeue_seconds,
                "error_requeue_seconds": self._config.error_requeue_seconds,
            },
        )

        tasks = [
            asyncio.create_task(self._watch_templates(), name="watch-templates"),
            asyncio.create_task(self._watch_nodes(), name="watch-nodes"),
            asyncio.create_task(self._worker(), name="reconcile-worker"),
        ]
        shutdown = asyncio.create_task(self._shutdown_event.wait(), name="shutdown")

        try:
            done, _ = await asyncio.wait([*tasks, shutdown], return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not shutdown and not task.cancelled() and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]
        finally:
            for task in (*tasks, shutdown):
                task.cancel()
            await asyncio.gather(*tasks, shutdown, return_exceptions=True)

        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _watch_templates(self) -> None:
        async for event in self._cluster.watch_templates():
            self.handle_event(event)

    async def _watch_nodes(self) -> None:
        async for _ in self._registry.notifier.changes():
            self.handle_nodes_changed()

    async def _worker(self) -> None:
        while True:
            name = await self._queue.get()
            result = await self.reconcile_name(name)
            self._log_result(result)

    def _parse(self, obj: dict[str, Any]) -> DHCPTemplate | None:
        try:
            return DHCPTemplate.model_validate(obj)
        except ValidationError as e:
            name = (obj.get("metadata") or {}).get("name")
            logger.error("Ignoring malformed DHCPTemplate", extra={"template": name, "error": str(e)})
            return None

    def _store_template(self, template: DHCPTemplate) -> None:
        name = template.name
        if not name:
            return

        previous = self._store.get(name)
        self._store[name] = template
        if previous is None or previous.metadata.generation != template.metadata.generation:
            self._queue.trigger(name, self._config.debounce_seconds)

    def _forget(self, name: str) -> None:
        if self._store.pop(name, None) is not None:
            logger.debug("Forgot DHCPTemplate", extra={"template": name})
        self._queue.discard(name)

    def handle_event(self, event: WatchEvent) -> None:
        """Update the store from a watch event and enqueue changed objects."""
        match event.type:
            case WatchEventType.APPLIED:
                for obj in event.objects:
                    template = self._parse(obj)
                    if template is not None:
                        self._store_template(template)
            case WatchEventType.DELETED:
                for obj in event.objects:
                    name = (obj.get("metadata") or {}).get("name")
                    if name:
                        self._forget(name)
            case WatchEventType.RESTARTED:
                listed: set[str] = set()
                for obj in event.objects:
                    template = self._parse(obj)
                    if template is not None and template.name:
                        listed.add(template.name)
                        self._store_template(template)
                for name in set(self._store) - listed:
                    self._forget(name)

    def handle_nodes_changed(self) -> None:
        """Enqueue every known template after a node state change."""
        for name in self._store:
            self._queue.trigger(name, self._config.debounce_seconds)

    def _validate(self, name: str, obj: dict[str, Any]) -> DHCPTemplate:
        try:
            return DHCPTemplate.model_validate(obj)
        except ValidationError as e:
            raise InvalidTemplateError(f"Invalid DHCPTemplate {name!r}: {e}") from e

    async def reconcile_name(self, name: str) -> ReconcileResult:
        """Run one pass for a stored object and schedule its next pass."""
        result = ReconcileResult(name=name)

        try:
            current = await self._cluster.get_template(name)
            if current is None:
                self._forget(name)
                result.outcome = Outcome.GONE
                action = Action.await_change()
            else:
                template = self._validate(name, current)
                self._store[name] = template
                action = await self.reconcile(template, result)
        except Exception as e:
            result.outcome = Outcome.FAILED
            result.error = e
            action = self.error_policy(e)

        result.action = action
        result.end_time = datetime.now(UTC)

        if action.requeue_after is not None:
            self._queue.requeue(name, action.requeue_after)
        return result

    async def reconcile(self, template: DHCPTemplate, result: ReconcileResult) -> Action:
        """Reconcile one DHCPTemplate against the current node snapshot.

        Raises:
            TemplateError: If the template cannot be rendered.
            ObjectRefError: If a rendered object cannot be referenced.
            PlanExecutionError: If any object could not be applied or deleted.
        """
        nodes = self._registry.snapshot()
        result.nodes = len(nodes)

        if not nodes:
            logger.info(
                "Skipping reconciliation, no nodes registered yet",
                extra={"template": template.name},
            )
            result.outcome = Outcome.SKIPPED
            return Action.await_change()

        try:
            manifests = render(template.spec.template, nodes)
        except TemplateError as e:
            await self._record_error(template, Reason.TEMPLATE_EVALUATION, str(e))
            raise

        try:
            plan = Plan.diff(template.previous_objects(), manifests)
        except ObjectRefError as e:
            await self._record_error(template, Reason.PLANNING_OBJECTS, str(e))
            raise

        await set_template_status(
            self._cluster,
            template,
            plan.all(),
            Reason.RECONCILIATION,
            ConditionType.PENDING,
            "Reconciling template objects.",
        )

        try:
            await plan.execute(template, self._cluster)
        except PlanExecutionError as e:
            await set_template_status(
                self._cluster,
                template,
                plan.all(),
                Reason.RECONCILIATION,
                ConditionType.ERROR,
                str(e),
            )
            raise

        await set_template_status(
            self._cluster,
            template,
            plan.apply,
            Reason.ALL_OBJECTS_READY,
            ConditionType.READY,
            "Template objects reconciled successfully.",
        )

        result.outcome = Outcome.READY
        result.objects_applied = len(plan.apply)
        result.objects_deleted = len(plan.delete)
        return Action.requeue(self._config.ready_requeue_seconds)

    async def _record_error(self, template: DHCPTemplate, reason: Reason, message: str) -> None:
        # The pass error is raised by the caller; a failed status write is only logged.
        try:
            await set_template_error(self._cluster, template, reason, message)
        except Exception as e:
            logger.warning(
                "Failed to record error condition",
                extra={"template": template.name, "reason": reason.value, "error": str(e)},
            )

    def error_policy(self, error: Exception) -> Action:
        """Decide when to retry after a failed pass."""
        if isinstance(error, (TemplateError, InvalidTemplateError)):
            return Action.await_change()
        return Action.requeue(self._config.error_requeue_seconds)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "template": result.name,
            "outcome": result.outcome.value,
            "duration_seconds": result.duration_seconds,
            "nodes": result.nodes,
            "objects_applied": result.objects_applied,
            "objects_deleted": result.objects_deleted,
        }
        if result.action is not None:
            extra["requeue_after"] = result.action.requeue_after

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
