"""Inbound event intake: durable log, routing, deduplication and enqueue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from agent_dispatch.orchestrator.models import (
    InboundDisposition,
    InboundEventView,
    NormalizedEvent,
    TaskCreate,
    TaskView,
)
from agent_dispatch.orchestrator.repository import OrchestratorRepository
from agent_dispatch.orchestrator.routing import RoutingPolicy, RoutingRule

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 300
_REPOSITORY_REF_KEYS = ("repository_ref", "repository", "repo")

PriorityFunction = Callable[[NormalizedEvent, RoutingRule], int]


@dataclass(slots=True)
class DispatchResult:
    """What happened to one inbound event."""

    disposition: InboundDisposition
    event: InboundEventView
    task: TaskView | None
    redelivered: bool = False


def route_priority(_: NormalizedEvent, rule: RoutingRule) -> int:
    return rule.priority


def dedupe_key(event: NormalizedEvent, *, window_seconds: int) -> str:
    """``source|type|resource|bucket`` with ``bucket = floor(received_at / window)``."""

    received = event.received_at
    if received.tzinfo is None:
        received = received.replace(tzinfo=UTC)
    bucket = int(received.timestamp() // window_seconds)
    return f"{event.source}|{event.event_type}|{event.resource_id}|{bucket}"


class Dispatcher:
    """Turns verified inbound events into queued tasks."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        routing: RoutingPolicy,
        dedup_window_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS,
        max_retries: int = 3,
        priority_function: PriorityFunction = route_priority,
    ) -> None:
        if dedup_window_seconds <= 0:
            raise ValueError("Dedup window must be > 0 seconds.")
        self.repository = repository
        self.routing = routing
        self.dedup_window_seconds = dedup_window_seconds
        self.max_retries = max_retries
        self.priority_function = priority_function

    def dispatch(self, event: NormalizedEvent, *, priority: int | None = None) -> TaskView | None:
        """Enqueue a task for ``event``; ``None`` when dropped or deduplicated."""

        return self.submit(event, priority=priority).task

    def submit(self, event: NormalizedEvent, *, priority: int | None = None) -> DispatchResult:
        """Full dispatch outcome, including the disposition of dropped events."""

        key = dedupe_key(event, window_seconds=self.dedup_window_seconds)
        stored, created = self.repository.record_inbound_event(event, dedupe_key=key)
        if not created and stored.disposition != InboundDisposition.RECEIVED:
            logger.info(
                "Redelivered event %s ignored (disposition=%s, task=%s)",
                key,
                stored.disposition.value,
                stored.task_id,
            )
            task = (
                self.repository.get_task(task_id=stored.task_id)
                if stored.task_id is not None
                else None
            )
            return DispatchResult(
                disposition=stored.disposition,
                event=stored,
                task=task,
                redelivered=True,
            )

        rule = self.routing.resolve(source=event.source, event_type=event.event_type)
        if rule is None:
            logger.warning(
                "Unroutable event source=%s type=%s resource=%s",
                event.source,
                event.event_type,
                event.resource_id,
            )
            self.repository.set_inbound_disposition(
                event_id=stored.event_id,
                disposition=InboundDisposition.UNROUTABLE,
            )
            stored.disposition = InboundDisposition.UNROUTABLE
            return DispatchResult(
                disposition=InboundDisposition.UNROUTABLE,
                event=stored,
                task=None,
            )

        duplicate_of = self.repository.find_enqueued_event_in_window(
            source=event.source,
            resource_id=event.resource_id,
            received_at=_aware(event.received_at),
            window=timedelta(seconds=self.dedup_window_seconds),
            exclude_event_id=stored.event_id,
        )
        if duplicate_of is not None:
            logger.info(
                "Deduplicated event source=%s type=%s resource=%s onto task %s",
                event.source,
                event.event_type,
                event.resource_id,
                duplicate_of.task_id,
            )
            self.repository.set_inbound_disposition(
                event_id=stored.event_id,
                disposition=InboundDisposition.DEDUPLICATED,
                task_id=duplicate_of.task_id,
            )
            stored.disposition = InboundDisposition.DEDUPLICATED
            stored.task_id = duplicate_of.task_id
            return DispatchResult(
                disposition=InboundDisposition.DEDUPLICATED,
                event=stored,
                task=None,
            )

        resolved_priority = (
            priority if priority is not None else self.priority_function(event, rule)
        )
        if resolved_priority < 0:
            raise ValueError(f"Task priority must be >= 0, got {resolved_priority}")
        task = self.repository.enqueue_task(
            TaskCreate(
                source=event.source,
                task_type=rule.task_type,
                resource_id=event.resource_id,
                context=_build_context(event),
                priority=resolved_priority,
                max_retries=self.max_retries,
                repository_ref=(
                    _repository_ref(event.payload) if rule.requires_repository else None
                ),
                inbound_event_id=stored.event_id,
            ),
        )
        logger.info(
            "Enqueued task %s type=%s priority=%d for %s:%s",
            task.task_id,
            task.task_type,
            task.priority,
            event.source,
            event.resource_id,
        )
        stored.disposition = InboundDisposition.ENQUEUED
        stored.task_id = task.task_id
        return DispatchResult(disposition=InboundDisposition.ENQUEUED, event=stored, task=task)


def _build_context(event: NormalizedEvent) -> dict[str, Any]:
    return {
        "event": {
            "source": event.source,
            "type": event.event_type,
            "received_at": _aware(event.received_at).isoformat(),
        },
        "resource_id": event.resource_id,
        "payload": event.payload,
    }


def _repository_ref(payload: dict[str, Any]) -> str | None:
    for key in _REPOSITORY_REF_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            for nested_key in ("full_name", "clone_url", "url", "name"):
                nested = value.get(nested_key)
                if isinstance(nested, str) and nested.strip():
                    return nested.strip()
    return None


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
