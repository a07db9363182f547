"""Bounded, priority-ordered admission of queued tasks into execution slots.

Waiting tasks are ordered by effective priority, then by the time they were
queued, then by submission sequence. A task's effective priority improves by
one band for every full starvation-age period it has waited, so low-priority
work is eventually admitted under sustained high-priority load.
"""

from __future__ import annotations

import itertools
import logging
import statistics
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

STARVATION_AGE_MEDIAN_FACTOR = 10


@dataclass(slots=True)
class AdmissionEntry:
    """One task waiting for a slot."""

    task_id: str
    priority: int
    queued_at: float
    seq: int = 0


@dataclass(frozen=True, slots=True)
class Lease:
    """An occupied execution slot."""

    lease_id: int
    task_id: str
    priority: int
    effective_priority: int
    admitted_at: float
    waited_seconds: float


@dataclass(slots=True)
class AdmissionStatus:
    """Point-in-time view of the controller."""

    capacity: int
    active: int
    queued: int
    starvation_age_seconds: float


class AdmissionController:
    """Thread-safe slot pool with starvation-aware priority ordering."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        capacity: int,
        starvation_age_seconds: float | None = None,
        starvation_age_floor_seconds: float = 60.0,
        sample_size: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("Admission capacity must be >= 1.")
        self.capacity = capacity
        self._configured_age = starvation_age_seconds
        self._age_floor = starvation_age_floor_seconds
        self._clock = clock
        self._condition = threading.Condition()
        self._waiting: dict[str, AdmissionEntry] = {}
        self._active: dict[int, Lease] = {}
        self._seq = itertools.count(1)
        self._lease_ids = itertools.count(1)
        self._recent_waits: deque[float] = deque(maxlen=max(1, sample_size))

    def submit(self, entry: AdmissionEntry) -> bool:
        """Register a waiting task. Returns False when the task is already known."""

        with self._condition:
            if entry.task_id in self._waiting or self._is_active(entry.task_id):
                return False
            entry.seq = next(self._seq)
            self._waiting[entry.task_id] = entry
            self._condition.notify_all()
            return True

    def withdraw(self, task_id: str) -> bool:
        """Drop a waiting task, e.g. after it was canceled."""

        with self._condition:
            return self._waiting.pop(task_id, None) is not None

    def admit(self, timeout: float | None = None) -> Lease | None:
        """Block until a slot is free and a task waits; ``None`` on timeout."""

        with self._condition:
            ready = self._condition.wait_for(
                lambda: len(self._active) < self.capacity and bool(self._waiting),
                timeout=timeout,
            )
            if not ready:
                return None
            return self._admit_locked()

    def try_admit(self) -> Lease | None:
        """Non-blocking admission."""

        with self._condition:
            if len(self._active) >= self.capacity or not self._waiting:
                return None
            return self._admit_locked()

    def release(self, lease: Lease) -> bool:
        """Return the slot held by ``lease``. Releasing twice is a no-op."""

        with self._condition:
            if self._active.pop(lease.lease_id, None) is None:
                return False
            self._condition.notify_all()
            return True

    def is_known(self, task_id: str) -> bool:
        with self._condition:
            return task_id in self._waiting or self._is_active(task_id)

    def status(self) -> AdmissionStatus:
        with self._condition:
            return AdmissionStatus(
                capacity=self.capacity,
                active=len(self._active),
                queued=len(self._waiting),
                starvation_age_seconds=self._starvation_age(),
            )

    def effective_priority(self, entry: AdmissionEntry, *, now: float | None = None) -> int:
        """Priority after starvation promotion, never below zero."""

        with self._condition:
            return self._effective_priority(entry, now=self._clock() if now is None else now)

    def _admit_locked(self) -> Lease:
        now = self._clock()
        entry = min(
            self._waiting.values(),
            key=lambda item: (self._effective_priority(item, now=now), item.queued_at, item.seq),
        )
        del self._waiting[entry.task_id]
        waited = max(0.0, now - entry.queued_at)
        effective = self._effective_priority(entry, now=now)
        self._recent_waits.append(waited)
        lease = Lease(
            lease_id=next(self._lease_ids),
            task_id=entry.task_id,
            priority=entry.priority,
            effective_priority=effective,
            admitted_at=now,
            waited_seconds=waited,
        )
        self._active[lease.lease_id] = lease
        if effective < entry.priority:
            logger.info(
                "Admitted starving task %s: priority %d promoted to %d after %.1fs",
                entry.task_id,
                entry.priority,
                effective,
                waited,
            )
        return lease

    def _effective_priority(self, entry: AdmissionEntry, *, now: float) -> int:
        waited = max(0.0, now - entry.queued_at)
        promotions = int(waited // self._starvation_age())
        return max(0, entry.priority - promotions)

    def _starvation_age(self) -> float:
        if self._configured_age is not None:
            return self._configured_age
        if not self._recent_waits:
            return self._age_floor
        derived = STARVATION_AGE_MEDIAN_FACTOR * statistics.median(self._recent_waits)
        return max(self._age_floor, derived)

    def _is_active(self, task_id: str) -> bool:
        return any(lease.task_id == task_id for lease in self._active.values())
