# carriage/core/queues/memory.py
from __future__ import annotations

import threading
import time
from collections import Counter, deque
from typing import Callable, Mapping, Optional, Sequence

from carriage.core.errors import CarriageRuntimeError
from carriage.core.logging import get_logger
from carriage.core.models.semaphore import Semaphore
from carriage.core.queues.base import (
    Executor,
    Payload,
    QueueAdapter,
    UnitOfWork,
    UnitRecord,
)
from carriage.core.types.status import JobState

logger = get_logger('queue')

# Upper bound on executions per run_pending() call; a job that keeps
# rescheduling itself stops the drain with an error.
MAX_DRAIN_RUNS = 10_000


class InMemoryQueue(QueueAdapter):
    """Single-process queue adapter for tests and scripts. Not durable.

    With ``eager=True`` enqueued and dispatched units execute immediately
    through the bound executor. Rescheduled units always wait for
    ``run_pending()``.
    """

    def __init__(
        self,
        *,
        eager: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.eager = eager
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, UnitRecord] = {}
        self._ready: deque[tuple[float, str]] = deque()
        self._executor: Optional[Executor] = None

        # key -> expiry timestamps of permits currently granted
        self._permits: dict[str, list[float]] = {}
        # permits taken by this process, per key
        self._held: Counter[str] = Counter()

        self.dispatched: list[list[str]] = []
        self.reschedules: list[tuple[str, float]] = []

    def bind_executor(self, executor: Executor) -> None:
        self._executor = executor

    # --- admission control ---

    def _active_permits(self, key: str) -> list[float]:
        now = self._clock()
        active = [expiry for expiry in self._permits.get(key, []) if expiry > now]
        self._permits[key] = active
        return active

    def acquire_permit(self, semaphore: Semaphore) -> bool:
        if semaphore.concurrency_limit is None:
            return True
        key = semaphore.concurrency_key
        with self._lock:
            active = self._active_permits(key)
            if len(active) >= semaphore.concurrency_limit:
                return False
            active.append(self._clock() + semaphore.concurrency_duration)
            self._held[key] += 1
            return True

    def release_permit(self, semaphore: Semaphore) -> bool:
        if semaphore.concurrency_limit is None:
            return True
        key = semaphore.concurrency_key
        with self._lock:
            if self._held[key] <= 0:
                return False
            self._held[key] -= 1
            active = self._active_permits(key)
            if active:
                active.remove(min(active))
            return True

    def permits_in_use(self, key: str) -> int:
        with self._lock:
            return len(self._active_permits(key))

    def _is_saturated(self, unit: UnitOfWork) -> bool:
        semaphore = unit.semaphore()
        if semaphore is None or semaphore.concurrency_limit is None:
            return False
        return len(self._active_permits(semaphore.concurrency_key)) >= semaphore.concurrency_limit

    # --- submission ---

    def _store(self, unit: UnitOfWork, delay: float) -> None:
        with self._lock:
            self._records[unit.job_id] = UnitRecord(unit=unit)
            self._ready.append((self._clock() + delay, unit.job_id))

    def enqueue(self, unit: UnitOfWork, *, delay: float = 0) -> str:
        self._store(unit, delay)
        logger.debug(f"enqueued job {unit.job_id} ({unit.workflow_name})")
        if self.eager and delay <= 0:
            self._run(unit.job_id)
        return unit.job_id

    def dispatch_batch(self, units: Sequence[UnitOfWork]) -> list[str]:
        ids = [unit.job_id for unit in units]
        for unit in units:
            self._store(unit, 0)
        self.dispatched.append(ids)
        if self.eager:
            for job_id in ids:
                self._run(job_id)
        return ids

    def reschedule_current(self, unit: UnitOfWork, delay: float) -> None:
        with self._lock:
            record = self._records.get(unit.job_id)
            if record is None:
                record = UnitRecord(unit=unit)
                self._records[unit.job_id] = record
            record.unit = unit
            record.status = JobState.PENDING
            self._ready.append((self._clock() + delay, unit.job_id))
            self.reschedules.append((unit.job_id, delay))
        logger.debug(f'job {unit.job_id} rescheduled in {delay}s')

    # --- queries ---

    def poll_statuses(self, job_ids: Sequence[str]) -> Mapping[str, JobState]:
        with self._lock:
            return {
                job_id: self._records[job_id].status
                for job_id in job_ids
                if job_id in self._records
            }

    def fetch_completed_context(self, job_id: str) -> Optional[Payload]:
        with self._lock:
            record = self._records.get(job_id)
            if record is None or not record.status.is_finished:
                return None
            return record.payload

    def find_unit(self, job_id: str) -> Optional[UnitRecord]:
        with self._lock:
            return self._records.get(job_id)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._ready)

    # --- worker-side reporting ---

    def mark_running(self, job_id: str) -> None:
        self._set_state(job_id, JobState.RUNNING)

    def mark_succeeded(self, job_id: str, payload: Payload) -> None:
        self._set_state(job_id, JobState.SUCCEEDED, payload=payload)

    def mark_failed(self, job_id: str, payload: Payload, error: BaseException) -> None:
        self._set_state(
            job_id,
            JobState.FAILED,
            payload=payload,
            error=f'{type(error).__name__}: {error}',
        )

    def _set_state(
        self,
        job_id: str,
        state: JobState,
        *,
        payload: Optional[Payload] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return
            record.status = state
            if payload is not None:
                record.unit = record.unit.with_payload(payload)
            if error is not None:
                record.error = error

    # --- execution ---

    def _run(self, job_id: str) -> bool:
        """Execute one unit; False if its sibling limit left it queued."""
        if self._executor is None:
            raise CarriageRuntimeError('InMemoryQueue has no executor bound')
        with self._lock:
            record = self._records[job_id]
            semaphore = record.unit.semaphore()
            if semaphore is not None and not self.acquire_permit(semaphore):
                logger.debug(
                    f"job {job_id} waiting: '{semaphore.concurrency_key}' is at its "
                    f'limit of {semaphore.concurrency_limit}'
                )
                return False
            self._ready = deque(entry for entry in self._ready if entry[1] != job_id)
        try:
            self._executor(record.unit)
        except Exception as exc:
            logger.error(f'job {job_id} ({record.workflow_name}) failed: {type(exc).__name__}: {exc}')
            with self._lock:
                if not record.status.is_finished:
                    record.status = JobState.FAILED
                    record.error = f'{type(exc).__name__}: {exc}'
        finally:
            if semaphore is not None:
                self.release_permit(semaphore)
        return True

    def run_pending(self, *, respect_delays: bool = False) -> int:
        """Execute queued units in FIFO order until none are left.

        Delays are ignored unless ``respect_delays`` is set, in which case
        units that are not due yet stay queued. Dispatched map-task children
        whose siblings already hold every slot of their concurrency limit
        are skipped. Returns the number of units executed.
        """
        executed = 0
        while executed < MAX_DRAIN_RUNS:
            with self._lock:
                due = self._next_due(respect_delays)
            if due is None or not self._run(due):
                return executed
            executed += 1
        raise CarriageRuntimeError(
            f'run_pending() stopped after {MAX_DRAIN_RUNS} executions; '
            'a job keeps rescheduling itself'
        )

    def _next_due(self, respect_delays: bool) -> Optional[str]:
        now = self._clock()
        for run_at, job_id in list(self._ready):
            if respect_delays and run_at > now:
                continue
            record = self._records.get(job_id)
            if record is not None and record.status is JobState.PENDING:
                if self._is_saturated(record.unit):
                    continue
                return job_id
            self._ready.remove((run_at, job_id))
        return None
