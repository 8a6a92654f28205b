# carriage/core/queues/base.py
"""The queue collaborator the runner talks to.

carriage does not persist or execute jobs itself. A queue adapter owns the
durable state of units of work, admission control for throttles, and
delayed re-execution of suspended jobs.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Optional, Sequence

from carriage.core.defaults import DEFAULT_QUEUE_NAME
from carriage.core.models.semaphore import Semaphore
from carriage.core.types.status import JobState

Payload = dict[str, Any]
"""A serialized Context (see ``Context.serialize``)."""

Executor = Callable[['UnitOfWork'], Any]


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class UnitOfWork:
    """One enqueued invocation of a workflow.

    ``concurrency_key``/``concurrency_limit`` are set on dispatched map-task
    children so the queue can cap how many siblings run at once.
    """

    workflow_name: str
    payload: Payload
    job_id: str = field(default_factory=new_job_id)
    queue_name: str = DEFAULT_QUEUE_NAME
    concurrency_key: Optional[str] = None
    concurrency_limit: Optional[int] = None

    def with_payload(self, payload: Payload) -> UnitOfWork:
        return replace(self, payload=payload)

    def semaphore(self) -> Optional[Semaphore]:
        """Permit request shared by siblings of one dispatched map task."""
        if self.concurrency_key is None or self.concurrency_limit is None:
            return None
        return Semaphore(
            concurrency_key=self.concurrency_key,
            concurrency_limit=self.concurrency_limit,
        )


@dataclass
class UnitRecord:
    """Queue-side view of a unit of work and its latest state."""

    unit: UnitOfWork
    status: JobState = JobState.PENDING
    error: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.unit.job_id

    @property
    def workflow_name(self) -> str:
        return self.unit.workflow_name

    @property
    def payload(self) -> Payload:
        return self.unit.payload


class QueueAdapter(ABC):
    """Interface consumed by the runner and the application.

    Implementations must make ``release_permit`` idempotent: releasing a
    permit this process does not hold is a no-op returning False.
    """

    # --- admission control ---

    @abstractmethod
    def acquire_permit(self, semaphore: Semaphore) -> bool:
        """Try to take one permit; False when the key is saturated."""

    @abstractmethod
    def release_permit(self, semaphore: Semaphore) -> bool:
        """Return one permit; False when none was held."""

    # --- fan-out and polling ---

    @abstractmethod
    def dispatch_batch(self, units: Sequence[UnitOfWork]) -> list[str]:
        """Submit child units without waiting; returns their job ids in order."""

    @abstractmethod
    def poll_statuses(self, job_ids: Sequence[str]) -> Mapping[str, JobState]:
        """Current status of each known job id."""

    @abstractmethod
    def fetch_completed_context(self, job_id: str) -> Optional[Payload]:
        """Serialized context a finished job stored, or None."""

    # --- lifecycle of the current unit ---

    @abstractmethod
    def enqueue(self, unit: UnitOfWork, *, delay: float = 0) -> str:
        """Submit a top-level unit of work."""

    @abstractmethod
    def reschedule_current(self, unit: UnitOfWork, delay: float) -> None:
        """Run ``unit`` again (with its updated payload) after ``delay`` seconds."""

    @abstractmethod
    def find_unit(self, job_id: str) -> Optional[UnitRecord]:
        """Look up a unit of work by id."""

    # Status reporting from the worker side; durable queues usually track
    # these themselves.

    def mark_running(self, job_id: str) -> None:
        return None

    def mark_succeeded(self, job_id: str, payload: Payload) -> None:
        return None

    def mark_failed(self, job_id: str, payload: Payload, error: BaseException) -> None:
        return None

    def bind_executor(self, executor: Executor) -> None:
        """Give the adapter a callable that runs one unit in-process."""
        return None
