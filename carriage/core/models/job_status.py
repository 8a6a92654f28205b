# carriage/core/models/job_status.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Iterator, Optional, Sequence

from carriage.core.types.status import JobState

if TYPE_CHECKING:
    from carriage.core.queues.base import QueueAdapter


@dataclass
class TaskJobStatus:
    """Queue status of one dispatched child job of a map task."""

    task_name: str
    job_id: str
    each_index: int
    status: JobState = JobState.PENDING

    @property
    def is_finished(self) -> bool:
        return self.status.is_finished

    @property
    def is_failed(self) -> bool:
        return self.status is JobState.FAILED

    def to_dict(self) -> dict[str, object]:
        return {
            'task_name': self.task_name,
            'job_id': self.job_id,
            'each_index': self.each_index,
            'status': self.status.value,
        }


class JobStatus:
    """Statuses of dispatched child jobs: task name -> list by each-index."""

    def __init__(self, statuses: Iterable[TaskJobStatus] = ()) -> None:
        self._store: dict[str, list[Optional[TaskJobStatus]]] = {}
        for status in statuses:
            self.update(status)

    def update(self, status: TaskJobStatus) -> TaskJobStatus:
        slots = self._store.setdefault(status.task_name, [])
        if status.each_index >= len(slots):
            slots.extend([None] * (status.each_index + 1 - len(slots)))
        slots[status.each_index] = status
        return status

    def record_dispatch(self, task_name: str, job_ids: Sequence[str]) -> None:
        """Record freshly dispatched children as pending, by element index."""
        for index, job_id in enumerate(job_ids):
            self.update(TaskJobStatus(task_name=task_name, job_id=job_id, each_index=index))

    def fetch(self, task_name: str, each_index: int) -> Optional[TaskJobStatus]:
        slots = self._store.get(task_name, [])
        if each_index < 0 or each_index >= len(slots):
            return None
        return slots[each_index]

    def fetch_all(self, task_name: str) -> list[TaskJobStatus]:
        return [s for s in self._store.get(task_name, []) if s is not None]

    def __getitem__(self, task_name: str) -> list[TaskJobStatus]:
        return self.fetch_all(task_name)

    def __contains__(self, task_name: object) -> bool:
        return isinstance(task_name, str) and bool(self.fetch_all(task_name))

    def __iter__(self) -> Iterator[str]:
        return iter(name for name in self._store if self.fetch_all(name))

    def is_finished(self, task_name: str) -> bool:
        """True when every recorded child finished; vacuously true for none."""
        return all(s.is_finished for s in self.fetch_all(task_name))

    def finished_job_ids(self, task_name: str) -> list[str]:
        return [s.job_id for s in self.fetch_all(task_name) if s.is_finished]

    def pending_job_ids(self, task_name: str) -> list[str]:
        return [s.job_id for s in self.fetch_all(task_name) if not s.is_finished]

    def failed_job_ids(self, task_name: str) -> list[str]:
        return [s.job_id for s in self.fetch_all(task_name) if s.is_failed]

    def refresh(self, task_name: str, queue: QueueAdapter) -> None:
        """Poll the queue for children that have not finished yet."""
        unfinished = {s.job_id: s for s in self.fetch_all(task_name) if not s.is_finished}
        if not unfinished:
            return
        for job_id, state in queue.poll_statuses(list(unfinished)).items():
            status = unfinished.get(job_id)
            if status is not None:
                status.status = JobState(state)

    def flat(self) -> list[TaskJobStatus]:
        return [s for slots in self._store.values() for s in slots if s is not None]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobStatus):
            return NotImplemented
        return {n: self.fetch_all(n) for n in self} == {n: other.fetch_all(n) for n in other}

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f'JobStatus({[s.to_dict() for s in self.flat()]!r})'
