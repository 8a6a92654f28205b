# core/types/status.py
"""
Core enums shared across the package.
This module should not import from other carriage modules.
"""

from enum import Enum


class JobState(str, Enum):
    """Lifecycle of a unit of work as reported by the queue."""

    PENDING = 'pending'  # Enqueued, not yet picked up by a worker.
    RUNNING = 'running'  # A worker is executing it.
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'

    @property
    def is_finished(self) -> bool:
        """Whether no further transitions will happen."""
        return self in JOB_FINISHED_STATES


JOB_FINISHED_STATES: frozenset[JobState] = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
})
