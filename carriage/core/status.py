# carriage/core/status.py
from __future__ import annotations

from typing import Any, Optional

from carriage.core.errors import UnitNotFoundError
from carriage.core.models.context import Context
from carriage.core.models.job_status import JobStatus
from carriage.core.models.output import Output
from carriage.core.queues.base import QueueAdapter, UnitRecord
from carriage.core.registry.workflows import WorkflowRegistry
from carriage.core.types.status import JobState
from carriage.core.workflow import Workflow


class WorkflowStatusView:
    """Read-only snapshot of a job, rebuilt from the queue's stored payload."""

    def __init__(self, record: UnitRecord, workflow: Workflow) -> None:
        self.record = record
        self.workflow = workflow
        self.context = Context.deserialize(record.payload, job_id=record.job_id)

    @classmethod
    def find(
        cls,
        job_id: str,
        queue: QueueAdapter,
        registry: WorkflowRegistry,
    ) -> WorkflowStatusView:
        """
        Raises:
            UnitNotFoundError: if the queue has no unit with this id.
        """
        view = cls.find_by(job_id, queue, registry)
        if view is None:
            raise UnitNotFoundError(job_id)
        return view

    @classmethod
    def find_by(
        cls,
        job_id: str,
        queue: QueueAdapter,
        registry: WorkflowRegistry,
    ) -> Optional[WorkflowStatusView]:
        record = queue.find_unit(job_id)
        if record is None:
            return None
        return cls(record, registry[record.workflow_name])

    @property
    def job_id(self) -> str:
        return self.record.job_id

    @property
    def workflow_name(self) -> str:
        return self.workflow.name

    @property
    def status(self) -> JobState:
        return self.record.status

    @property
    def error(self) -> Optional[str]:
        return self.record.error

    @property
    def current_task_name(self) -> Optional[str]:
        """Task the job is on (or failed at); None once it succeeded."""
        if self.context.each_state is not None:
            return self.context.each_state.task_name
        if self.status is JobState.SUCCEEDED:
            return None
        checkpoint = self.context.checkpoint
        if checkpoint.task_name is not None:
            return checkpoint.task_name
        for task in self.workflow.execution_order():
            if not checkpoint.is_settled(task.qualified_name):
                return task.qualified_name
        return None

    @property
    def arguments(self) -> dict[str, Any]:
        return self.context.arguments.to_dict()

    @property
    def output(self) -> Output:
        return self.context.output

    @property
    def job_status(self) -> JobStatus:
        return self.context.job_status

    # --- predicates ---

    @property
    def is_pending(self) -> bool:
        return self.status is JobState.PENDING

    @property
    def is_running(self) -> bool:
        return self.status is JobState.RUNNING

    @property
    def is_succeeded(self) -> bool:
        return self.status is JobState.SUCCEEDED

    @property
    def is_failed(self) -> bool:
        return self.status is JobState.FAILED

    @property
    def is_finished(self) -> bool:
        return self.status.is_finished

    def to_dict(self) -> dict[str, Any]:
        return {
            'job_id': self.job_id,
            'workflow_name': self.workflow_name,
            'status': self.status.value,
            'current_task_name': self.current_task_name,
            'arguments': self.context.serialize()['arguments'],
            'output': [o.to_dict() for o in self.output.flat()],
            'job_status': [s.to_dict() for s in self.job_status.flat()],
            'error': self.error,
        }

    def __repr__(self) -> str:
        return (
            f'WorkflowStatusView(job_id={self.job_id!r}, workflow={self.workflow_name!r}, '
            f'status={self.status.value!r}, task={self.current_task_name!r})'
        )
