# carriage/core/job.py
from __future__ import annotations

import time
from typing import Any, Callable, Mapping, Optional

from carriage.core.defaults import DEFAULT_QUEUE_NAME, DEFAULT_SEMAPHORE_POLL_INTERVAL_S
from carriage.core.models.context import Context
from carriage.core.queues.base import QueueAdapter, UnitOfWork, new_job_id
from carriage.core.registry.workflows import WorkflowRegistry
from carriage.core.runner import RunOutcome, Runner
from carriage.core.workflow import Workflow


class Job:
    """One invocation of a workflow: the workflow plus the Context it runs on."""

    def __init__(
        self,
        workflow: Workflow,
        context: Context,
        *,
        queue_name: Optional[str] = None,
    ) -> None:
        self.workflow = workflow
        self.context = context
        self.queue_name = queue_name or workflow.queue_name or DEFAULT_QUEUE_NAME

    @property
    def job_id(self) -> str:
        if self.context.job_id is None:
            self.context.job_id = new_job_id()
        return self.context.job_id

    @classmethod
    def create(
        cls,
        workflow: Workflow,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        job_id: Optional[str] = None,
        queue_name: Optional[str] = None,
    ) -> Job:
        """Fresh top-level job: argument defaults merged with ``arguments``."""
        context = Context(
            arguments=workflow.build_arguments(arguments),
            job_id=job_id or new_job_id(),
        )
        return cls(workflow, context, queue_name=queue_name)

    @classmethod
    def from_unit(cls, unit: UnitOfWork, registry: WorkflowRegistry) -> Job:
        """Rebuild a job from a queued unit (resume or dispatched child)."""
        workflow = registry[unit.workflow_name]
        context = Context.deserialize(unit.payload, job_id=unit.job_id)
        return cls(workflow, context, queue_name=unit.queue_name)

    def to_unit(self) -> UnitOfWork:
        return UnitOfWork(
            workflow_name=self.workflow.name,
            payload=self.context.serialize(),
            job_id=self.job_id,
            queue_name=self.queue_name,
        )

    def perform(
        self,
        queue: QueueAdapter,
        *,
        semaphore_poll_interval: float = DEFAULT_SEMAPHORE_POLL_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> RunOutcome:
        runner = Runner(
            self.workflow,
            self.context,
            queue,
            default_queue_name=self.queue_name,
            semaphore_poll_interval=semaphore_poll_interval,
            sleep=sleep,
            clock=clock,
        )
        return runner.run()
