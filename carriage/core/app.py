# carriage/core/app.py
from __future__ import annotations

import time
from typing import Any, Callable, Optional

from carriage.core.codec.serde import SerializationError
from carriage.core.job import Job
from carriage.core.logging import get_logger, set_default_level
from carriage.core.models.app import AppConfig
from carriage.core.models.schedule import build_schedule_config
from carriage.core.queues.base import Payload, QueueAdapter, UnitOfWork
from carriage.core.queues.memory import InMemoryQueue
from carriage.core.registry.workflows import WorkflowRegistry
from carriage.core.runner import RunOutcome, Suspended
from carriage.core.status import WorkflowStatusView
from carriage.core.workflow import Workflow


class Carriage:
    """
    Application object: owns the workflow registry and the queue adapter.

    Producers call ``start()``; workers hand each unit they pull off the
    queue to ``execute()``.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        queue: Optional[QueueAdapter] = None,
        registry: Optional[WorkflowRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or AppConfig()
        set_default_level(self.config.log_level_value)
        self.logger = get_logger('app')
        self.registry = registry if registry is not None else WorkflowRegistry()
        self.queue = queue if queue is not None else InMemoryQueue(eager=self.config.eager_dispatch)
        self.queue.bind_executor(self.execute)
        self._sleep = sleep
        self._clock = clock

        self.logger.info(
            f'carriage initialized with {type(self.queue).__name__} '
            f'(default queue={self.config.default_queue_name})'
        )

    # --- declaration ---

    def workflow(
        self,
        name: str,
        *,
        dry_run: Any = None,
        queue_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Workflow:
        """Declare a workflow and register it with this app."""
        workflow = Workflow(
            name,
            dry_run=dry_run,
            queue_name=queue_name,
            description=description,
        )
        return self.registry.register(workflow)

    def register(self, workflow: Workflow) -> Workflow:
        return self.registry.register(workflow)

    def list_workflows(self) -> list[str]:
        return list(self.registry)

    def check(self) -> None:
        """Validate and seal every registered workflow; raises all errors at once."""
        self.registry.check()
        self.logger.info(f'checked {len(self.registry)} workflow(s)')

    # --- producing ---

    def _new_job(self, workflow_name: str, arguments: dict[str, Any]) -> Job:
        workflow = self.registry[workflow_name].seal()
        return Job.create(
            workflow,
            arguments,
            queue_name=workflow.queue_name or self.config.default_queue_name,
        )

    def start(self, workflow_name: str, /, **arguments: Any) -> str:
        """Enqueue a top-level run of ``workflow_name``; returns its job id."""
        job = self._new_job(workflow_name, arguments)
        job_id = self.queue.enqueue(job.to_unit())
        self.logger.info(f"started job {job_id} of workflow '{workflow_name}'")
        return job_id

    def perform_now(self, workflow_name: str, /, **arguments: Any) -> RunOutcome:
        """Run ``workflow_name`` in this process, bypassing the queue.

        Dispatched map tasks still submit their children to the queue.
        """
        job = self._new_job(workflow_name, arguments)
        return self._perform(job)

    def _perform(self, job: Job) -> RunOutcome:
        return job.perform(
            self.queue,
            semaphore_poll_interval=self.config.semaphore_poll_interval_s,
            sleep=self._sleep,
            clock=self._clock,
        )

    # --- consuming ---

    def execute(self, unit: UnitOfWork) -> RunOutcome:
        """Worker entry point for one unit of work.

        Reports running/succeeded/failed to the queue and re-enqueues the
        unit with its resume token when the run suspends.
        """
        job = Job.from_unit(unit, self.registry)
        self.queue.mark_running(unit.job_id)
        try:
            outcome = self._perform(job)
        except Exception as exc:
            self.queue.mark_failed(unit.job_id, self._partial_payload(job, unit), exc)
            raise

        if isinstance(outcome, Suspended):
            self.queue.reschedule_current(unit.with_payload(outcome.resume_token), outcome.delay)
        else:
            self.queue.mark_succeeded(unit.job_id, outcome.context.serialize())
        return outcome

    def _partial_payload(self, job: Job, unit: UnitOfWork) -> Payload:
        try:
            return job.context.serialize()
        except SerializationError as exc:
            self.logger.warning(
                f'job {unit.job_id}: could not serialize context after failure ({exc}); '
                'keeping the last stored payload'
            )
            return unit.payload

    # --- queries ---

    def status(self, job_id: str) -> WorkflowStatusView:
        """
        Raises:
            UnitNotFoundError: if the queue does not know ``job_id``.
        """
        return WorkflowStatusView.find(job_id, self.queue, self.registry)

    def find_status(self, job_id: str) -> Optional[WorkflowStatusView]:
        return WorkflowStatusView.find_by(job_id, self.queue, self.registry)

    def schedule_config(self) -> dict[str, dict[str, Any]]:
        """Every declared schedule as ``{key: config}`` for a recurring-job scheduler."""
        return build_schedule_config(self.registry)
