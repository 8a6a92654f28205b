# carriage/core/runner.py
"""Executes one unit of work against its Context.

Per task, in declaration order::

    condition -> dependency wait -> retry(
        throttle permit(
            before hooks -> around hooks(body -> output) -> after hooks
        )
    ) -> error hooks on final failure

A map task either iterates its elements inline or, when it declares a
concurrency limit, dispatches one child job per element and moves on. A
later task that depends on it polls the queue until every child finished.
If that wait times out under the 'reschedule' policy the run returns
``Suspended`` with a resume token; the caller re-enqueues the job and the
next run skips everything the checkpoint already settled.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from carriage.core.defaults import DEFAULT_QUEUE_NAME, DEFAULT_SEMAPHORE_POLL_INTERVAL_S
from carriage.core.errors import (
    DependencyNotSettledError,
    DependencyTimeoutError,
    HookAlreadyInvokedError,
    HookNotInvokedError,
)
from carriage.core.logging import get_logger
from carriage.core.models.context import Context, EachState
from carriage.core.models.hooks import Hook, TaskCallable
from carriage.core.models.semaphore import hold_permit
from carriage.core.models.task import Task
from carriage.core.queues.base import Payload, QueueAdapter, UnitOfWork, new_job_id
from carriage.core.types.status import JobState
from carriage.core.workflow import Workflow

logger = get_logger('runner')

# Hook contract violations fail the task immediately; retrying cannot fix them.
_CONTROL_ERRORS = (HookNotInvokedError, HookAlreadyInvokedError)


@dataclass(frozen=True)
class Done:
    """The run processed every task."""

    context: Context


@dataclass(frozen=True)
class Suspended:
    """The run stopped to wait for dispatched jobs; resume after ``delay``."""

    context: Context
    task_name: str
    delay: float
    resume_token: Payload = field(default_factory=dict)


RunOutcome = Union[Done, Suspended]


class _SuspendRun(Exception):
    def __init__(self, task_name: str, delay: float) -> None:
        super().__init__(task_name, delay)
        self.task_name = task_name
        self.delay = delay


class Runner:
    """Drives a Context through a Workflow. One runner per unit of work."""

    def __init__(
        self,
        workflow: Workflow,
        context: Context,
        queue: QueueAdapter,
        *,
        default_queue_name: str = DEFAULT_QUEUE_NAME,
        semaphore_poll_interval: float = DEFAULT_SEMAPHORE_POLL_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.workflow = workflow
        self.context = context
        self.queue = queue
        self.default_queue_name = default_queue_name
        self.semaphore_poll_interval = semaphore_poll_interval
        self._sleep = sleep
        self._clock = clock

        if self.context.job_id is None:
            self.context.job_id = new_job_id()

    # =========================================================================
    # Entry points
    # =========================================================================

    def run(self) -> RunOutcome:
        self.workflow.seal()
        self.context.bind(
            self.queue,
            poll_interval=self.semaphore_poll_interval,
            sleep=self._sleep,
        )

        if self.context.each_state is not None:
            self._run_each_child()
            return Done(self.context)

        checkpoint = self.context.checkpoint
        try:
            for task in self.workflow.execution_order():
                name = task.qualified_name
                if checkpoint.is_settled(name):
                    logger.debug(f"task '{name}' already settled, skipping")
                    continue
                self._run_task(task)
                checkpoint.settle(name)
        except _SuspendRun as suspend:
            logger.info(
                f"job {self.context.job_id} suspended at task '{suspend.task_name}', "
                f'resuming in {suspend.delay}s'
            )
            return Suspended(
                context=self.context,
                task_name=suspend.task_name,
                delay=suspend.delay,
                resume_token=self.context.serialize(),
            )

        return Done(self.context)

    def _run_each_child(self) -> None:
        """Execute the single map element this child job was dispatched for."""
        state = self.context.each_state
        assert state is not None
        task = self.workflow.fetch_task(state.task_name)
        dry_run = self.workflow.resolve_dry_run(task, self.context)
        with self.context.entering(task, dry_run=dry_run, each_state=state):
            self._execute(task, each_index=state.index)

    # =========================================================================
    # Per-task steps
    # =========================================================================

    def _run_task(self, task: Task) -> None:
        name = task.qualified_name
        ctx = self.context

        with ctx.entering(task):
            should_run = task.should_run(ctx)
        if not should_run:
            logger.info(f"task '{name}' skipped: condition not met")
            return

        self._wait_for_dependencies(task)
        dry_run = self.workflow.resolve_dry_run(task, ctx)

        if task.is_dispatched:
            with ctx.entering(task, dry_run=dry_run):
                self._dispatch(task)
        elif task.is_map_task:
            self._run_inline_map(task, dry_run)
        else:
            with ctx.entering(task, dry_run=dry_run):
                self._execute(task, each_index=None)

    def _run_inline_map(self, task: Task, dry_run: bool) -> None:
        name = task.qualified_name
        ctx = self.context
        with ctx.entering(task, dry_run=dry_run):
            values = task.evaluate_each(ctx)

        start = ctx.checkpoint.resume_index(name)
        if start:
            logger.info(f"task '{name}' resuming at element {start}/{len(values)}")
        for index, value in enumerate(values):
            if index < start:
                continue
            state = EachState(task_name=name, index=index, value=value)
            with ctx.entering(task, dry_run=dry_run, each_state=state):
                self._execute(task, each_index=index)
            ctx.checkpoint.advance(name, index)

    def _dispatch(self, task: Task) -> None:
        name = task.qualified_name
        ctx = self.context
        queue_name = task.queue_name or self.workflow.queue_name or self.default_queue_name

        units: list[UnitOfWork] = []
        for index, value in enumerate(task.evaluate_each(ctx)):
            child = ctx.fork_each(task, index, value)
            units.append(
                UnitOfWork(
                    workflow_name=self.workflow.name,
                    payload=child.serialize(),
                    queue_name=queue_name,
                    concurrency_key=child.concurrency_key,
                    concurrency_limit=task.concurrency_limit,
                )
            )

        job_ids = self.queue.dispatch_batch(units) if units else []
        ctx.job_status.record_dispatch(name, job_ids)
        logger.info(
            f"task '{name}' dispatched {len(job_ids)} jobs "
            f'(concurrency={task.concurrency_limit}, queue={queue_name})'
        )

    # =========================================================================
    # Retry, throttle and hooks
    # =========================================================================

    def _execute(self, task: Task, each_index: Optional[int]) -> None:
        name = task.qualified_name
        policy = task.retry
        attempt = 0

        while True:
            attempt += 1
            try:
                self._attempt(task, each_index)
                logger.debug(f"task '{name}' finished (attempt {attempt})")
                return
            except _CONTROL_ERRORS as exc:
                logger.error(f"task '{name}' aborted: {exc}")
                self._run_error_hooks(task, exc)
                raise
            except Exception as exc:
                if attempt >= policy.max_attempts:
                    logger.error(
                        f"task '{name}' failed after {attempt} attempt(s): "
                        f'{type(exc).__name__}: {exc}'
                    )
                    self._run_error_hooks(task, exc)
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"task '{name}' failed (attempt {attempt}/{policy.max_attempts}): "
                    f'{type(exc).__name__}: {exc}; retrying in {delay:.2f}s'
                )
                self._sleep(delay)

    def _attempt(self, task: Task, each_index: Optional[int]) -> None:
        name = task.qualified_name
        hooks = self.workflow.hooks
        ctx = self.context
        semaphore = task.throttle.semaphore() if task.throttle is not None else None

        with hold_permit(
            self.queue,
            semaphore,
            poll_interval=self.semaphore_poll_interval,
            sleep=self._sleep,
        ):
            ctx.begin_attempt()
            # The body records its output inside the around chain so around
            # hooks can read it; a failure later in the attempt takes it back.
            previous = ctx.output.fetch(name, each_index)
            try:
                for hook in hooks.before_hooks_for(name):
                    hook.invoke(ctx)
                self._call_around(
                    task,
                    hooks.around_hooks_for(name),
                    lambda: self._call_body(task, each_index),
                )
                for hook in hooks.after_hooks_for(name):
                    hook.invoke(ctx)
            except Exception:
                ctx.output.restore(name, each_index, previous)
                raise

    def _call_around(
        self,
        task: Task,
        around_hooks: list[Hook],
        innermost: Callable[[], Any],
    ) -> None:
        if not around_hooks:
            innermost()
            return

        outer, inner = around_hooks[0], around_hooks[1:]
        continuation = TaskCallable(
            task.qualified_name,
            lambda: self._call_around(task, inner, innermost),
        )
        outer.invoke(self.context, continuation)
        if not continuation.called:
            raise HookNotInvokedError(task.qualified_name)

    def _call_body(self, task: Task, each_index: Optional[int]) -> None:
        value = task.body(self.context)
        task_output = task.build_output(value, each_index)
        if task_output is not None:
            self.context.output.add(task_output)

    def _run_error_hooks(self, task: Task, error: BaseException) -> None:
        for hook in self.workflow.hooks.error_hooks_for(task.qualified_name):
            hook.invoke(self.context, error)

    # =========================================================================
    # Dependency wait
    # =========================================================================

    def _wait_for_dependencies(self, task: Task) -> None:
        for dep_name in task.depends_on:
            dep = self.workflow.fetch_task(dep_name)
            if not self.context.checkpoint.is_settled(dep_name):
                raise DependencyNotSettledError(task.qualified_name, dep_name)
            if dep.is_dispatched:
                self._wait_for_dispatched(task, dep)

    def _wait_for_dispatched(self, task: Task, dep: Task) -> None:
        policy = task.dependency_wait
        dep_name = dep.qualified_name
        job_status = self.context.job_status
        started = self._clock()
        polls = 0

        while True:
            job_status.refresh(dep_name, self.queue)
            if job_status.is_finished(dep_name):
                break

            polls += 1
            elapsed = self._clock() - started
            if not policy.polling_only and elapsed >= policy.poll_timeout:
                if policy.on_timeout == 'fail':
                    raise DependencyTimeoutError(task.qualified_name, dep_name, elapsed)
                logger.info(
                    f"task '{task.qualified_name}' still waiting on '{dep_name}' after "
                    f'{polls} polls; rescheduling'
                )
                raise _SuspendRun(task.qualified_name, policy.reschedule_delay)

            pending = len(job_status.pending_job_ids(dep_name))
            logger.debug(
                f"task '{task.qualified_name}' waiting on {pending} jobs of '{dep_name}'"
            )
            self._sleep(policy.poll_interval)

        self._merge_child_outputs(dep)

    def _merge_child_outputs(self, dep: Task) -> None:
        dep_name = dep.qualified_name
        statuses = self.context.job_status.fetch_all(dep_name)

        failed = [s.job_id for s in statuses if s.status is JobState.FAILED]
        if failed:
            logger.warning(
                f"{len(failed)} of {len(statuses)} dispatched jobs of '{dep_name}' failed: {failed}"
            )
        if not dep.has_output:
            return

        for status in statuses:
            if status.status is not JobState.SUCCEEDED:
                continue
            payload = self.queue.fetch_completed_context(status.job_id)
            if payload is None:
                continue
            child_output = Context.deserialize(payload).output.fetch(dep_name, status.each_index)
            if child_output is not None:
                self.context.output.add(child_output)
