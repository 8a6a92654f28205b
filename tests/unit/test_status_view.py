"""Unit tests for the read-only workflow status view."""

from __future__ import annotations

import pytest

from carriage.core.errors import UnitNotFoundError
from carriage.core.job import Job
from carriage.core.models.context import Checkpoint, Context, EachState
from carriage.core.models.output import TaskOutput
from carriage.core.queues.base import UnitOfWork
from carriage.core.queues.memory import InMemoryQueue
from carriage.core.registry.workflows import WorkflowRegistry
from carriage.core.status import WorkflowStatusView
from carriage.core.types.status import JobState
from carriage.core.workflow import Workflow

pytestmark = pytest.mark.unit


@pytest.fixture
def registry() -> WorkflowRegistry:
    wf = Workflow('orders')
    wf.argument('order_id', int, default=0)
    wf.task('reserve', output=['ok'])(lambda ctx: {'ok': True})
    wf.task('charge', depends_on='reserve', output=['receipt'])(lambda ctx: {'receipt': 'R'})
    wf.task('ship')(lambda ctx: None)
    registry = WorkflowRegistry()
    registry.register(wf)
    return registry


def _enqueue(queue: InMemoryQueue, context: Context, job_id: str = 'job-1') -> str:
    return queue.enqueue(
        UnitOfWork(workflow_name='orders', payload=context.serialize(), job_id=job_id)
    )


class TestLookup:
    def test_unknown_job(self, queue: InMemoryQueue, registry: WorkflowRegistry) -> None:
        with pytest.raises(UnitNotFoundError):
            WorkflowStatusView.find('nope', queue, registry)
        assert WorkflowStatusView.find_by('nope', queue, registry) is None

    def test_pending_job(self, queue: InMemoryQueue, registry: WorkflowRegistry) -> None:
        _enqueue(queue, Context(arguments={'order_id': 7}))
        view = WorkflowStatusView.find('job-1', queue, registry)
        assert view.job_id == 'job-1'
        assert view.workflow_name == 'orders'
        assert view.status is JobState.PENDING
        assert view.is_pending
        assert not view.is_finished
        assert view.arguments == {'order_id': 7}
        assert view.current_task_name == 'reserve'


class TestCurrentTask:
    def test_first_unsettled_task(self, queue: InMemoryQueue, registry: WorkflowRegistry) -> None:
        _enqueue(queue, Context(checkpoint=Checkpoint(settled=['reserve'])))
        view = WorkflowStatusView.find('job-1', queue, registry)
        assert view.current_task_name == 'charge'

    def test_checkpoint_task_wins(self, queue: InMemoryQueue, registry: WorkflowRegistry) -> None:
        _enqueue(queue, Context(checkpoint=Checkpoint(settled=['reserve'], task_name='ship')))
        assert WorkflowStatusView.find('job-1', queue, registry).current_task_name == 'ship'

    def test_each_child_reports_its_task(
        self, queue: InMemoryQueue, registry: WorkflowRegistry
    ) -> None:
        _enqueue(queue, Context(each_state=EachState('charge', 0, value=1, parent_job_id='p')))
        assert WorkflowStatusView.find('job-1', queue, registry).current_task_name == 'charge'

    def test_succeeded_has_no_current_task(
        self, queue: InMemoryQueue, registry: WorkflowRegistry
    ) -> None:
        ctx = Context()
        ctx.output.add(TaskOutput('reserve', {'ok': True}))
        _enqueue(queue, ctx)
        queue.mark_succeeded('job-1', ctx.serialize())
        view = WorkflowStatusView.find('job-1', queue, registry)
        assert view.is_succeeded
        assert view.is_finished
        assert view.current_task_name is None
        assert view.output['reserve'] == [{'ok': True}]


class TestFailed:
    def test_failed_job_exposes_error_and_partial_output(
        self, queue: InMemoryQueue, registry: WorkflowRegistry
    ) -> None:
        ctx = Context(checkpoint=Checkpoint(settled=['reserve']))
        ctx.output.add(TaskOutput('reserve', {'ok': True}))
        _enqueue(queue, ctx)
        queue.mark_failed('job-1', ctx.serialize(), RuntimeError('card declined'))

        view = WorkflowStatusView.find('job-1', queue, registry)
        assert view.is_failed
        assert view.error == 'RuntimeError: card declined'
        assert view.current_task_name == 'charge'

        data = view.to_dict()
        assert data['status'] == 'failed'
        assert data['current_task_name'] == 'charge'
        assert data['output'] == [{'task_name': 'reserve', 'each_index': None, 'data': {'ok': True}}]
        assert data['error'] == 'RuntimeError: card declined'

    def test_repr(self, queue: InMemoryQueue, registry: WorkflowRegistry) -> None:
        _enqueue(queue, Context())
        assert "status='pending'" in repr(WorkflowStatusView.find('job-1', queue, registry))


class TestFromJob:
    def test_view_of_enqueued_job(self, queue: InMemoryQueue, registry: WorkflowRegistry) -> None:
        job = Job.create(registry['orders'], {'order_id': 3}, job_id='job-9')
        queue.enqueue(job.to_unit())
        assert WorkflowStatusView.find('job-9', queue, registry).arguments == {'order_id': 3}
