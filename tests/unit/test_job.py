"""Unit tests for Job: creation, unit conversion and in-process execution."""

from __future__ import annotations

import pytest

from carriage.core.job import Job
from carriage.core.models.context import Context
from carriage.core.queues.base import UnitOfWork
from carriage.core.queues.memory import InMemoryQueue
from carriage.core.registry.workflows import WorkflowNotRegistered, WorkflowRegistry
from carriage.core.runner import Done
from carriage.core.workflow import Workflow

pytestmark = pytest.mark.unit


def _greeting_workflow(queue_name: str | None = None) -> Workflow:
    wf = Workflow('greet', queue_name=queue_name)
    wf.argument('name', str, default='world')
    wf.argument('punctuation', str, default='!')
    wf.task('say', output=['text'])(
        lambda ctx: {'text': f"hello {ctx.arguments['name']}{ctx.arguments['punctuation']}"}
    )
    return wf


class TestCreate:
    def test_merges_argument_defaults(self) -> None:
        job = Job.create(_greeting_workflow(), {'name': 'ada'})
        assert job.context.arguments.to_dict() == {'name': 'ada', 'punctuation': '!'}

    def test_assigns_job_id(self) -> None:
        job = Job.create(_greeting_workflow())
        assert job.job_id
        assert job.context.job_id == job.job_id

    def test_explicit_job_id(self) -> None:
        assert Job.create(_greeting_workflow(), job_id='job-1').job_id == 'job-1'

    def test_queue_name_resolution(self) -> None:
        assert Job.create(_greeting_workflow()).queue_name == 'default'
        assert Job.create(_greeting_workflow('mail')).queue_name == 'mail'
        assert Job.create(_greeting_workflow('mail'), queue_name='urgent').queue_name == 'urgent'

    def test_job_id_assigned_lazily(self) -> None:
        job = Job(_greeting_workflow(), Context())
        job_id = job.job_id
        assert job_id
        assert job.job_id == job_id


class TestUnits:
    def test_to_unit(self) -> None:
        job = Job.create(_greeting_workflow('mail'), {'name': 'ada'}, job_id='job-1')
        unit = job.to_unit()
        assert unit.job_id == 'job-1'
        assert unit.workflow_name == 'greet'
        assert unit.queue_name == 'mail'
        assert unit.payload['arguments'] == {'name': 'ada', 'punctuation': '!'}
        assert unit.concurrency_key is None

    def test_from_unit_restores_context(self) -> None:
        registry = WorkflowRegistry()
        wf = registry.register(_greeting_workflow())
        original = Job.create(wf, {'name': 'ada'}, job_id='job-1')

        restored = Job.from_unit(original.to_unit(), registry)
        assert restored.workflow is wf
        assert restored.job_id == 'job-1'
        assert restored.context == original.context

    def test_from_unit_unknown_workflow(self) -> None:
        unit = UnitOfWork(workflow_name='missing', payload={'arguments': {}})
        with pytest.raises(WorkflowNotRegistered):
            Job.from_unit(unit, WorkflowRegistry())


class TestPerform:
    def test_runs_to_completion(self, queue: InMemoryQueue) -> None:
        job = Job.create(_greeting_workflow(), {'name': 'ada'})
        outcome = job.perform(queue, sleep=lambda s: None)
        assert isinstance(outcome, Done)
        assert outcome.context.output['say'] == [{'text': 'hello ada!'}]

    def test_dispatched_children_use_job_queue(self, queue: InMemoryQueue) -> None:
        wf = Workflow('fan')
        wf.task('each', each=lambda ctx: [1, 2], concurrency=1)(lambda ctx: None)
        Job.create(wf, queue_name='bulk').perform(queue, sleep=lambda s: None)
        record = queue.find_unit(queue.dispatched[0][0])
        assert record is not None
        assert record.unit.queue_name == 'bulk'
