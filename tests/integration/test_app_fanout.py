"""Dispatched fan-out, suspension and status queries through the worker entry point."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from carriage import (
    AppConfig,
    Carriage,
    ConfigurationError,
    JobState,
    UnitNotFoundError,
)
from carriage.core.queues.memory import InMemoryQueue

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = pytest.mark.integration


def _declare_mailer(app: Carriage, dependency_wait: object = None) -> None:
    wf = app.workflow('mailer')
    wf.argument('recipients', list, default=['a@example.com', 'b@example.com', 'c@example.com'])

    @wf.task('send', each=lambda ctx: ctx.arguments['recipients'], concurrency=2, output=['sent_to'])
    def send(ctx):
        if ctx.each_value.startswith('bounce'):
            raise ValueError(f'mailbox {ctx.each_value} rejected the message')
        return {'sent_to': ctx.each_value}

    @wf.task('report', depends_on='send', dependency_wait=dependency_wait, output=['delivered'])
    def report(ctx):
        return {'delivered': sorted(o['sent_to'] for o in ctx.output['send'])}


class TestEagerQueue:
    @pytest.fixture
    def app(self, clock: FakeClock) -> Carriage:
        queue = InMemoryQueue(eager=True, clock=clock)
        return Carriage(
            AppConfig(log_level='WARNING'), queue=queue, sleep=clock.sleep, clock=clock
        )

    def test_children_run_before_dependent(self, app: Carriage) -> None:
        _declare_mailer(app)
        job_id = app.start('mailer')

        view = app.status(job_id)
        assert view.status is JobState.SUCCEEDED
        assert view.current_task_name is None
        assert view.output['report'] == [
            {'delivered': ['a@example.com', 'b@example.com', 'c@example.com']}
        ]

        statuses = view.job_status['send']
        assert len(statuses) == 3
        assert all(s.status is JobState.SUCCEEDED for s in statuses)
        for status in statuses:
            assert app.status(status.job_id).is_succeeded

    def test_failed_child_is_not_merged(self, app: Carriage) -> None:
        _declare_mailer(app)
        job_id = app.start('mailer', recipients=['a@example.com', 'bounce@example.com'])

        view = app.status(job_id)
        assert view.is_succeeded
        assert view.output['report'] == [{'delivered': ['a@example.com']}]
        failed = view.job_status.failed_job_ids('send')
        assert len(failed) == 1
        child = app.status(failed[0])
        assert child.is_failed
        assert 'rejected the message' in (child.error or '')
        assert child.current_task_name == 'send'

    def test_eager_dispatch_from_config(self) -> None:
        app = Carriage(AppConfig(eager_dispatch=True, log_level='WARNING'))
        assert isinstance(app.queue, InMemoryQueue)
        assert app.queue.eager


class TestDeferredQueue:
    @pytest.fixture
    def app(self, queue: InMemoryQueue, clock: FakeClock) -> Carriage:
        return Carriage(
            AppConfig(log_level='WARNING'), queue=queue, sleep=clock.sleep, clock=clock
        )

    def test_start_only_enqueues(self, app: Carriage, queue: InMemoryQueue) -> None:
        _declare_mailer(app)
        job_id = app.start('mailer')
        assert app.status(job_id).is_pending
        assert queue.pending_count() == 1

    def test_suspend_and_resume(self, app: Carriage, queue: InMemoryQueue) -> None:
        _declare_mailer(
            app, dependency_wait={'poll_timeout': 1, 'poll_interval': 1, 'reschedule_delay': 10}
        )
        job_id = app.start('mailer')

        # parent, three children, then the resumed parent
        assert queue.run_pending() == 5
        assert queue.reschedules == [(job_id, 10)]
        assert len(queue.dispatched) == 1

        view = app.status(job_id)
        assert view.is_succeeded
        assert view.output['report'] == [
            {'delivered': ['a@example.com', 'b@example.com', 'c@example.com']}
        ]

    def test_suspended_job_reports_waiting_task(
        self, app: Carriage, queue: InMemoryQueue
    ) -> None:
        _declare_mailer(app, dependency_wait={'poll_timeout': 1, 'poll_interval': 1})
        job_id = app.start('mailer')
        unit = queue.find_unit(job_id)
        assert unit is not None

        outcome = app.execute(unit.unit)
        assert outcome.context.checkpoint.settled == ['send']

        view = app.status(job_id)
        assert view.is_pending
        assert view.current_task_name == 'report'
        assert len(view.job_status['send']) == 3

    def test_timeout_with_fail_policy_marks_job_failed(
        self, app: Carriage, queue: InMemoryQueue
    ) -> None:
        _declare_mailer(
            app, dependency_wait={'poll_timeout': 2, 'poll_interval': 1, 'on_timeout': 'fail'}
        )
        job_id = app.start('mailer')
        queue.run_pending()

        view = app.status(job_id)
        assert view.is_failed
        assert 'DependencyTimeoutError' in (view.error or '')
        assert view.current_task_name == 'report'


class TestFailures:
    @pytest.fixture
    def app(self, queue: InMemoryQueue) -> Carriage:
        return Carriage(AppConfig(log_level='WARNING'), queue=queue, sleep=lambda s: None)

    def test_failed_run_keeps_partial_output(self, app: Carriage, queue: InMemoryQueue) -> None:
        wf = app.workflow('orders')
        wf.task('reserve', output=['sku'])(lambda ctx: {'sku': 'SKU-1'})

        @wf.task('charge', depends_on='reserve', retry=2)
        def charge(ctx):
            raise RuntimeError('card declined')

        errors: list[str] = []
        wf.on_error('charge')(lambda ctx, error: errors.append(str(error)))

        job_id = app.start('orders')
        queue.run_pending()

        view = app.status(job_id)
        assert view.is_failed
        assert view.error == 'RuntimeError: card declined'
        assert view.current_task_name == 'charge'
        assert view.output['reserve'] == [{'sku': 'SKU-1'}]
        assert errors == ['card declined']

    def test_perform_now_raises(self, app: Carriage) -> None:
        wf = app.workflow('broken')

        @wf.task('boom')
        def boom(ctx):
            raise KeyError('missing')

        with pytest.raises(KeyError):
            app.perform_now('broken')

    def test_unknown_job_id(self, app: Carriage) -> None:
        with pytest.raises(UnitNotFoundError):
            app.status('does-not-exist')
        assert app.find_status('does-not-exist') is None


class TestScheduleConfig:
    def test_collects_schedules_of_all_workflows(self) -> None:
        app = Carriage(AppConfig(log_level='WARNING'))
        app.workflow('cleanup').schedule('every day at 3am')
        app.workflow('sync', queue_name='low').schedule(
            'every 10 minutes', key='sync-fast', args={'full': False}
        )

        assert app.schedule_config() == {
            'cleanup': {'workflow': 'cleanup', 'schedule': 'every day at 3am'},
            'sync-fast': {
                'workflow': 'sync',
                'schedule': 'every 10 minutes',
                'queue': 'low',
                'args': {'full': False},
            },
        }

    def test_duplicate_keys(self) -> None:
        app = Carriage(AppConfig(log_level='WARNING'))
        app.workflow('a').schedule('hourly', key='same')
        app.workflow('b').schedule('daily', key='same')
        with pytest.raises(ConfigurationError):
            app.schedule_config()
