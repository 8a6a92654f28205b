"""Unit tests for retry, throttle, dependency-wait and dry-run policies."""

from __future__ import annotations

import pytest

from carriage.core.errors import ErrorCode, TaskDefinitionError
from carriage.core.models.context import Context
from carriage.core.models.policies import (
    DependencyWaitPolicy,
    DryRunPolicy,
    RetryPolicy,
    ThrottlePolicy,
)


def _body(ctx):
    return None


@pytest.mark.unit
class TestRetryPolicy:
    """Shorthand parsing and delay computation."""

    def test_none_means_single_attempt(self) -> None:
        policy = RetryPolicy.from_value(None)
        assert policy.count == 0
        assert policy.max_attempts == 1

    def test_int_is_attempt_count(self) -> None:
        policy = RetryPolicy.from_value(4)
        assert policy.count == 4
        assert policy.max_attempts == 4

    def test_mapping_defaults_count_to_three(self) -> None:
        policy = RetryPolicy.from_value({'strategy': 'fixed', 'base_delay': 2})
        assert policy.count == 3
        assert policy.strategy == 'fixed'
        assert policy.base_delay == 2

    def test_policy_instance_passes_through(self) -> None:
        policy = RetryPolicy(count=2)
        assert RetryPolicy.from_value(policy) is policy

    @pytest.mark.parametrize(
        ('strategy', 'expected'),
        [
            ('fixed', [2.0, 2.0, 2.0]),
            ('linear', [2.0, 4.0, 6.0]),
            ('exponential', [2.0, 4.0, 8.0]),
        ],
    )
    def test_delay_for_strategies(self, strategy: str, expected: list[float]) -> None:
        policy = RetryPolicy(count=4, strategy=strategy, base_delay=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == expected

    def test_jitter_stays_within_spread(self) -> None:
        policy = RetryPolicy(count=2, strategy='fixed', base_delay=4.0, jitter=True)
        for _ in range(50):
            assert 3.0 <= policy.delay_for(1) <= 5.0

    def test_bool_is_rejected(self) -> None:
        with pytest.raises(TaskDefinitionError) as exc_info:
            RetryPolicy.from_value(True, fn=_body)
        assert exc_info.value.code == ErrorCode.TASK_INVALID_RETRY

    def test_unknown_strategy_is_rejected(self) -> None:
        with pytest.raises(TaskDefinitionError) as exc_info:
            RetryPolicy.from_value({'strategy': 'random'}, fn=_body)
        assert exc_info.value.code == ErrorCode.TASK_INVALID_RETRY
        assert any('strategy' in note for note in exc_info.value.notes)

    def test_negative_count_is_rejected(self) -> None:
        with pytest.raises(TaskDefinitionError):
            RetryPolicy.from_value(-1)

    def test_error_points_at_task_function(self) -> None:
        with pytest.raises(TaskDefinitionError) as exc_info:
            RetryPolicy.from_value('three', fn=_body)
        location = exc_info.value.location
        assert location is not None
        assert location.file == __file__


@pytest.mark.unit
class TestThrottlePolicy:
    def test_int_is_limit_with_default_key(self) -> None:
        policy = ThrottlePolicy.from_value(5, default_key='billing:charge')
        assert policy.key == 'billing:charge'
        assert policy.limit == 5
        assert policy.ttl == 180

    def test_mapping_overrides_key_and_ttl(self) -> None:
        policy = ThrottlePolicy.from_value(
            {'limit': 2, 'key': 'stripe', 'ttl': 30}, default_key='billing:charge'
        )
        assert (policy.key, policy.limit, policy.ttl) == ('stripe', 2, 30)

    def test_semaphore_carries_policy(self) -> None:
        semaphore = ThrottlePolicy(key='api', limit=3, ttl=60).semaphore()
        assert semaphore is not None
        assert semaphore.concurrency_key == 'api'
        assert semaphore.concurrency_limit == 3
        assert semaphore.concurrency_duration == 60

    def test_unlimited_throttle_has_no_semaphore(self) -> None:
        policy = ThrottlePolicy.from_value({}, default_key='k')
        assert policy.is_unlimited
        assert policy.semaphore() is None

    @pytest.mark.parametrize('value', [0, -2, {'limit': 'many'}, {'ttl': 0}, 'five'])
    def test_malformed_values_are_rejected(self, value: object) -> None:
        with pytest.raises(TaskDefinitionError) as exc_info:
            ThrottlePolicy.from_value(value, default_key='k')
        assert exc_info.value.code == ErrorCode.TASK_INVALID_THROTTLE


@pytest.mark.unit
class TestDependencyWaitPolicy:
    def test_defaults_poll_until_done(self) -> None:
        policy = DependencyWaitPolicy.from_value(None)
        assert policy.polling_only
        assert policy.poll_interval == 5
        assert policy.on_timeout == 'reschedule'

    def test_number_is_poll_timeout(self) -> None:
        policy = DependencyWaitPolicy.from_value(30)
        assert policy.poll_timeout == 30
        assert not policy.polling_only

    def test_mapping(self) -> None:
        policy = DependencyWaitPolicy.from_value(
            {'poll_timeout': 10, 'poll_interval': 1, 'on_timeout': 'fail'}
        )
        assert policy.on_timeout == 'fail'
        assert policy.poll_interval == 1

    @pytest.mark.parametrize(
        'value', [{'on_timeout': 'ignore'}, {'poll_interval': 0}, {'extra': 1}, ['x']]
    )
    def test_malformed_values_are_rejected(self, value: object) -> None:
        with pytest.raises(TaskDefinitionError) as exc_info:
            DependencyWaitPolicy.from_value(value)
        assert exc_info.value.code == ErrorCode.TASK_INVALID_DEPENDENCY_WAIT


@pytest.mark.unit
class TestDryRunPolicy:
    def test_unset_evaluates_false(self) -> None:
        policy = DryRunPolicy.from_value(None)
        assert not policy.is_set
        assert policy.evaluate(Context()) is False

    def test_callable_sees_context(self) -> None:
        policy = DryRunPolicy.from_value(lambda ctx: ctx.arguments['preview'])
        assert policy.evaluate(Context(arguments={'preview': True})) is True
        assert policy.evaluate(Context(arguments={'preview': False})) is False

    def test_explicit_false_is_set(self) -> None:
        policy = DryRunPolicy.from_value(False)
        assert policy.is_set
        assert policy.evaluate(Context()) is False

    def test_non_callable_rejected(self) -> None:
        with pytest.raises(TaskDefinitionError) as exc_info:
            DryRunPolicy.from_value('yes')
        assert exc_info.value.code == ErrorCode.TASK_INVALID_DRY_RUN
