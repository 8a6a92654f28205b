# carriage/core/models/policies.py
"""Per-task execution policies: retry, throttle, dependency wait, dry-run.

Each policy accepts the shorthand users write in ``@workflow.task(...)``
through ``from_value`` and turns malformed shapes into a
``TaskDefinitionError`` at definition time, never at run time.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from carriage.core.defaults import (
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_POLL_TIMEOUT_S,
    DEFAULT_RESCHEDULE_DELAY_S,
    DEFAULT_RETRY_BASE_DELAY_S,
    DEFAULT_RETRY_COUNT,
    DEFAULT_THROTTLE_TTL_S,
    RETRY_JITTER_SPREAD,
)
from carriage.core.errors import ErrorCode, task_definition_error
from carriage.core.models.semaphore import Semaphore

if TYPE_CHECKING:
    from carriage.core.models.context import Context

RetryStrategy = Literal['fixed', 'linear', 'exponential']
OnTimeout = Literal['reschedule', 'fail']


def _is_number(value: Any) -> bool:
    # bool is an int subclass; `retry=True` is a mistake, not a count.
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pydantic_notes(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}"
        for err in exc.errors()
    ]


class RetryPolicy(BaseModel):
    """
    Retry policy for a task body.

    Fields:
        count: retries allowed; the body runs at most ``max(count, 1)`` times
        strategy: how the delay grows between attempts
        base_delay: seconds used as the unit for every strategy
        jitter: spread each delay by +/-25%
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    count: Annotated[StrictInt, Field(ge=0, le=1000)] = 0
    strategy: RetryStrategy = 'exponential'
    base_delay: Annotated[float, Field(ge=0)] = DEFAULT_RETRY_BASE_DELAY_S
    jitter: bool = False

    @property
    def max_attempts(self) -> int:
        return max(self.count, 1)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based).

        fixed: ``base``; linear: ``base * attempt``;
        exponential: ``base * 2**(attempt-1)``.
        """
        attempt = max(attempt, 1)
        if self.strategy == 'fixed':
            delay = self.base_delay
        elif self.strategy == 'linear':
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * (2 ** (attempt - 1))

        if self.jitter and delay > 0:
            delay *= random.uniform(1 - RETRY_JITTER_SPREAD, 1 + RETRY_JITTER_SPREAD)
        return max(0.0, delay)

    @classmethod
    def from_value(
        cls, value: Any, *, fn: Optional[Callable[..., Any]] = None
    ) -> RetryPolicy:
        """Build from ``None``, a retry count, a mapping, or a RetryPolicy."""
        if value is None:
            return cls()
        if isinstance(value, RetryPolicy):
            return value

        if isinstance(value, int) and not isinstance(value, bool):
            data: dict[str, Any] = {'count': value}
        elif isinstance(value, Mapping):
            data = {'count': DEFAULT_RETRY_COUNT, **value}
        else:
            raise task_definition_error(
                'invalid retry configuration',
                code=ErrorCode.TASK_INVALID_RETRY,
                fn=fn,
                notes=[f'got {type(value).__name__}: {value!r}'],
                help_text="use retry=3 or retry={'count': 3, 'strategy': 'fixed', 'base_delay': 2}",
            )

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise task_definition_error(
                'invalid retry configuration',
                code=ErrorCode.TASK_INVALID_RETRY,
                fn=fn,
                notes=_pydantic_notes(exc),
                help_text="strategy must be one of 'fixed', 'linear', 'exponential'",
            ) from exc


class ThrottlePolicy(BaseModel):
    """
    Concurrency throttle around a task body.

    Every execution of the task, across all workers, competes for one of
    ``limit`` permits under ``key``. Permits expire after ``ttl`` seconds.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    key: Annotated[str, Field(min_length=1)]
    limit: Optional[Annotated[StrictInt, Field(gt=0)]] = None
    ttl: Annotated[float, Field(gt=0)] = DEFAULT_THROTTLE_TTL_S

    @property
    def is_unlimited(self) -> bool:
        return self.limit is None

    def semaphore(self) -> Optional[Semaphore]:
        if self.limit is None:
            return None
        return Semaphore(
            concurrency_key=self.key,
            concurrency_limit=self.limit,
            concurrency_duration=self.ttl,
        )

    @classmethod
    def from_value(
        cls,
        value: Any,
        *,
        default_key: str,
        fn: Optional[Callable[..., Any]] = None,
    ) -> ThrottlePolicy:
        """Build from ``None``, a limit, a mapping, or a ThrottlePolicy."""
        if isinstance(value, ThrottlePolicy):
            return value
        if value is None:
            data: dict[str, Any] = {'key': default_key}
        elif isinstance(value, int) and not isinstance(value, bool):
            data = {'key': default_key, 'limit': value}
        elif isinstance(value, Mapping):
            data = {'key': default_key, **value}
        else:
            raise task_definition_error(
                'invalid throttle configuration',
                code=ErrorCode.TASK_INVALID_THROTTLE,
                fn=fn,
                notes=[f'got {type(value).__name__}: {value!r}'],
                help_text="use throttle=5 or throttle={'limit': 5, 'key': 'api', 'ttl': 60}",
            )

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise task_definition_error(
                'invalid throttle configuration',
                code=ErrorCode.TASK_INVALID_THROTTLE,
                fn=fn,
                notes=_pydantic_notes(exc),
                help_text='limit must be a positive integer and ttl a positive number of seconds',
            ) from exc


class DependencyWaitPolicy(BaseModel):
    """
    How a task waits for dispatched map-task dependencies.

    Fields:
        poll_timeout: seconds to poll before giving up; 0 polls until done
        poll_interval: seconds between status polls
        reschedule_delay: delay for the resumed job when suspending
        on_timeout: 'reschedule' suspends the job, 'fail' raises
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    poll_timeout: Annotated[float, Field(ge=0)] = DEFAULT_POLL_TIMEOUT_S
    poll_interval: Annotated[float, Field(gt=0)] = DEFAULT_POLL_INTERVAL_S
    reschedule_delay: Annotated[float, Field(ge=0)] = DEFAULT_RESCHEDULE_DELAY_S
    on_timeout: OnTimeout = 'reschedule'

    @property
    def polling_only(self) -> bool:
        return self.poll_timeout <= 0

    @classmethod
    def from_value(
        cls, value: Any, *, fn: Optional[Callable[..., Any]] = None
    ) -> DependencyWaitPolicy:
        if value is None:
            return cls()
        if isinstance(value, DependencyWaitPolicy):
            return value
        if _is_number(value):
            data: dict[str, Any] = {'poll_timeout': value}
        elif isinstance(value, Mapping):
            data = dict(value)
        else:
            raise task_definition_error(
                'invalid dependency_wait configuration',
                code=ErrorCode.TASK_INVALID_DEPENDENCY_WAIT,
                fn=fn,
                notes=[f'got {type(value).__name__}: {value!r}'],
                help_text="use dependency_wait={'poll_timeout': 60, 'poll_interval': 5}",
            )

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise task_definition_error(
                'invalid dependency_wait configuration',
                code=ErrorCode.TASK_INVALID_DEPENDENCY_WAIT,
                fn=fn,
                notes=_pydantic_notes(exc),
                help_text="on_timeout must be 'reschedule' or 'fail'",
            ) from exc


DryRunValue = Union[bool, Callable[['Context'], Any], None]


@dataclass(frozen=True)
class DryRunPolicy:
    """Dry-run flag, fixed or computed from the Context. None means unset."""

    value: DryRunValue = None

    @property
    def is_set(self) -> bool:
        return self.value is not None

    def evaluate(self, context: Context) -> bool:
        if self.value is None:
            return False
        if isinstance(self.value, bool):
            return self.value
        return bool(self.value(context))

    @classmethod
    def from_value(
        cls, value: Any, *, fn: Optional[Callable[..., Any]] = None
    ) -> DryRunPolicy:
        if isinstance(value, DryRunPolicy):
            return value
        if value is None or isinstance(value, bool) or callable(value):
            return cls(value=value)
        raise task_definition_error(
            'invalid dry_run configuration',
            code=ErrorCode.TASK_INVALID_DRY_RUN,
            fn=fn,
            notes=[f'got {type(value).__name__}: {value!r}'],
            help_text='use dry_run=True, dry_run=False or dry_run=lambda ctx: ...',
        )
