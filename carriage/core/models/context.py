# carriage/core/models/context.py
"""Execution state of one unit of work, and its wire format.

A Context is owned by exactly one runner at a time. It is created fresh for
a top-level run, or rebuilt from a payload when a suspended job resumes or a
dispatched map-task child starts.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from carriage.core.codec.serde import SerializationError, rehydrate_value, to_jsonable
from carriage.core.defaults import (
    DEFAULT_SEMAPHORE_POLL_INTERVAL_S,
    DEFAULT_THROTTLE_TTL_S,
)
from carriage.core.errors import CarriageRuntimeError
from carriage.core.logging import get_logger
from carriage.core.models.job_status import JobStatus, TaskJobStatus
from carriage.core.models.output import Output, TaskOutput
from carriage.core.models.semaphore import Semaphore, hold_permit
from carriage.core.types.status import JobState

if TYPE_CHECKING:
    from carriage.core.models.task import Task
    from carriage.core.queues.base import QueueAdapter

logger = get_logger('context')

T = TypeVar('T')


class ArgumentNotFound(CarriageRuntimeError, KeyError):
    """Raised when reading an argument the workflow did not declare."""

    def __init__(self, name: str) -> None:
        super().__init__(f"argument '{name}' is not defined")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class Arguments(Mapping[str, Any]):
    """Read-only snapshot of the workflow arguments for a run."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        self._values: dict[str, Any] = dict(values or {})

    def __getitem__(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            raise ArgumentNotFound(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def __repr__(self) -> str:
        return f'Arguments({self._values!r})'


@dataclass
class EachState:
    """The one map-task element a dispatched child job executes."""

    task_name: str
    index: int
    value: Any = None
    parent_job_id: Optional[str] = None


@dataclass
class Checkpoint:
    """Progress marker so a resumed run skips work already done.

    ``settled`` holds tasks that completed or were skipped by their
    condition. ``task_name``/``next_index`` track an inline map task that
    was interrupted part way through its elements.
    """

    settled: list[str] = field(default_factory=list)
    task_name: Optional[str] = None
    next_index: int = 0

    def is_settled(self, task_name: str) -> bool:
        return task_name in self.settled

    def settle(self, task_name: str) -> None:
        if task_name not in self.settled:
            self.settled.append(task_name)
        if self.task_name == task_name:
            self.task_name = None
            self.next_index = 0

    def resume_index(self, task_name: str) -> int:
        return self.next_index if self.task_name == task_name else 0

    def advance(self, task_name: str, completed_index: int) -> None:
        self.task_name = task_name
        self.next_index = completed_index + 1


# =============================================================================
# Wire format
# =============================================================================


class TaskOutputPayload(BaseModel):
    model_config = ConfigDict(extra='forbid')

    task_name: str
    each_index: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)


class TaskJobStatusPayload(BaseModel):
    model_config = ConfigDict(extra='forbid')

    task_name: str
    job_id: str
    each_index: int
    status: JobState


class EachStatePayload(BaseModel):
    model_config = ConfigDict(extra='forbid')

    parent_job_id: Optional[str] = None
    task_name: str
    index: int
    value: Any = None


class CheckpointPayload(BaseModel):
    model_config = ConfigDict(extra='forbid')

    settled: list[str] = Field(default_factory=list)
    task_name: Optional[str] = None
    next_index: int = 0


class ContextPayload(BaseModel):
    """Serialized Context. Values are already JSON-safe (see serde)."""

    model_config = ConfigDict(extra='forbid')

    arguments: dict[str, Any] = Field(default_factory=dict)
    task_outputs: list[TaskOutputPayload] = Field(default_factory=list)
    task_job_statuses: list[TaskJobStatusPayload] = Field(default_factory=list)
    each_state: Optional[EachStatePayload] = None
    checkpoint: Optional[CheckpointPayload] = None


class Context:
    """Mutable execution state: arguments, outputs, dispatched job statuses."""

    def __init__(
        self,
        arguments: Optional[Mapping[str, Any]] = None,
        output: Optional[Output] = None,
        job_status: Optional[JobStatus] = None,
        *,
        job_id: Optional[str] = None,
        each_state: Optional[EachState] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> None:
        self.arguments = Arguments(arguments)
        self.output = output if output is not None else Output()
        self.job_status = job_status if job_status is not None else JobStatus()
        self.job_id = job_id
        self.each_state = each_state
        self.checkpoint = checkpoint if checkpoint is not None else Checkpoint()
        self.current_task: Optional[Task] = None

        self._dry_run = False
        self._queue: Optional[QueueAdapter] = None
        self._poll_interval: float = DEFAULT_SEMAPHORE_POLL_INTERVAL_S
        self._sleep: Callable[[float], None] = time.sleep
        self._throttle_seq = 0

    # --- runner wiring ---

    def bind(
        self,
        queue: QueueAdapter,
        *,
        poll_interval: float = DEFAULT_SEMAPHORE_POLL_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Attach the queue used by ``throttle()`` inside task bodies."""
        self._queue = queue
        self._poll_interval = poll_interval
        self._sleep = sleep

    @contextmanager
    def entering(
        self,
        task: Task,
        *,
        dry_run: bool = False,
        each_state: Optional[EachState] = None,
    ) -> Iterator[Context]:
        """Make ``task`` (and optionally one map element) current for a block."""
        saved = (self.current_task, self.each_state, self._dry_run)
        self.current_task = task
        self._dry_run = dry_run
        self._throttle_seq = 0
        if each_state is not None:
            self.each_state = each_state
        try:
            yield self
        finally:
            self.current_task, self.each_state, self._dry_run = saved

    def begin_attempt(self) -> None:
        """Restart throttle key numbering for a new attempt of the current task."""
        self._throttle_seq = 0

    # --- accessors used inside task bodies ---

    @property
    def current_task_name(self) -> Optional[str]:
        return self.current_task.qualified_name if self.current_task else None

    @property
    def is_each_child(self) -> bool:
        """This context belongs to a dispatched map-task child job."""
        return self.each_state is not None and self.each_state.parent_job_id is not None

    def _require_each(self) -> EachState:
        if self.each_state is None:
            raise CarriageRuntimeError(
                'each_value/each_index are only available inside a map task body'
            )
        return self.each_state

    @property
    def each_value(self) -> Any:
        return self._require_each().value

    @property
    def each_index(self) -> int:
        return self._require_each().index

    def each_task_output(self) -> Optional[TaskOutput]:
        """Output recorded for the current map element, if any."""
        state = self._require_each()
        return self.output.fetch(state.task_name, state.index)

    def argument(self, name: str) -> Any:
        return self.arguments[name]

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def skip_in_dry_run(
        self,
        fn: Callable[[], T],
        name: Optional[str] = None,
        *,
        fallback: Any = None,
    ) -> Any:
        """Run ``fn`` unless the current task is in dry-run; then return ``fallback``."""
        if not self._dry_run:
            return fn()
        logger.info(
            f"dry-run: skipped {name or getattr(fn, '__name__', 'block')!s} "
            f'in task {self.current_task_name}'
        )
        return fallback

    @contextmanager
    def throttle(
        self,
        limit: int,
        key: Optional[str] = None,
        ttl: float = DEFAULT_THROTTLE_TTL_S,
    ) -> Iterator[None]:
        """Hold a throttle permit around part of a task body.

        Without a key, each ``throttle()`` call in a task gets its own key,
        ``<workflow>:<task>:<n>`` numbered in call order.
        """
        if self._queue is None:
            raise CarriageRuntimeError('throttle() needs a context bound to a queue')
        if key is None:
            if self.current_task is None:
                raise CarriageRuntimeError('throttle() without a key must run inside a task')
            self._throttle_seq += 1
            key = f'{self.current_task.throttle_prefix_key}:{self._throttle_seq}'

        semaphore = Semaphore(
            concurrency_key=key,
            concurrency_limit=limit,
            concurrency_duration=ttl,
        )
        with hold_permit(
            self._queue, semaphore, poll_interval=self._poll_interval, sleep=self._sleep
        ):
            yield

    @property
    def concurrency_key(self) -> Optional[str]:
        """Key that groups sibling children of one dispatched map task."""
        if self.each_state is None or self.each_state.parent_job_id is None:
            return None
        return f'{self.each_state.parent_job_id}/{self.each_state.task_name}'

    # --- fan-out ---

    def fork_each(self, task: Task, index: int, value: Any) -> Context:
        """Context for one dispatched child: arguments and outputs so far."""
        return Context(
            arguments=self.arguments.to_dict(),
            output=Output(self.output.flat()),
            each_state=EachState(
                task_name=task.qualified_name,
                index=index,
                value=value,
                parent_job_id=self.job_id,
            ),
        )

    # --- serialization ---

    def serialize(self) -> dict[str, Any]:
        """Plain-JSON payload; ``each_state``/``checkpoint`` only when present."""
        payload = ContextPayload(
            arguments=_jsonable_dict(self.arguments.to_dict()),
            task_outputs=[
                TaskOutputPayload(
                    task_name=o.task_name,
                    each_index=o.each_index,
                    data=_jsonable_dict(o.data),
                )
                for o in self.output.flat()
            ],
            task_job_statuses=[
                TaskJobStatusPayload(
                    task_name=s.task_name,
                    job_id=s.job_id,
                    each_index=s.each_index,
                    status=s.status,
                )
                for s in self.job_status.flat()
            ],
            each_state=(
                EachStatePayload(
                    parent_job_id=self.each_state.parent_job_id,
                    task_name=self.each_state.task_name,
                    index=self.each_state.index,
                    value=to_jsonable(self.each_state.value),
                )
                if self.each_state is not None
                else None
            ),
            checkpoint=(
                CheckpointPayload(
                    settled=list(self.checkpoint.settled),
                    task_name=self.checkpoint.task_name,
                    next_index=self.checkpoint.next_index,
                )
                if self.checkpoint.settled or self.checkpoint.task_name
                else None
            ),
        )
        data = payload.model_dump(mode='json')
        for optional_key in ('each_state', 'checkpoint'):
            if data[optional_key] is None:
                del data[optional_key]
        return data

    @classmethod
    def deserialize(cls, data: Mapping[str, Any], *, job_id: Optional[str] = None) -> Context:
        """Rebuild a Context from ``serialize()`` output.

        Raises:
            SerializationError: if the payload is malformed.
        """
        try:
            payload = ContextPayload.model_validate(data)
        except ValidationError as exc:
            raise SerializationError(f'invalid context payload: {exc}') from exc

        output = Output(
            TaskOutput(
                task_name=o.task_name,
                each_index=o.each_index,
                data=rehydrate_value(o.data),
            )
            for o in payload.task_outputs
        )
        job_status = JobStatus(
            TaskJobStatus(
                task_name=s.task_name,
                job_id=s.job_id,
                each_index=s.each_index,
                status=s.status,
            )
            for s in payload.task_job_statuses
        )
        each_state = None
        if payload.each_state is not None:
            each_state = EachState(
                task_name=payload.each_state.task_name,
                index=payload.each_state.index,
                value=rehydrate_value(payload.each_state.value),
                parent_job_id=payload.each_state.parent_job_id,
            )
        checkpoint = None
        if payload.checkpoint is not None:
            checkpoint = Checkpoint(
                settled=list(payload.checkpoint.settled),
                task_name=payload.checkpoint.task_name,
                next_index=payload.checkpoint.next_index,
            )

        return cls(
            arguments=rehydrate_value(payload.arguments),
            output=output,
            job_status=job_status,
            job_id=job_id,
            each_state=each_state,
            checkpoint=checkpoint,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Context):
            return NotImplemented
        return (
            self.arguments == other.arguments
            and self.output == other.output
            and self.job_status == other.job_status
            and self.each_state == other.each_state
            and self.checkpoint == other.checkpoint
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f'Context(job_id={self.job_id!r}, task={self.current_task_name!r}, '
            f'arguments={self.arguments.to_dict()!r}, output={self.output!r})'
        )


def _jsonable_dict(values: Mapping[str, Any]) -> dict[str, Any]:
    converted = to_jsonable(dict(values))
    assert isinstance(converted, dict)
    return converted
