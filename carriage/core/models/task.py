# carriage/core/models/task.py
from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Sequence, Union

from pydantic import BaseModel

from carriage.core.errors import (
    ErrorCode,
    TaskOutputError,
    WorkflowValidationError,
    task_definition_error,
)
from carriage.core.models.namespace import SEPARATOR, Namespace
from carriage.core.models.output import TaskOutput
from carriage.core.models.policies import (
    DependencyWaitPolicy,
    DryRunPolicy,
    RetryPolicy,
    ThrottlePolicy,
)

if TYPE_CHECKING:
    from carriage.core.models.context import Context

TASK_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_.\-]+$')

TaskBody = Callable[['Context'], Any]
OutputSchema = Union[Mapping[str, Any], Sequence[str], None]


def _always(_context: Context) -> bool:
    return True


@dataclass(frozen=True)
class OutputField:
    """A declared output field. ``type`` is documentation, not enforced."""

    name: str
    type: Any = object


@dataclass(frozen=True)
class ArgumentDef:
    """A declared workflow argument with its default value."""

    name: str
    type: Any = object
    default: Any = None


def normalize_output_schema(schema: OutputSchema) -> tuple[OutputField, ...]:
    """``{'total': int}`` or ``['total']`` -> ordered OutputFields."""
    if schema is None:
        return ()
    if isinstance(schema, Mapping):
        return tuple(OutputField(name=str(k), type=v) for k, v in schema.items())
    if isinstance(schema, str):
        return (OutputField(name=schema),)
    return tuple(OutputField(name=str(name)) for name in schema)


@dataclass(frozen=True)
class Task:
    """Immutable definition of one task in a workflow.

    A task with ``each`` is a map task: its body runs once per element. A map
    task with a ``concurrency_limit`` is dispatched, one child job per element,
    instead of iterating inline.
    """

    name: str
    body: TaskBody
    workflow_name: str = ''
    namespace: Namespace = field(default_factory=Namespace.default)
    each: Optional[Callable[[Context], Iterable[Any]]] = None
    depends_on: tuple[str, ...] = ()
    condition: Callable[[Context], Any] = _always
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    throttle: Optional[ThrottlePolicy] = None
    dependency_wait: DependencyWaitPolicy = field(default_factory=DependencyWaitPolicy)
    output: tuple[OutputField, ...] = ()
    concurrency_limit: Optional[int] = None
    queue_name: Optional[str] = None
    dry_run: DryRunPolicy = field(default_factory=DryRunPolicy)

    def __post_init__(self) -> None:
        if not self.name or not TASK_NAME_PATTERN.match(self.name):
            raise WorkflowValidationError(
                message=f'invalid task name {self.name!r}',
                code=ErrorCode.WORKFLOW_INVALID_TASK_NAME,
                notes=[f"'{SEPARATOR}' separates namespaces and cannot appear in a task name"],
                help_text='use letters, digits, underscores, dashes and dots',
            )
        if self.concurrency_limit is not None:
            if self.each is None:
                raise task_definition_error(
                    f"task '{self.name}' sets concurrency but is not a map task",
                    code=ErrorCode.TASK_INVALID_OPTIONS,
                    fn=self.body,
                    help_text='concurrency only applies to tasks declared with each=...',
                )
            if isinstance(self.concurrency_limit, bool) or self.concurrency_limit <= 0:
                raise task_definition_error(
                    f"task '{self.name}' has an invalid concurrency limit",
                    code=ErrorCode.TASK_INVALID_OPTIONS,
                    fn=self.body,
                    notes=[f'got concurrency={self.concurrency_limit!r}'],
                    help_text='use a positive integer',
                )

    @property
    def qualified_name(self) -> str:
        return self.namespace.qualify(self.name)

    @property
    def is_map_task(self) -> bool:
        return self.each is not None

    @property
    def is_dispatched(self) -> bool:
        """Map task fanned out as independent child jobs."""
        return self.is_map_task and self.concurrency_limit is not None

    @property
    def has_output(self) -> bool:
        return bool(self.output)

    @property
    def output_field_names(self) -> list[str]:
        return [f.name for f in self.output]

    @property
    def throttle_prefix_key(self) -> str:
        """Default key for this task's throttles: ``<workflow>:<task>``."""
        if self.workflow_name:
            return f'{self.workflow_name}{SEPARATOR}{self.qualified_name}'
        return self.qualified_name

    def should_run(self, context: Context) -> bool:
        return bool(self.condition(context))

    def evaluate_each(self, context: Context) -> list[Any]:
        if self.each is None:
            return []
        return list(self.each(context))

    def build_output(self, value: Any, each_index: Optional[int] = None) -> Optional[TaskOutput]:
        """Turn a body's return value into a TaskOutput with the declared fields.

        Returns None when the task declares no output. Declared fields missing
        from the value are recorded as None; extra keys are dropped.
        """
        if not self.output:
            return None

        if isinstance(value, BaseModel):
            data: Mapping[str, Any] = value.model_dump()
        elif dataclasses.is_dataclass(value) and not isinstance(value, type):
            data = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        elif isinstance(value, Mapping):
            data = value
        else:
            raise TaskOutputError(
                f"task '{self.qualified_name}' declares output fields "
                f'{self.output_field_names} but returned {type(value).__name__}'
            )

        return TaskOutput(
            task_name=self.qualified_name,
            each_index=each_index,
            data={name: data.get(name) for name in self.output_field_names},
        )
