# carriage/core/workflow.py
"""Workflow declaration: tasks, arguments, hooks, schedules.

A Workflow is built once at import time and sealed (validated and made
read-only) before its first run::

    billing = Workflow('billing')
    billing.argument('customer_id', str)

    @billing.task('invoice', output={'amount': int})
    def invoice(ctx):
        return {'amount': 100}

    @billing.task('charge', depends_on=['invoice'])
    def charge(ctx):
        ...
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from carriage.core.errors import (
    CyclicDependencyError,
    ErrorCode,
    RegistryError,
    SourceLocation,
    ValidationReport,
    WorkflowValidationError,
    raise_collected,
)
from carriage.core.models.hooks import HookKind, HookRegistry
from carriage.core.models.namespace import SEPARATOR, Namespace
from carriage.core.models.policies import (
    DependencyWaitPolicy,
    DryRunPolicy,
    RetryPolicy,
    ThrottlePolicy,
)
from carriage.core.models.task import (
    ArgumentDef,
    OutputSchema,
    Task,
    TaskBody,
    normalize_output_schema,
)

if TYPE_CHECKING:
    from carriage.core.models.context import Context
    from carriage.core.models.schedule import Schedule

F = TypeVar('F', bound=Callable[..., Any])


class TaskNotFound(RegistryError, KeyError):
    """Raised when a qualified task name is not part of the workflow.

    Inherits from KeyError so ``in`` checks on mappings keep working.
    """

    def __init__(self, task_name: str, workflow_name: str = '') -> None:
        where = f" in workflow '{workflow_name}'" if workflow_name else ''
        RegistryError.__init__(
            self,
            message=f"task '{task_name}' not found{where}",
            code=ErrorCode.TASK_NOT_FOUND,
            notes=[f"requested task: '{task_name}'"],
            help_text=(
                'tasks inside a namespace are addressed by their qualified name, '
                "e.g. 'payment:charge'"
            ),
        )
        self.task_name = task_name


class DuplicateTaskNameError(RegistryError):
    """Raised when two tasks share a qualified name within one workflow."""

    def __init__(self, task_name: str, workflow_name: str = '') -> None:
        super().__init__(
            message=f"duplicate task name '{task_name}'",
            code=ErrorCode.TASK_DUPLICATE_NAME,
            notes=[f"workflow: '{workflow_name}'"] if workflow_name else [],
            help_text='each task name must be unique within its namespace',
        )
        self.task_name = task_name


class TaskGraph:
    """Tasks of one workflow in registration order, keyed by qualified name."""

    def __init__(self, workflow_name: str = '') -> None:
        self.workflow_name = workflow_name
        self._tasks: dict[str, Task] = {}

    def add(self, task: Task) -> Task:
        name = task.qualified_name
        if name in self._tasks:
            raise DuplicateTaskNameError(name, self.workflow_name)
        self._tasks[name] = task
        return task

    def fetch(self, name: str) -> Task:
        try:
            return self._tasks[name]
        except KeyError:
            raise TaskNotFound(name, self.workflow_name) from None

    def get(self, name: str) -> Optional[Task]:
        return self._tasks.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def names(self) -> list[str]:
        return list(self._tasks)

    def _unknown_dependency_errors(self) -> list[WorkflowValidationError]:
        errors: list[WorkflowValidationError] = []
        for task in self:
            for dep in task.depends_on:
                if dep not in self._tasks:
                    errors.append(
                        WorkflowValidationError(
                            message='dependency references a task not in the workflow',
                            code=ErrorCode.WORKFLOW_INVALID_DEPENDENCY,
                            location=SourceLocation.from_function(task.body),
                            notes=[
                                f"task '{task.qualified_name}' depends on unknown task '{dep}'",
                                f'known tasks: {self.names()}',
                            ],
                            help_text='depends_on takes qualified names of tasks in the same workflow',
                        )
                    )
        return errors

    def find_cycle(self) -> Optional[list[str]]:
        """First cycle found by a DFS over ``depends_on`` edges, or None.

        The returned path repeats its first name at the end.
        """
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(name: str) -> Optional[list[str]]:
            if name in on_stack:
                # Back edge: the loop is the stack from the first occurrence.
                return stack[stack.index(name):] + [name]
            if name in visited:
                return None
            visited.add(name)
            stack.append(name)
            on_stack.add(name)
            for dep in self._tasks[name].depends_on:
                if dep in self._tasks:
                    found = visit(dep)
                    if found is not None:
                        return found
            stack.pop()
            on_stack.discard(name)
            return None

        for name in self._tasks:
            cycle = visit(name)
            if cycle is not None:
                return cycle
        return None

    def _dependency_order_errors(self) -> list[WorkflowValidationError]:
        """Dependencies declared at or after the task that depends on them.

        Tasks run in declaration order, so such a dependency could never have
        run by the time its dependent starts.
        """
        position = {name: index for index, name in enumerate(self._tasks)}
        errors: list[WorkflowValidationError] = []
        for index, task in enumerate(self):
            for dep in task.depends_on:
                if dep in position and position[dep] >= index:
                    errors.append(
                        WorkflowValidationError(
                            message='dependency is declared after the task that uses it',
                            code=ErrorCode.WORKFLOW_DEPENDENCY_ORDER,
                            location=SourceLocation.from_function(task.body),
                            notes=[
                                f"task '{task.qualified_name}' depends on '{dep}', "
                                'which is declared later',
                                f'declaration order: {self.names()}',
                            ],
                            help_text=f"declare '{dep}' before '{task.qualified_name}'",
                        )
                    )
        return errors

    def collect_errors(self) -> list[WorkflowValidationError]:
        errors = self._unknown_dependency_errors()
        cycle = self.find_cycle()
        if cycle is None:
            # Every cycle has a later-declared edge; the cycle error covers it.
            errors.extend(self._dependency_order_errors())
        else:
            errors.append(
                CyclicDependencyError(
                    message=f"cycle detected in workflow '{self.workflow_name}'",
                    code=ErrorCode.WORKFLOW_CYCLE_DETECTED,
                    location=SourceLocation.from_function(self.fetch(cycle[0]).body),
                    notes=[f"cycle: {' -> '.join(cycle)}"],
                    help_text='remove one of the depends_on edges along the cycle',
                    cycle=cycle,
                )
            )
        return errors

    def validate(self) -> None:
        """Raise on unknown dependencies or a dependency cycle."""
        report = ValidationReport('task graph')
        report.extend(list(self.collect_errors()))
        raise_collected(report)


class Workflow:
    """Declarative definition of one job type."""

    def __init__(
        self,
        name: str,
        *,
        dry_run: Union[bool, Callable[[Context], Any], None] = None,
        queue_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        if not name or not isinstance(name, str):
            raise WorkflowValidationError(
                message='workflow name is required',
                code=ErrorCode.WORKFLOW_NO_NAME,
                help_text="pass a non-empty name, e.g. Workflow('billing')",
            )
        self.name = name
        self.description = description
        self.queue_name = queue_name
        self.dry_run = DryRunPolicy.from_value(dry_run)
        self.graph = TaskGraph(name)
        self.hooks = HookRegistry()
        self.arguments: dict[str, ArgumentDef] = {}
        self.schedules: list[Schedule] = []
        self._namespace = Namespace.default()
        self._sealed = False

    def __repr__(self) -> str:
        return f'Workflow(name={self.name!r}, tasks={self.graph.names()!r})'

    # --- declaration guards ---

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _ensure_open(self, what: str) -> None:
        if self._sealed:
            raise WorkflowValidationError(
                message=f"workflow '{self.name}' is sealed; cannot add {what}",
                code=ErrorCode.WORKFLOW_FROZEN,
                help_text='declare tasks, hooks and arguments at import time, before the first run',
            )

    def _ensure_top_level(self, what: str) -> None:
        if not self._namespace.is_default:
            raise WorkflowValidationError(
                message=f'{what} cannot be declared inside a namespace',
                code=ErrorCode.WORKFLOW_NAMESPACE_SCOPE,
                notes=[f"current namespace: '{self._namespace.full_name}'"],
                help_text=f'move the {what} declaration out of the `with workflow.namespace(...)` block',
            )

    # --- arguments ---

    def argument(self, name: str, type: Any = object, *, default: Any = None) -> ArgumentDef:
        """Declare a workflow argument and its default."""
        self._ensure_open('arguments')
        self._ensure_top_level('arguments')
        if not name or name in self.arguments:
            raise WorkflowValidationError(
                message=f'invalid or duplicate argument name {name!r}',
                code=ErrorCode.WORKFLOW_INVALID_ARGUMENT,
                notes=[f'declared arguments: {list(self.arguments)}'],
            )
        definition = ArgumentDef(name=name, type=type, default=default)
        self.arguments[name] = definition
        return definition

    def build_arguments(self, overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """Argument defaults merged with caller-supplied values."""
        values = {name: d.default for name, d in self.arguments.items()}
        values.update(overrides or {})
        return values

    # --- namespaces ---

    @contextmanager
    def namespace(self, name: str) -> Iterator[Namespace]:
        """Qualify tasks declared inside the block as ``name:task``."""
        if not name or SEPARATOR in name:
            raise WorkflowValidationError(
                message=f'invalid namespace name {name!r}',
                code=ErrorCode.WORKFLOW_INVALID_TASK_NAME,
                help_text=f"namespace names cannot be empty or contain '{SEPARATOR}'",
            )
        parent = self._namespace
        self._namespace = parent.child(name)
        try:
            yield self._namespace
        finally:
            self._namespace = parent

    @property
    def current_namespace(self) -> Namespace:
        return self._namespace

    # --- tasks ---

    def task(
        self,
        name: str,
        *,
        each: Optional[Callable[[Context], Iterable[Any]]] = None,
        depends_on: Union[str, Sequence[str], None] = None,
        condition: Optional[Callable[[Context], Any]] = None,
        retry: Any = None,
        throttle: Any = None,
        dependency_wait: Any = None,
        output: OutputSchema = None,
        concurrency: Optional[int] = None,
        queue: Optional[str] = None,
        dry_run: Any = None,
    ) -> Callable[[F], F]:
        """Register the decorated function as a task body.

        The function is returned unchanged so it can still be called directly.
        """

        def decorator(fn: F) -> F:
            self.add_task(
                self.build_task(
                    name,
                    fn,
                    each=each,
                    depends_on=depends_on,
                    condition=condition,
                    retry=retry,
                    throttle=throttle,
                    dependency_wait=dependency_wait,
                    output=output,
                    concurrency=concurrency,
                    queue=queue,
                    dry_run=dry_run,
                )
            )
            return fn

        return decorator

    def build_task(
        self,
        name: str,
        body: TaskBody,
        *,
        each: Optional[Callable[[Context], Iterable[Any]]] = None,
        depends_on: Union[str, Sequence[str], None] = None,
        condition: Optional[Callable[[Context], Any]] = None,
        retry: Any = None,
        throttle: Any = None,
        dependency_wait: Any = None,
        output: OutputSchema = None,
        concurrency: Optional[int] = None,
        queue: Optional[str] = None,
        dry_run: Any = None,
    ) -> Task:
        """Turn decorator options into a Task in the current namespace."""
        namespace = self._namespace
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        options: dict[str, Any] = {}
        if condition is not None:
            options['condition'] = condition

        default_throttle_key = f'{self.name}{SEPARATOR}{namespace.qualify(name)}'
        return Task(
            name=name,
            body=body,
            workflow_name=self.name,
            namespace=namespace,
            each=each,
            depends_on=tuple(depends_on or ()),
            retry=RetryPolicy.from_value(retry, fn=body),
            throttle=(
                ThrottlePolicy.from_value(throttle, default_key=default_throttle_key, fn=body)
                if throttle is not None
                else None
            ),
            dependency_wait=DependencyWaitPolicy.from_value(dependency_wait, fn=body),
            output=normalize_output_schema(output),
            concurrency_limit=concurrency,
            queue_name=queue,
            dry_run=DryRunPolicy.from_value(dry_run, fn=body),
            **options,
        )

    def add_task(self, task: Task) -> Task:
        self._ensure_open('tasks')
        return self.graph.add(task)

    def fetch_task(self, qualified_name: str) -> Task:
        return self.graph.fetch(qualified_name)

    def execution_order(self) -> list[Task]:
        """Tasks in declaration order; dependencies gate waiting, not order."""
        return list(self.graph)

    @property
    def tasks(self) -> list[Task]:
        return self.execution_order()

    # --- hooks ---

    def _hook(self, kind: HookKind, task_names: tuple[str, ...]) -> Callable[[F], F]:
        self._ensure_open('hooks')
        self._ensure_top_level('hooks')

        def decorator(fn: F) -> F:
            self.hooks.register(kind, fn, task_names)
            return fn

        return decorator

    def before(self, *task_names: str) -> Callable[[F], F]:
        """``fn(ctx)`` before the task body; no names means every task."""
        return self._hook(HookKind.BEFORE, task_names)

    def after(self, *task_names: str) -> Callable[[F], F]:
        """``fn(ctx)`` after a successful task body."""
        return self._hook(HookKind.AFTER, task_names)

    def around(self, *task_names: str) -> Callable[[F], F]:
        """``fn(ctx, task)`` wrapping the body; must call ``task()`` exactly once."""
        return self._hook(HookKind.AROUND, task_names)

    def on_error(self, *task_names: str) -> Callable[[F], F]:
        """``fn(ctx, error)`` after a task fails its last attempt."""
        return self._hook(HookKind.ERROR, task_names)

    # --- schedules ---

    def schedule(
        self,
        expression: str,
        *,
        key: Optional[str] = None,
        queue: Optional[str] = None,
        priority: Optional[int] = None,
        args: Optional[Mapping[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Schedule:
        """Declare a recurring run for an external cron-style scheduler."""
        from carriage.core.models.schedule import Schedule

        self._ensure_open('schedules')
        self._ensure_top_level('schedules')
        schedule = Schedule(
            expression=expression,
            workflow_name=self.name,
            key=key or self.name,
            queue=queue or self.queue_name,
            priority=priority,
            args=dict(args or {}),
            description=description,
        )
        self.schedules.append(schedule)
        return schedule

    # --- validation and runtime helpers ---

    def collect_errors(self) -> list[WorkflowValidationError]:
        errors = self.graph.collect_errors()
        for name in sorted(self.hooks.scoped_task_names()):
            if name not in self.graph:
                errors.append(
                    WorkflowValidationError(
                        message=f"hook references unknown task '{name}'",
                        code=ErrorCode.WORKFLOW_INVALID_DEPENDENCY,
                        notes=[f'known tasks: {self.graph.names()}'],
                        help_text='hooks take qualified task names',
                    )
                )
        return errors

    def validate(self) -> None:
        report = ValidationReport(f"workflow '{self.name}'")
        report.extend(list(self.collect_errors()))
        raise_collected(report)

    def seal(self) -> Workflow:
        """Validate, then reject further declarations. Idempotent."""
        if not self._sealed:
            self.validate()
            self._sealed = True
        return self

    def resolve_dry_run(self, task: Task, context: Context) -> bool:
        """Task-level dry_run wins over the workflow-level setting."""
        if task.dry_run.is_set:
            return task.dry_run.evaluate(context)
        return self.dry_run.evaluate(context)
