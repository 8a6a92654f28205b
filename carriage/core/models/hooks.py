# carriage/core/models/hooks.py
"""Lifecycle hooks and the registry that orders them.

A hook with no task names is global and applies to every task of the
workflow. Lookup order per task:

- before: global, then task-specific (registration order within each group)
- around: global, then task-specific; the first hook is the outermost layer
- after: task-specific, then global
- error: global, then task-specific
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from carriage.core.errors import HookAlreadyInvokedError

if TYPE_CHECKING:
    from carriage.core.models.context import Context


class HookKind(str, Enum):
    BEFORE = 'before'
    AFTER = 'after'
    AROUND = 'around'
    ERROR = 'error'


@dataclass(frozen=True, kw_only=True)
class Hook:
    """A lifecycle callback, global or scoped to a set of qualified task names.

    before/after callbacks receive ``(context)``; around callbacks receive
    ``(context, task)`` where ``task`` is a TaskCallable.
    """

    kind: HookKind
    callback: Callable[..., Any]
    task_names: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_global(self) -> bool:
        return not self.task_names

    def applies_to(self, task_name: str) -> bool:
        return self.is_global or task_name in self.task_names

    def invoke(self, context: Context, *args: Any) -> Any:
        return self.callback(context, *args)


@dataclass(frozen=True, kw_only=True)
class ErrorHook(Hook):
    """Callback run with ``(context, error)`` once a task has failed for good."""

    kind: HookKind = HookKind.ERROR

    def invoke(self, context: Context, *args: Any) -> Any:
        (error,) = args
        return self.callback(context, error)


class TaskCallable:
    """Call-once continuation handed to around hooks.

    Calling it runs the next layer (an inner around hook, or the task body
    and output recording). A second call raises HookAlreadyInvokedError.
    """

    def __init__(self, task_name: str, next_layer: Callable[[], Any]) -> None:
        self.task_name = task_name
        self._next_layer = next_layer
        self.called = False

    def __call__(self) -> Any:
        if self.called:
            raise HookAlreadyInvokedError(self.task_name)
        self.called = True
        return self._next_layer()

    def __repr__(self) -> str:
        return f'TaskCallable(task_name={self.task_name!r}, called={self.called})'


class HookRegistry:
    """Hooks indexed per kind into a global list and a per-task dict."""

    def __init__(self) -> None:
        self._global: dict[HookKind, list[Hook]] = {kind: [] for kind in HookKind}
        self._by_task: dict[HookKind, dict[str, list[Hook]]] = {
            kind: {} for kind in HookKind
        }

    def add(self, hook: Hook) -> Hook:
        if hook.is_global:
            self._global[hook.kind].append(hook)
        else:
            scoped = self._by_task[hook.kind]
            for name in sorted(hook.task_names):
                scoped.setdefault(name, []).append(hook)
        return hook

    def register(
        self,
        kind: HookKind,
        callback: Callable[..., Any],
        task_names: Iterable[str] = (),
    ) -> Hook:
        names = frozenset(task_names)
        if kind is HookKind.ERROR:
            return self.add(ErrorHook(callback=callback, task_names=names))
        return self.add(Hook(kind=kind, callback=callback, task_names=names))

    def _global_then_specific(self, kind: HookKind, task_name: str) -> list[Hook]:
        return [*self._global[kind], *self._by_task[kind].get(task_name, [])]

    def before_hooks_for(self, task_name: str) -> list[Hook]:
        return self._global_then_specific(HookKind.BEFORE, task_name)

    def around_hooks_for(self, task_name: str) -> list[Hook]:
        return self._global_then_specific(HookKind.AROUND, task_name)

    def after_hooks_for(self, task_name: str) -> list[Hook]:
        return [
            *self._by_task[HookKind.AFTER].get(task_name, []),
            *self._global[HookKind.AFTER],
        ]

    def error_hooks_for(self, task_name: str) -> list[Hook]:
        return self._global_then_specific(HookKind.ERROR, task_name)

    def scoped_task_names(self) -> set[str]:
        """Every task name referenced by a task-specific hook."""
        names: set[str] = set()
        for scoped in self._by_task.values():
            names.update(scoped)
        return names

    def __len__(self) -> int:
        total = sum(len(hooks) for hooks in self._global.values())
        seen: set[int] = set()
        for scoped in self._by_task.values():
            for hooks in scoped.values():
                seen.update(id(h) for h in hooks)
        return total + len(seen)
