# carriage/core/models/output.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterable, Iterator, Optional


class TaskOutput:
    """One recorded result of a task, at ``each_index`` for map tasks.

    ``data`` always carries exactly the fields the task declared. Field
    values are read with ``task_output['field']`` or ``task_output.get()``.
    """

    __slots__ = ('task_name', 'each_index', 'data')

    def __init__(
        self,
        task_name: str,
        data: Mapping[str, Any],
        each_index: Optional[int] = None,
    ) -> None:
        self.task_name = task_name
        self.each_index = each_index
        self.data: dict[str, Any] = dict(data)

    @property
    def index(self) -> int:
        """Slot in the task's output list; non-map outputs live at 0."""
        return self.each_index if self.each_index is not None else 0

    def __getitem__(self, field_name: str) -> Any:
        return self.data[field_name]

    def get(self, field_name: str, default: Any = None) -> Any:
        return self.data.get(field_name, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            'task_name': self.task_name,
            'each_index': self.each_index,
            'data': dict(self.data),
        }

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TaskOutput):
            return (
                self.task_name == other.task_name
                and self.each_index == other.each_index
                and self.data == other.data
            )
        # Lets tests and callers compare against plain field mappings.
        if isinstance(other, Mapping):
            return self.data == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f'TaskOutput(task_name={self.task_name!r}, '
            f'each_index={self.each_index!r}, data={self.data!r})'
        )


class Output:
    """Outputs of a run: task name -> list indexed by each-index."""

    def __init__(self, outputs: Iterable[TaskOutput] = ()) -> None:
        self._store: dict[str, list[Optional[TaskOutput]]] = {}
        for task_output in outputs:
            self.add(task_output)

    def add(self, task_output: TaskOutput) -> TaskOutput:
        """Insert or overwrite the output at its index."""
        slots = self._store.setdefault(task_output.task_name, [])
        index = task_output.index
        if index >= len(slots):
            slots.extend([None] * (index + 1 - len(slots)))
        slots[index] = task_output
        return task_output

    def restore(
        self,
        task_name: str,
        each_index: Optional[int],
        previous: Optional[TaskOutput],
    ) -> None:
        """Put a slot back to ``previous``; ``None`` empties it."""
        if previous is not None:
            self.add(previous)
            return
        slots = self._store.get(task_name)
        index = each_index if each_index is not None else 0
        if slots is not None and index < len(slots):
            slots[index] = None

    def fetch(self, task_name: str, each_index: Optional[int] = None) -> Optional[TaskOutput]:
        slots = self._store.get(task_name, [])
        index = each_index if each_index is not None else 0
        if index < 0 or index >= len(slots):
            return None
        return slots[index]

    def fetch_all(self, task_name: str) -> list[TaskOutput]:
        return [o for o in self._store.get(task_name, []) if o is not None]

    def __getitem__(self, task_name: str) -> list[TaskOutput]:
        return self.fetch_all(task_name)

    def __contains__(self, task_name: object) -> bool:
        return isinstance(task_name, str) and bool(self.fetch_all(task_name))

    def __iter__(self) -> Iterator[str]:
        return iter(name for name in self._store if self.fetch_all(name))

    def __len__(self) -> int:
        return len(self.flat())

    def task_names(self) -> list[str]:
        return list(self)

    def flat(self) -> list[TaskOutput]:
        return [o for slots in self._store.values() for o in slots if o is not None]

    def merge(self, other: Output) -> None:
        for task_output in other.flat():
            self.add(task_output)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Output):
            return NotImplemented
        return {n: self.fetch_all(n) for n in self} == {n: other.fetch_all(n) for n in other}

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        by_task = {n: [o.data for o in self.fetch_all(n)] for n in self}
        return f'Output({by_task!r})'
