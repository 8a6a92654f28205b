# carriage/core/models/namespace.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

SEPARATOR = ':'


@dataclass(frozen=True)
class Namespace:
    """Hierarchical task-name prefix.

    ``Namespace('refund', parent=Namespace('payment')).full_name`` is
    ``'payment:refund'``; the default namespace has an empty ``full_name`` and
    leaves task names unqualified.
    """

    name: str = ''
    parent: Optional[Namespace] = None

    @classmethod
    def default(cls) -> Namespace:
        return cls()

    @property
    def is_default(self) -> bool:
        return self.name == ''

    def child(self, name: str) -> Namespace:
        return Namespace(name=name, parent=self)

    @property
    def full_name(self) -> str:
        parts: list[str] = []
        node: Optional[Namespace] = self
        while node is not None:
            if node.name:
                parts.append(node.name)
            node = node.parent
        return SEPARATOR.join(reversed(parts))

    def qualify(self, task_name: str) -> str:
        """Qualified task name within this namespace."""
        prefix = self.full_name
        if not prefix:
            return task_name
        return f'{prefix}{SEPARATOR}{task_name}'
