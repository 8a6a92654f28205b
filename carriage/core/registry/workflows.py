# carriage/core/registry/workflows.py
from __future__ import annotations

from typing import Dict, Iterator, MutableMapping

from carriage.core.errors import (
    CarriageError,
    ErrorCode,
    RegistryError,
    ValidationReport,
    raise_collected,
)
from carriage.core.workflow import Workflow


class WorkflowNotRegistered(RegistryError, KeyError):
    """Raised when a workflow name is not present in the registry.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, workflow_name: str) -> None:
        RegistryError.__init__(
            self,
            message=f"workflow '{workflow_name}' not registered",
            code=ErrorCode.WORKFLOW_NOT_REGISTERED,
            notes=[f"requested workflow: '{workflow_name}'"],
            help_text='register the workflow with app.workflow(...) or registry.register(...)\n'
            'in every process that executes its jobs',
        )
        self.workflow_name = workflow_name


class DuplicateWorkflowError(RegistryError):
    """Raised when a workflow name is registered twice."""

    def __init__(self, workflow_name: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate workflow name '{workflow_name}'",
            code=ErrorCode.WORKFLOW_DUPLICATE_NAME,
            notes=[context] if context else [],
            help_text='each workflow name must be unique within a carriage app',
        )
        self.workflow_name = workflow_name


class WorkflowRegistry(MutableMapping[str, Workflow]):
    """Explicit registry of workflows, built at startup and passed around.

    Registering the same Workflow object twice (a module imported twice) is
    a no-op; a different Workflow under a taken name is an error.
    """

    def __init__(self, initial: Dict[str, Workflow] | None = None) -> None:
        self._data: Dict[str, Workflow] = {}
        for workflow in (initial or {}).values():
            self.register(workflow)

    def __getitem__(self, key: str) -> Workflow:
        try:
            return self._data[key]
        except KeyError:
            raise WorkflowNotRegistered(key)

    def __setitem__(self, key: str, value: Workflow) -> None:
        if key in self._data:
            raise DuplicateWorkflowError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, workflow: Workflow) -> Workflow:
        existing = self._data.get(workflow.name)
        if existing is workflow:
            return workflow
        if existing is not None:
            raise DuplicateWorkflowError(workflow.name, 'workflow with this name already exists')
        self._data[workflow.name] = workflow
        return workflow

    def unregister(self, name: str) -> None:
        self._data.pop(name, None)

    def collect_errors(self) -> list[CarriageError]:
        """Validation errors of every registered workflow, without raising."""
        errors: list[CarriageError] = []
        for workflow in self._data.values():
            errors.extend(workflow.collect_errors())
        return errors

    def check(self) -> None:
        """Validate and seal every workflow, reporting all problems at once."""
        report = ValidationReport('registry')
        report.extend(self.collect_errors())
        raise_collected(report)
        for workflow in self._data.values():
            workflow.seal()
