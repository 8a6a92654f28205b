# carriage/core/models/schedule.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from carriage.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)

if TYPE_CHECKING:
    from carriage.core.registry.workflows import WorkflowRegistry


class Schedule(BaseModel):
    """
    A recurring run of a workflow, evaluated by an external scheduler.

    Fields:
        - expression: cron-style or natural-language schedule expression
        - workflow_name: workflow to start
        - key: unique identifier of the schedule (defaults to the workflow name)
        - queue: target queue (None = workflow/default queue)
        - priority: queue priority, if the queue supports one
        - args: workflow arguments for each run
        - description: free text for operators
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    expression: str = Field(min_length=1, description='Schedule expression')
    workflow_name: str = Field(min_length=1, description='Workflow to start')
    key: str = Field(min_length=1, description='Unique schedule identifier')
    queue: Optional[str] = Field(default=None, description='Target queue name')
    priority: Optional[int] = Field(default=None, description='Queue priority')
    args: dict[str, Any] = Field(default_factory=dict, description='Workflow arguments')
    description: Optional[str] = Field(default=None, description='Operator notes')

    def to_config(self) -> dict[str, Any]:
        """Entry for a recurring-task config; unset values are omitted."""
        config: dict[str, Any] = {
            'workflow': self.workflow_name,
            'schedule': self.expression,
            'queue': self.queue,
            'priority': self.priority,
            'args': dict(self.args) if self.args else None,
            'description': self.description,
        }
        return {k: v for k, v in config.items() if v is not None}


def build_schedule_config(registry: WorkflowRegistry) -> dict[str, dict[str, Any]]:
    """Collect every declared schedule as ``{key: config}``.

    Raises:
        ConfigurationError: if two schedules share a key.
    """
    report = ValidationReport('schedule')
    config: dict[str, dict[str, Any]] = {}
    owners: dict[str, str] = {}

    for workflow in registry.values():
        for schedule in workflow.schedules:
            if schedule.key in config:
                report.add(
                    ConfigurationError(
                        message=f"duplicate schedule key '{schedule.key}'",
                        code=ErrorCode.CONFIG_DUPLICATE_SCHEDULE,
                        notes=[
                            f"declared by workflow '{owners[schedule.key]}' "
                            f"and by workflow '{schedule.workflow_name}'"
                        ],
                        help_text='pass a distinct key= to workflow.schedule(...)',
                    )
                )
                continue
            owners[schedule.key] = schedule.workflow_name
            config[schedule.key] = schedule.to_config()

    raise_collected(report)
    return config
