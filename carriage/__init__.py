"""carriage - declarative, resumable workflows on top of a job queue"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Carriage
from .core.models.app import AppConfig
from .core.workflow import Workflow, TaskGraph, TaskNotFound, DuplicateTaskNameError
from .core.job import Job
from .core.runner import Runner, Done, Suspended, RunOutcome
from .core.status import WorkflowStatusView
from .core.models.namespace import Namespace
from .core.models.policies import (
    RetryPolicy,
    ThrottlePolicy,
    DependencyWaitPolicy,
    DryRunPolicy,
)
from .core.models.semaphore import Semaphore, hold_permit
from .core.models.hooks import Hook, ErrorHook, HookKind, HookRegistry, TaskCallable
from .core.models.task import Task, OutputField, ArgumentDef
from .core.models.context import (
    Context,
    Arguments,
    ArgumentNotFound,
    EachState,
    Checkpoint,
)
from .core.models.output import Output, TaskOutput
from .core.models.job_status import JobStatus, TaskJobStatus
from .core.models.schedule import Schedule, build_schedule_config
from .core.queues import (
    QueueAdapter,
    InMemoryQueue,
    UnitOfWork,
    UnitRecord,
    Payload,
)
from .core.registry.workflows import (
    WorkflowRegistry,
    WorkflowNotRegistered,
    DuplicateWorkflowError,
)
from .core.types.status import JobState, JOB_FINISHED_STATES
from .core.codec.serde import SerializationError
from .core.errors import (
    ErrorCode,
    CarriageError,
    WorkflowValidationError,
    CyclicDependencyError,
    TaskDefinitionError,
    ConfigurationError,
    RegistryError,
    ValidationReport,
    MultipleValidationErrors,
    CarriageRuntimeError,
    HookNotInvokedError,
    HookAlreadyInvokedError,
    DependencyTimeoutError,
    DependencyNotSettledError,
    TaskOutputError,
    UnitNotFoundError,
)

__all__ = [
    # Core
    'Carriage',
    'AppConfig',
    'Workflow',
    'TaskGraph',
    'Job',
    'Runner',
    'Done',
    'Suspended',
    'RunOutcome',
    'WorkflowStatusView',
    # Declaration
    'Namespace',
    'Task',
    'OutputField',
    'ArgumentDef',
    'RetryPolicy',
    'ThrottlePolicy',
    'DependencyWaitPolicy',
    'DryRunPolicy',
    'Semaphore',
    'hold_permit',
    'Hook',
    'ErrorHook',
    'HookKind',
    'HookRegistry',
    'TaskCallable',
    'Schedule',
    'build_schedule_config',
    # Runtime state
    'Context',
    'Arguments',
    'ArgumentNotFound',
    'EachState',
    'Checkpoint',
    'Output',
    'TaskOutput',
    'JobStatus',
    'TaskJobStatus',
    'JobState',
    'JOB_FINISHED_STATES',
    # Queue
    'QueueAdapter',
    'InMemoryQueue',
    'UnitOfWork',
    'UnitRecord',
    'Payload',
    # Registry
    'WorkflowRegistry',
    'WorkflowNotRegistered',
    'DuplicateWorkflowError',
    'TaskNotFound',
    'DuplicateTaskNameError',
    # Errors
    'ErrorCode',
    'CarriageError',
    'WorkflowValidationError',
    'CyclicDependencyError',
    'TaskDefinitionError',
    'ConfigurationError',
    'RegistryError',
    'ValidationReport',
    'MultipleValidationErrors',
    'CarriageRuntimeError',
    'HookNotInvokedError',
    'HookAlreadyInvokedError',
    'DependencyTimeoutError',
    'DependencyNotSettledError',
    'TaskOutputError',
    'UnitNotFoundError',
    'SerializationError',
]
