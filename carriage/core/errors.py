"""Rust-style error display for carriage definition and configuration errors.

Definition-time problems (bad task options, cycles, duplicate names, invalid
config) are raised as ``CarriageError`` dataclasses so they render with an
error code, the offending source line, notes and a help hint. Runtime
failures that a worker or the queue's own retry mechanism handles are plain
``RuntimeError`` subclasses further down.
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# Frames under this directory belong to the library, not to user code.
_CARRIAGE_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

_TRUTHY = ('1', 'true', 'yes')


class ErrorCode(str, Enum):
    """Error codes for definition/validation errors.

    - E001-E099: Workflow validation errors
    - E100-E199: Task definition errors
    - E200-E299: Config errors
    - E300-E399: Registry errors
    """

    # Workflow validation (E001-E099)
    WORKFLOW_NO_NAME = 'E001'
    WORKFLOW_INVALID_ARGUMENT = 'E002'
    WORKFLOW_INVALID_TASK_NAME = 'E003'
    WORKFLOW_DUPLICATE_TASK = 'E004'
    WORKFLOW_INVALID_DEPENDENCY = 'E006'
    WORKFLOW_CYCLE_DETECTED = 'E007'
    WORKFLOW_FROZEN = 'E008'
    WORKFLOW_NAMESPACE_SCOPE = 'E009'
    WORKFLOW_DEPENDENCY_ORDER = 'E010'

    # Task definition (E100-E199)
    TASK_INVALID_RETRY = 'E100'
    TASK_INVALID_THROTTLE = 'E101'
    TASK_INVALID_DEPENDENCY_WAIT = 'E102'
    TASK_INVALID_DRY_RUN = 'E103'
    TASK_INVALID_OPTIONS = 'E104'

    # Config (E200-E299)
    CONFIG_INVALID = 'E200'
    CONFIG_DUPLICATE_SCHEDULE = 'E201'

    # Registry (E300-E399)
    TASK_NOT_FOUND = 'E300'
    TASK_DUPLICATE_NAME = 'E301'
    WORKFLOW_NOT_REGISTERED = 'E302'
    WORKFLOW_DUPLICATE_NAME = 'E303'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """Empty codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in _TRUTHY


def _should_use_colors() -> bool:
    if _env_flag('CARRIAGE_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    return _env_flag('CARRIAGE_VERBOSE')


def _should_use_plain_errors() -> bool:
    return _env_flag('CARRIAGE_PLAIN_ERRORS')


@dataclass
class SourceLocation:
    """A file/line pointer used to render the offending source line."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Location of a function definition, or None for builtins and mocks."""
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class CarriageError(Exception):
    """Base exception for carriage definition/validation errors.

    Rendered as::

        error[E007]: cycle detected in workflow 'billing'
          --> app/workflows.py:42
           |
         42| @billing.task('charge', depends_on=['invoice'])
           | ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^
           = note: cycle: charge -> invoice -> charge
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> CarriageError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> CarriageError:
        self.help_text = help_text
        return self

    def with_location(self, location: SourceLocation) -> CarriageError:
        self.location = location
        return self

    def _format_location(self, c: Any) -> list[str]:
        if self.location is None:
            return []
        out = [f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}']
        source_line = self.location.get_source_line()
        if not source_line:
            return out

        line_num = str(self.location.line)
        gutter = ' ' * len(line_num)
        if self.location.column is not None:
            start = self.location.column
            width = max(1, (self.location.end_column or start + 1) - start)
            underline = ' ' * start + '^' * width
        else:
            stripped = source_line.lstrip()
            underline = ' ' * (len(source_line) - len(stripped)) + '^' * len(stripped)

        out.append(f'   {c.BLUE}{gutter}|{c.RESET}')
        out.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
        out.append(f'   {c.BLUE}{gutter}|{c.RESET} {c.RED}{underline}{c.RESET}')
        return out

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        code_part = f'[{self.code.value}]' if self.code else ''
        lines: list[str] = ['', f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']
        lines.extend(self._format_location(c))

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {extra}' for extra in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {h}' for h in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text so the message is safe for log files and JSON payloads.
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _carriage_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _should_use_plain_errors() or not isinstance(exc_value, CarriageError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _should_show_verbose():
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(f'{c.DIM}Full traceback (CARRIAGE_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the exception hook that renders CarriageError in Rust style."""
    sys.excepthook = _carriage_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook


# =============================================================================
# Definition-time error classes
# =============================================================================


@dataclass
class WorkflowValidationError(CarriageError):
    """Raised when a workflow declaration is invalid."""

    pass


@dataclass
class CyclicDependencyError(WorkflowValidationError):
    """Raised when ``depends_on`` edges form a cycle.

    ``cycle`` lists the task names along the loop, with the first name
    repeated at the end (``['a', 'b', 'a']``).
    """

    cycle: list[str] = field(default_factory=lambda: [])


@dataclass
class TaskDefinitionError(CarriageError):
    """Raised when a task's options are malformed."""

    pass


@dataclass
class ConfigurationError(CarriageError):
    """Raised when app configuration is invalid."""

    pass


@dataclass
class RegistryError(CarriageError):
    """Raised when a registry lookup or registration fails."""

    pass


# =============================================================================
# Phase-gated error collection
# =============================================================================


class ValidationReport:
    """Collects several CarriageErrors from one validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[CarriageError] = []

    def add(self, error: CarriageError) -> None:
        self.errors.append(error)

    def extend(self, errors: list[CarriageError]) -> None:
        self.errors.extend(errors)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to '
            f'{len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(CarriageError):
    """Wraps a ValidationReport holding two or more errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Locations live on the individual errors.
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise what a report collected.

    Nothing happens for an empty report, a single error is raised as its own
    type so ``except CyclicDependencyError`` keeps working, and two or more are
    wrapped in MultipleValidationErrors.
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """First frame on the stack that is neither carriage nor site-packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_CARRIAGE_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None


def task_definition_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    fn: Callable[..., Any] | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> TaskDefinitionError:
    """Build a TaskDefinitionError pointing at the task function when given."""
    location = SourceLocation.from_function(fn) if fn is not None else None
    return TaskDefinitionError(
        message=message,
        code=code,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )


# =============================================================================
# Runtime errors
# =============================================================================


class CarriageRuntimeError(RuntimeError):
    """Base class for errors raised while a workflow runs."""


class HookNotInvokedError(CarriageRuntimeError):
    """An around hook returned without calling its continuation."""

    def __init__(self, task_name: str) -> None:
        super().__init__(
            f"around hook for task '{task_name}' did not invoke the task; "
            'the body and the inner hooks were skipped'
        )
        self.task_name = task_name


class HookAlreadyInvokedError(CarriageRuntimeError):
    """An around hook called its continuation more than once."""

    def __init__(self, task_name: str) -> None:
        super().__init__(f"task '{task_name}' was already invoked by an around hook")
        self.task_name = task_name


class DependencyTimeoutError(CarriageRuntimeError):
    """Dispatched dependencies did not finish within ``poll_timeout``."""

    def __init__(self, task_name: str, dependency: str, waited: float) -> None:
        super().__init__(
            f"task '{task_name}' timed out after {waited:.1f}s waiting for "
            f"dispatched jobs of '{dependency}'"
        )
        self.task_name = task_name
        self.dependency = dependency
        self.waited = waited


class DependencyNotSettledError(CarriageRuntimeError):
    """A synchronous dependency has not run before its dependent."""

    def __init__(self, task_name: str, dependency: str) -> None:
        super().__init__(
            f"task '{task_name}' depends on '{dependency}', which has not run yet; "
            'declare dependencies before the tasks that use them'
        )
        self.task_name = task_name
        self.dependency = dependency


class TaskOutputError(CarriageRuntimeError):
    """A task body returned something that cannot be recorded as output."""


class UnitNotFoundError(CarriageRuntimeError, LookupError):
    """No unit of work exists for the requested job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"no job found with id '{job_id}'")
        self.job_id = job_id
