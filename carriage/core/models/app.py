# carriage/core/models/app.py
import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from carriage.core.defaults import DEFAULT_QUEUE_NAME, DEFAULT_SEMAPHORE_POLL_INTERVAL_S
from carriage.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)

LogLevel = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class AppConfig(BaseModel):
    """
    Application-wide settings.

    Fields:
        log_level: level for carriage loggers created after startup
        default_queue_name: queue for jobs whose workflow/task names none
        semaphore_poll_interval_s: wait between throttle acquire attempts
        eager_dispatch: run in-memory queue jobs as soon as they are enqueued
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    log_level: LogLevel = 'INFO'
    default_queue_name: str = DEFAULT_QUEUE_NAME
    semaphore_poll_interval_s: float = Field(default=DEFAULT_SEMAPHORE_POLL_INTERVAL_S)
    eager_dispatch: bool = False

    @model_validator(mode='after')
    def validate_settings(self) -> 'AppConfig':
        """Collect every invalid setting and raise them together."""
        report = ValidationReport('config')

        if not self.default_queue_name.strip():
            report.add(
                ConfigurationError(
                    message='default_queue_name must not be empty',
                    code=ErrorCode.CONFIG_INVALID,
                    help_text="use a queue name such as 'default'",
                )
            )

        if self.semaphore_poll_interval_s <= 0:
            report.add(
                ConfigurationError(
                    message='semaphore_poll_interval_s must be positive',
                    code=ErrorCode.CONFIG_INVALID,
                    notes=[f'got semaphore_poll_interval_s={self.semaphore_poll_interval_s}'],
                    help_text='use a positive number of seconds, e.g. 3.0',
                )
            )

        raise_collected(report)
        return self

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)

    def log_config(self, logger: logging.Logger) -> None:
        logger.info(
            f'carriage config: default_queue={self.default_queue_name}, '
            f'log_level={self.log_level}, eager_dispatch={self.eager_dispatch}, '
            f'semaphore_poll_interval={self.semaphore_poll_interval_s}s'
        )
