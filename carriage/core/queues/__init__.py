from carriage.core.queues.base import (
    Executor,
    Payload,
    QueueAdapter,
    UnitOfWork,
    UnitRecord,
    new_job_id,
)
from carriage.core.queues.memory import InMemoryQueue

__all__ = [
    'Executor',
    'InMemoryQueue',
    'Payload',
    'QueueAdapter',
    'UnitOfWork',
    'UnitRecord',
    'new_job_id',
]
