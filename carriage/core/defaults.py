"""Shared default constants for the carriage library."""

# Seconds a throttle permit stays valid before the queue may expire it.
# Bounds how long a crashed worker can leak a permit.
DEFAULT_THROTTLE_TTL_S: int = 180

# Seconds between acquire attempts while a throttle is saturated.
DEFAULT_SEMAPHORE_POLL_INTERVAL_S: float = 3.0

# Dependency wait: 0 means poll until the dispatched jobs finish.
DEFAULT_POLL_TIMEOUT_S: float = 0
DEFAULT_POLL_INTERVAL_S: float = 5
DEFAULT_RESCHEDULE_DELAY_S: float = 5

# Retry: a mapping without an explicit count retries this many times.
DEFAULT_RETRY_COUNT: int = 3
DEFAULT_RETRY_BASE_DELAY_S: float = 1.0

# Fractional spread applied by retry jitter (+/-25%).
RETRY_JITTER_SPREAD: float = 0.25

DEFAULT_QUEUE_NAME: str = 'default'
