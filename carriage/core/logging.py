# carriage/core/logging.py
import logging
import sys
from datetime import datetime

# Level applied to loggers created by get_logger().
_default_level: int = logging.INFO


class ColoredFormatter(logging.Formatter):
    """Tabular, colored log lines: ``[time] [component] [level] message``."""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    COMPONENT_WIDTH = 12  # [runner], [queue], [semaphore]
    LEVEL_WIDTH = 10  # [WARNING] + 1

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'carriage.runner' -> 'runner'
        component = record.name.rsplit('.', 1)[-1]
        component_col = f'[{component}]'.ljust(self.COMPONENT_WIDTH)
        level_col = f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH)

        reset = self.COLORS['RESET']
        white = self.COLORS['WHITE']
        level_color = self.LEVEL_COLORS.get(record.levelname, white)

        formatted = (
            f"{self.COLORS['LIGHT_BLUE']}[{time_str}]{reset} "
            f'{white}{component_col}{reset}'
            f'{level_color}{level_col}{reset}'
            f'{white}{record.getMessage()}{reset}'
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the level for carriage loggers, existing ones included."""
    global _default_level
    _default_level = level
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith('carriage.') and isinstance(logger, logging.Logger):
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Get the ``carriage.<component_name>`` logger, configured on first use."""
    logger = logging.getLogger(f'carriage.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
