# pgqueue/core/logging.py
"""
Component loggers for pgqueue.

Each ``pgqueue.<component>`` logger writes one colored, column-aligned line
per record to stdout::

    [12:00:01] [sweeper]     [INFO]    Claim sweep: claimed=3 ... job=4f1c...

While a sweep handles a job it runs inside ``job_context(job_id)``, and every
line logged underneath (dispatcher, executor, store) ends with that job id.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Iterator, Optional

_default_level: int = logging.INFO

_current_job: ContextVar[Optional[str]] = ContextVar('pgqueue_job_id', default=None)

_RESET = '\033[0m'
_TIME = '\033[94m'
_TEXT = '\033[97m'
_DIM = '\033[90m'
_LEVEL_COLORS = {
    logging.DEBUG: '\033[90m',
    logging.INFO: '\033[92m',
    logging.WARNING: '\033[93m',
    logging.ERROR: '\033[91m',
    logging.CRITICAL: '\033[1;91m',
}

# '[dispatcher]' and '[WARNING]' are the widest entries
_COMPONENT_WIDTH = 14
_LEVEL_WIDTH = 10


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``job_id``."""
    token = _current_job.set(job_id)
    try:
        yield
    finally:
        _current_job.reset(token)


def current_job_id() -> Optional[str]:
    return _current_job.get()


class JobContextFilter(logging.Filter):
    """Copies the active job id onto the record as ``record.job_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, 'job_id', None) is None:
            record.job_id = _current_job.get()
        return True


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.rpartition('.')[2]
        level_color = _LEVEL_COLORS.get(record.levelno, _TEXT)

        line = (
            f'{_TIME}[{stamp}]{_RESET} '
            f'{_TEXT}{f"[{component}]":<{_COMPONENT_WIDTH}}{_RESET}'
            f'{level_color}{f"[{record.levelname}]":<{_LEVEL_WIDTH}}{_RESET}'
            f'{_TEXT}{record.getMessage()}{_RESET}'
        )
        job_id = getattr(record, 'job_id', None)
        if job_id:
            line += f' {_DIM}job={job_id}{_RESET}'
        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line


def set_default_level(level: int) -> None:
    """Level given to loggers created from now on."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    logger = logging.getLogger(f'pgqueue.{component_name}')
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter())
    handler.addFilter(JobContextFilter())
    handler.setLevel(_default_level)
    logger.addHandler(handler)
    logger.setLevel(_default_level)
    # Own handler only; the root logger would print every line twice
    logger.propagate = False
    return logger


def setup_logging(loglevel: str) -> None:
    """Apply a level name (``--loglevel``) to existing and future pgqueue loggers."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)
    logging.getLogger('pgqueue').setLevel(level)

    for name, existing in logging.Logger.manager.loggerDict.items():
        if not name.startswith('pgqueue.') or not isinstance(existing, logging.Logger):
            continue
        existing.setLevel(level)
        for handler in existing.handlers:
            handler.setLevel(level)
