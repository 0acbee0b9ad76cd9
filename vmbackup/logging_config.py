"""
Logging configuration for the VM backup system
"""
import logging
import logging.handlers
import json
import sys
from contextlib import contextmanager
from pathlib import Path
from datetime import datetime
from typing import Iterator, List

_RESERVED = {'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
             'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
             'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
             'thread', 'threadName', 'processName', 'process', 'message',
             'taskName'}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Add any extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class TimelineHandler(logging.Handler):
    """Collects 'HH:MM:SS message' lines for the end-of-batch report"""

    def __init__(self, level=logging.INFO):
        super().__init__(level)
        self.lines: List[str] = []
        self.setFormatter(logging.Formatter('%(asctime)s %(message)s', datefmt='%X'))

    def emit(self, record):
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)


@contextmanager
def capture_timeline(logger_name: str = "vmbackup") -> Iterator[TimelineHandler]:
    """Attach a TimelineHandler to a logger for the duration of a batch"""
    handler = TimelineHandler()
    logger = logging.getLogger(logger_name)
    logger.addHandler(handler)
    if logger.getEffectiveLevel() > logging.INFO:
        previous_level = logger.level
        logger.setLevel(logging.INFO)
    else:
        previous_level = None
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
        if previous_level is not None:
            logger.setLevel(previous_level)


def setup_logging(log_level: str = "INFO",
                  log_format: str = "text",
                  log_dir: str = "./logs",
                  log_file_max_size: int = 10485760):
    """Setup console and rotating file logging"""

    # Create log directory
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler with rotation
    log_file = Path(log_dir) / "vmbackup.log"
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=log_file_max_size,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


def get_logger(name: str):
    """Get a logger instance that accepts structured keyword fields"""

    class EnhancedLogger:
        def __init__(self, logger):
            self._logger = logger

        def _log_with_kwargs(self, level, msg, *args, **kwargs):
            """Log with keyword arguments support"""
            exc_info = kwargs.pop('exc_info', None)
            extra = kwargs.pop('extra', {})
            # Move all remaining kwargs to extra
            for key, value in kwargs.items():
                extra[key] = value

            self._logger.log(level, msg, *args, extra=extra or None, exc_info=exc_info)

        def info(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.INFO, msg, *args, **kwargs)

        def error(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.ERROR, msg, *args, **kwargs)

        def warning(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.WARNING, msg, *args, **kwargs)

        def debug(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.DEBUG, msg, *args, **kwargs)

        def exception(self, msg, *args, **kwargs):
            kwargs.setdefault('exc_info', True)
            self._log_with_kwargs(logging.ERROR, msg, *args, **kwargs)

    return EnhancedLogger(logging.getLogger(name))


# Context manager for operation logging
class LogOperation:
    """Context manager for logging operations with timing"""

    def __init__(self, logger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time = None

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.debug(f"Starting {self.operation}", extra={
            'operation': self.operation,
            'phase': 'start',
            **self.context
        })
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = datetime.now() - self.start_time

        if exc_type is None:
            self.logger.debug(f"Completed {self.operation}", extra={
                'operation': self.operation,
                'phase': 'complete',
                'duration_seconds': duration.total_seconds(),
                **self.context
            })
        else:
            self.logger.error(f"Failed {self.operation}", extra={
                'operation': self.operation,
                'phase': 'failed',
                'duration_seconds': duration.total_seconds(),
                'error': str(exc_val),
                **self.context
            })
