"""Logging infrastructure with structured JSON logging."""

import logging
import json
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


# Fields attached to records by LogContext and emitted by both formatters
CONTEXT_FIELDS = ('service', 'phase', 'revision', 'operation', 'duration')

_context = threading.local()
_factory_lock = threading.Lock()
_factory_installed = False


def _current_context() -> Dict[str, Any]:
    stack = getattr(_context, 'stack', None)
    if not stack:
        return {}
    merged: Dict[str, Any] = {}
    for fields in stack:
        merged.update(fields)
    return merged


def _install_record_factory() -> None:
    """Install a record factory that copies the calling thread's context."""
    global _factory_installed

    with _factory_lock:
        if _factory_installed:
            return

        old_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            for key, value in _current_context().items():
                if not hasattr(record, key):
                    setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        _factory_installed = True


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Add extra fields
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console.

        Args:
            record: The log record to format

        Returns:
            Formatted log string with colors
        """
        color = self.COLORS.get(record.levelname, '')
        reset = self.RESET

        timestamp = datetime.utcnow().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8}{reset}"
        message = record.getMessage()

        # Prefix with the service being reconciled
        if hasattr(record, 'service'):
            message = f"[{record.service}] {message}"

        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.ecs-manage/logs') -> None:
    """Setup logging infrastructure.

    Args:
        log_level: Logging level (debug, info, warning, error)
        log_dir: Directory for JSON log files, None disables file logging
    """
    # Convert string level to logging constant
    level = getattr(logging, log_level.upper())

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level if log_dir is None else logging.DEBUG)

    # Remove existing handlers
    root_logger.handlers.clear()

    # Console handler on stderr so command output stays parseable
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    # File handler with JSON format
    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"ecs-manage-{datetime.utcnow().strftime('%Y%m%d')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always log debug to file
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from boto3 and other libraries
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class LogContext:
    """Context manager for adding structured fields to logs.

    Fields only apply to records created on the entering thread, so
    reconciliations running in parallel workers keep their own service tag.
    """

    def __init__(self, **kwargs: Any):
        """Initialize log context.

        Args:
            **kwargs: Key-value pairs to add to log records
        """
        self.context = kwargs

    def __enter__(self):
        """Enter context and add fields to this thread's records."""
        _install_record_factory()
        if not hasattr(_context, 'stack'):
            _context.stack = []
        _context.stack.append(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and drop this thread's fields."""
        _context.stack.pop()
