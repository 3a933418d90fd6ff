"""Logging infrastructure with structured JSON logging."""

import logging
import json
import re
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple


# Extra record attributes copied into JSON log lines when present
STRUCTURED_FIELDS = ('deployment_id', 'domain', 'phase', 'operation', 'duration')

REDACTION_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'(CLOUDFLARE_API_TOKEN=?)(\w{20,})', re.IGNORECASE), r'\1[REDACTED]'),
    (
        re.compile(r'(token|api[_-]?token|api[_-]?key|auth[_-]?token)["\']?[:=]\s*([a-zA-Z0-9_-]{6,})', re.IGNORECASE),
        r'\1: [REDACTED]',
    ),
    (re.compile(r'(password|passwd|pwd)["\']?[:=]\s*([^"\'\s]{4,})', re.IGNORECASE), r'\1: [REDACTED]'),
    (re.compile(r'(secret|key)["\']?[:=]\s*([a-zA-Z0-9_-]{6,})', re.IGNORECASE), r'\1: [REDACTED]'),
    (
        re.compile(r'(account[_-]?id|zone[_-]?id)["\']?[:=]\s*["\']?([a-zA-Z0-9]{8})([a-zA-Z0-9]*)', re.IGNORECASE),
        r'\1: \2[REDACTED]',
    ),
]


def redact(text: str) -> str:
    """Mask credentials and secrets in free-form text.

    Args:
        text: Text that may contain tokens (typically subprocess output)

    Returns:
        Text with sensitive values replaced by ``[REDACTED]``
    """
    if not text:
        return text
    for pattern, replacement in REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


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
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        log_data.update(structured_fields(record))

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
        color = self.COLORS.get(record.levelname, '')
        timestamp = datetime.utcnow().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8}{self.RESET}"
        message = record.getMessage()

        # [domain/phase] prefix
        fields = structured_fields(record)
        prefix = [str(fields[name]) for name in ('domain', 'phase') if fields.get(name)]
        if prefix:
            message = f"[{'/'.join(prefix)}] {message}"

        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: str = '.edge-deploy/logs') -> None:
    """Setup logging infrastructure.

    Args:
        log_level: Logging level (debug, info, warning, error)
        log_dir: Directory receiving the daily JSONL log file
    """
    level = getattr(logging, log_level.upper())

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    log_file = log_path / f"edge-deploy-{datetime.utcnow().strftime('%Y%m%d')}.jsonl"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)  # Always log debug to file
    file_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(file_handler)

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

    Fields are attached through the log record factory and apply to records
    created by the current thread only, so portfolio workers each carry
    their own domain. Values passed with ``extra=`` take precedence.
    """

    _local = threading.local()
    _install_lock = threading.Lock()
    _installed = False

    def __init__(self, **fields: Any):
        self.fields = fields
        self.previous: Dict[str, Any] = {}

    @classmethod
    def current(cls) -> Dict[str, Any]:
        """Fields active on this thread."""
        return getattr(cls._local, 'fields', {})

    @classmethod
    def _install(cls) -> None:
        with cls._install_lock:
            if cls._installed:
                return
            old_factory = logging.getLogRecordFactory()

            def record_factory(*args, **kwargs):
                record = old_factory(*args, **kwargs)
                record.log_context = cls.current()
                return record

            logging.setLogRecordFactory(record_factory)
            cls._installed = True

    def __enter__(self):
        self._install()
        self.previous = self.current()
        self._local.fields = {**self.previous, **self.fields}
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._local.fields = self.previous


def structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Structured fields of a record, from ``extra=`` or the active LogContext."""
    fields = {}
    context = getattr(record, 'log_context', None) or {}
    for field_name in STRUCTURED_FIELDS:
        value = getattr(record, field_name, None)
        if value is None:
            value = context.get(field_name)
        if value is not None:
            fields[field_name] = value
    return fields
