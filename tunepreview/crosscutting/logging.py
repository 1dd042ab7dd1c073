import json
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variables for correlation
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
track_id_var: ContextVar[Optional[str]] = ContextVar('track_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)

ROOT_LOGGER_NAME = 'tunepreview'


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        # Get correlation data from context
        session_id = session_id_var.get()
        track_id = track_id_var.get()
        stage = stage_var.get()

        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if session_id:
            log_entry['sessionId'] = session_id
        if track_id:
            log_entry['trackId'] = track_id
        if stage:
            log_entry['stage'] = stage

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        fields = getattr(record, 'fields', None)
        if fields:
            log_entry['fields'] = fields

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, session_id: Optional[str] = None,
                 track_id: Optional[str] = None,
                 stage: Optional[str] = None):
        """Initialize correlation context."""
        self.session_id = session_id
        self.track_id = track_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        """Set correlation context."""
        if self.session_id is not None:
            self._tokens.append((session_id_var, session_id_var.set(self.session_id)))
        if self.track_id is not None:
            self._tokens.append((track_id_var, track_id_var.set(self.track_id)))
        if self.stage is not None:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  structured: bool = True,
                  session_id: Optional[str] = None) -> logging.Logger:
    """Setup logging for the ``tunepreview`` logger hierarchy."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()
    logger.propagate = False

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Console handler; stdout belongs to the interactive front end
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    if session_id:
        session_id_var.set(session_id)

    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """Get logger within the package hierarchy."""
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None,
                    exc_info: bool = False, **kwargs):
    """Log message with additional structured fields."""
    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(
        getattr(logging, level.upper()),
        message,
        exc_info=exc_info,
        extra={'fields': merged} if merged else None,
    )


# Convenience functions for common logging patterns
def log_search_complete(logger: logging.Logger, query: str, record_count: int,
                        playable_count: int, **kwargs):
    """Log search completion."""
    with CorrelationContext(stage='search'):
        log_with_fields(logger, 'INFO', 'Search completed', {
            'query': query,
            'record_count': record_count,
            'playable_count': playable_count,
            **kwargs
        })


def log_track_loading(logger: logging.Logger, track_id: str, uri: str, **kwargs):
    """Log start of a track load."""
    with CorrelationContext(track_id=track_id, stage='load'):
        log_with_fields(logger, 'INFO', 'Loading track', {
            'uri': uri,
            **kwargs
        })


def log_track_failed(logger: logging.Logger, track_id: str, reason: str, **kwargs):
    """Log a track that could not be played."""
    with CorrelationContext(track_id=track_id, stage='failed'):
        log_with_fields(logger, 'WARNING', 'Track failed', {
            'reason': reason,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }, exc_info=(type(error), error, error.__traceback__))
