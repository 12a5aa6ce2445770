"""Logging configuration for the flow orchestration engine."""

import contextvars
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from pathlib import Path


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured logging with JSON output."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


_flow_context: contextvars.ContextVar = contextvars.ContextVar("flow_logging_context", default={})


class FlowContextFilter(logging.Filter):
    """Filter adding the current flow context (instance, node) to log records.

    The context lives in a ContextVar so concurrently executing instances on
    one event loop each see their own fields.
    """

    def set_context(self, **kwargs):
        _flow_context.set({**_flow_context.get(), **kwargs})

    def clear_context(self):
        _flow_context.set({})

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'extra_fields'):
            record.extra_fields = {}
        for key, value in _flow_context.get().items():
            record.extra_fields.setdefault(key, value)
        return True


_context_filter = FlowContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the flow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Custom log format string
        structured: Whether to use structured JSON logging
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        if log_format is None:
            log_format = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

        formatter = logging.Formatter(
            fmt=log_format,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("flow_orchestrator.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)
    logging.getLogger("flow_orchestrator.api").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for subsequent log messages in the current task."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    """Clear all logging context fields of the current task."""
    _context_filter.clear_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    extra = {"extra_fields": context}
    logger.log(level, message, extra=extra)


class GuardLogger:
    """Specialized logger for rate-limit, circuit-breaker and retry events."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"flow_orchestrator.guard.{component_name}")
        self.component_name = component_name

    def log_rate_limited(self, provider_id: str, limit: int, reset_time: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"Rate limit of {limit} reached for provider {provider_id}",
            component=self.component_name,
            provider_id=provider_id,
            limit=limit,
            reset_time=reset_time
        )

    def log_circuit_rejected(self, model_id: str, reset_time: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"Circuit breaker open for model {model_id}, call rejected",
            component=self.component_name,
            model_id=model_id,
            reset_time=reset_time
        )

    def log_circuit_transition(self, model_id: str, old_state: str, new_state: str, failure_count: int):
        level = logging.ERROR if new_state == "open" else logging.INFO
        log_with_context(
            self.logger, level,
            f"Circuit breaker for {model_id} moved from {old_state} to {new_state}",
            component=self.component_name,
            model_id=model_id,
            old_state=old_state,
            new_state=new_state,
            failure_count=failure_count
        )

    def log_retry_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int, delay_ms: float):
        """Log a retry attempt."""
        log_with_context(
            self.logger, logging.WARNING,
            f"Retry attempt {attempt}/{max_attempts} for {operation} in {delay_ms:.0f}ms",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            error_message=str(error),
            attempt=attempt,
            max_attempts=max_attempts
        )

    def log_retry_success(self, operation: str, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"Successfully recovered {operation} after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            attempts_used=attempts_used,
            recovery_status="success"
        )

    def log_retry_failure(self, operation: str, final_error: Exception, attempts_used: int):
        """Log exhausted retries."""
        log_with_context(
            self.logger, logging.ERROR,
            f"Giving up on {operation} after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            error_type=type(final_error).__name__,
            error_message=str(final_error),
            attempts_used=attempts_used,
            recovery_status="failed"
        )
