"""
Structured logging for orgaccess.

Provides:
- JSON structured logging for production environments
- Human-readable colored logging for development
- Actor/organization context propagation via context variables
- Sensitive data filtering (invitation tokens, secrets)
- Performance timing utilities
"""

import inspect
import json
import logging
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional

# Context variables for operation tracking
actor_id_var: ContextVar[Optional[str]] = ContextVar("actor_id", default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Patterns for sensitive data that should be redacted
SENSITIVE_PATTERNS: list[re.Pattern] = [
    re.compile(r'password["\']?\s*[:=]\s*["\']?[^\s,}]+', re.IGNORECASE),
    re.compile(r'secret["\']?\s*[:=]\s*["\']?[\w-]+', re.IGNORECASE),
    re.compile(r'token["\']?\s*[:=]\s*["\']?[\w.-]+', re.IGNORECASE),
    re.compile(r'bearer\s+[\w.-]+', re.IGNORECASE),
    re.compile(r'redis://[^@\s]*:[^@\s]*@', re.IGNORECASE),  # credentials in Redis URLs
    re.compile(r'eyJ[\w-]+\.eyJ[\w-]+\.[\w-]+', re.IGNORECASE),  # JWT tokens
]

REDACTED = "[REDACTED]"

# Fields to exclude from extra data in JSON logs
EXCLUDED_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "actor_id", "organization_id", "correlation_id", "message", "taskName",
})


def redact_sensitive_data(message: str) -> str:
    """
    Redact sensitive data from log messages.

    Args:
        message: The log message to sanitize

    Returns:
        Message with sensitive data replaced with [REDACTED]
    """
    if not message:
        return message

    result = message
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


class LogContextFilter(logging.Filter):
    """Add actor and organization context to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Explicit extra={"organization_id": ...} wins over the context var
        if not hasattr(record, "organization_id"):
            record.organization_id = organization_id_var.get() or "-"
        record.actor_id = actor_id_var.get() or "-"
        record.correlation_id = correlation_id_var.get() or "-"
        return True


class SensitiveDataFilter(logging.Filter):
    """Filter sensitive data from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_sensitive_data(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_sensitive_data(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production.

    Outputs logs as single-line JSON objects:
    {
        "timestamp": "2024-01-15T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "orgaccess.organizations.membership_service",
        "message": "Membership created",
        "service": "orgaccess",
        "actor_id": "user-123",
        "organization_id": "org-456",
        "correlation_id": "corr-789",
        "extra": {...}
    }
    """

    def __init__(self, service_name: str = "orgaccess"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "actor_id": getattr(record, "actor_id", "-"),
            "organization_id": getattr(record, "organization_id", "-"),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }

        if record.levelno >= logging.ERROR:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            k: v for k, v in record.__dict__.items()
            if k not in EXCLUDED_RECORD_ATTRS and not k.startswith("_")
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str, ensure_ascii=False)


class DevelopmentFormatter(logging.Formatter):
    """
    Human-readable formatter with colors for development.

    Format: [timestamp] LEVEL    [actor] [org] logger - message
    """

    COLORS: Dict[str, str] = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""

        actor_id = str(getattr(record, "actor_id", "-"))
        organization_id = str(getattr(record, "organization_id", "-"))

        actor_display = actor_id[:8] if actor_id != "-" else "-"
        org_display = organization_id[:8] if organization_id != "-" else "-"

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        formatted = (
            f"{self.DIM}[{timestamp}]{self.RESET} "
            f"{color}{self.BOLD}{record.levelname:8}{reset} "
            f"{self.DIM}[{actor_display:>8}] [{org_display:>8}]{self.RESET} "
            f"{record.name} - {record.getMessage()}"
        )

        extra_fields = {
            k: v for k, v in record.__dict__.items()
            if k not in EXCLUDED_RECORD_ATTRS and not k.startswith("_")
        }
        if extra_fields:
            formatted += f" {self.DIM}{extra_fields}{self.RESET}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def setup_logging(
    service_name: str = "orgaccess",
    log_level: Optional[int] = None,
    force_json: bool = False,
) -> logging.Logger:
    """
    Configure structured logging for the engine.

    Call once at process startup. Handlers previously attached to the root
    logger are replaced.

    Args:
        service_name: Name of the service for log identification
        log_level: Log level (defaults to INFO)
        force_json: Emit JSON lines instead of the development format

    Returns:
        Configured root logger
    """
    level = log_level if log_level is not None else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    handler.addFilter(LogContextFilter())
    handler.addFilter(SensitiveDataFilter())

    if force_json:
        handler.setFormatter(JSONFormatter(service_name))
    else:
        handler.setFormatter(DevelopmentFormatter())

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    root_logger.info(
        "Logging configured",
        extra={
            "log_level": logging.getLevelName(level),
            "format": "json" if force_json else "development",
            "service": service_name,
        },
    )

    return root_logger


def set_log_context(
    actor_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    """
    Set logging context for the current async context.

    Args:
        actor_id: User performing the current operation
        organization_id: Organization the operation targets
        correlation_id: Correlation ID for distributed tracing
    """
    if actor_id is not None:
        actor_id_var.set(actor_id)
    if organization_id is not None:
        organization_id_var.set(organization_id)
    if correlation_id is not None:
        correlation_id_var.set(correlation_id)


def clear_log_context() -> None:
    """Clear logging context after the operation completes."""
    actor_id_var.set(None)
    organization_id_var.set(None)
    correlation_id_var.set(None)


@contextmanager
def log_context(
    actor_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Iterator[None]:
    """
    Scope logging context to a block, restoring the previous values on exit.

    Usage:
        with log_context(actor_id=user_id, organization_id=org_id):
            await membership_service.add_user_to_organization(...)
    """
    tokens = []
    if actor_id is not None:
        tokens.append((actor_id_var, actor_id_var.set(actor_id)))
    if organization_id is not None:
        tokens.append((organization_id_var, organization_id_var.set(organization_id)))
    if correlation_id is not None:
        tokens.append((correlation_id_var, correlation_id_var.set(correlation_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("effective_permissions", logger):
            permissions = resolver.effective_permissions(...)
    """

    def __init__(
        self,
        name: str,
        logger: Optional[logging.Logger] = None,
        log_level: int = logging.DEBUG,
    ):
        self.name = name
        self.logger = logger
        self.log_level = log_level
        self.start_time: Optional[float] = None
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is not None:
            self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            self.logger.log(
                self.log_level,
                f"{self.name} completed in {self.elapsed_ms:.2f}ms",
                extra={
                    "operation": self.name,
                    "duration_ms": round(self.elapsed_ms, 2),
                    "success": exc_type is None,
                },
            )


def timed(
    name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
    log_level: int = logging.DEBUG,
) -> Callable:
    """
    Decorator for timing function execution.

    Usage:
        @timed("permission_check")
        async def has_permission(...):
            ...

    Args:
        name: Operation name (defaults to function name)
        logger: Logger to use (defaults to function's module logger)
        log_level: Level to log at

    Returns:
        Decorated function
    """
    def decorator(func: Callable) -> Callable:
        operation_name = name or func.__name__
        func_logger = logger or logging.getLogger(func.__module__)

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            with Timer(operation_name, func_logger, log_level):
                return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with Timer(operation_name, func_logger, log_level):
                return func(*args, **kwargs)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
