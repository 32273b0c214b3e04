"""
Structured logging for specgate.

USAGE:
    from specgate.logger import logger
    logger.info("feature_toggles_initializing", app_name="billing-api")

HOW IT WORKS:
    1. Logs are formatted as JSON using structlog
    2. Logs go to stdout (for container logs) through a background queue
    3. Datadog trace IDs are automatically injected (if ddtrace is installed)

LAZY CONFIGURATION:
    - Logger is initialized on first use, not on import
    - configure_logging() may be called first to override service/env/level
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
import threading
from logging.handlers import QueueHandler, QueueListener
from queue import Queue
from typing import Any

import structlog


# =============================================================================
# STEP 1: CHECK OPTIONAL DEPENDENCIES
# =============================================================================

# ddtrace: Datadog APM tracing (adds trace_id/span_id to logs)
try:
    from ddtrace import tracer
    DDTRACE_AVAILABLE = True
except ImportError:
    tracer = None
    DDTRACE_AVAILABLE = False


# =============================================================================
# STEP 2: READ CONFIGURATION FROM ENVIRONMENT
# =============================================================================

# Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SERVICE_NAME = os.getenv("DD_SERVICE", os.getenv("SERVICE_NAME", "specgate"))
SERVICE_ENV = os.getenv("DD_ENV", os.getenv("ENVIRONMENT", "dev"))

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("posthog", "urllib3", "backoff")


# =============================================================================
# STEP 3: SINGLETON STATE
# =============================================================================

_logger_instance: structlog.stdlib.BoundLogger | None = None

_logger_lock = threading.Lock()

_is_configured = False


# =============================================================================
# STEP 4: PROCESSORS
# =============================================================================


def add_datadog_trace_context(
    logger_instance: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Add Datadog trace IDs to a log entry.

    This is a structlog processor that runs for every log message. It is a
    no-op unless ddtrace is installed and a trace is active.

    Returns:
        The event_dict, enriched with dd.trace_id / dd.span_id when available
    """
    if not DDTRACE_AVAILABLE or tracer is None:
        return event_dict

    try:
        trace_context = tracer.get_log_correlation_context()
        if trace_context:
            event_dict.update(trace_context)
    except Exception:
        # Never fail logging because of trace injection
        pass

    return event_dict


def add_service_context(service: str, env: str):
    """Build a processor that stamps every entry with service and env."""

    def processor(
        logger_instance: Any,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("env", env)
        return event_dict

    return processor


# =============================================================================
# STEP 5: MAIN CONFIGURATION FUNCTION
# =============================================================================


def configure_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    level: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure the logging system.

    This function sets up:
        1. Structured JSON logging via structlog
        2. Console output (stdout) for container logs
        3. Async log processing via queue (non-blocking)

    SINGLETON BEHAVIOR:
        This function can be called multiple times safely.
        After the first call, subsequent calls return the same logger.

    Args:
        service: Service name (default: DD_SERVICE / SERVICE_NAME env var)
        env: Environment (default: DD_ENV / ENVIRONMENT env var)
        level: Log level name (default: LOG_LEVEL env var or "INFO")

    Returns:
        A configured structlog logger instance
    """
    global _logger_instance, _is_configured

    # ----- FAST PATH: Already configured -----
    if _is_configured and _logger_instance is not None:
        return _logger_instance

    with _logger_lock:

        # Double-check after acquiring lock
        if _is_configured and _logger_instance is not None:
            return _logger_instance

        resolved_service = service if service is not None else SERVICE_NAME
        resolved_env = env if env is not None else SERVICE_ENV
        resolved_level_name = (level or LOG_LEVEL).upper()
        resolved_log_level = getattr(logging, resolved_level_name, logging.INFO)

        # ----- CREATE HANDLERS -----
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(resolved_log_level)

        # ----- SETUP ASYNC LOGGING -----
        # Flow: logger.info() -> QueueHandler -> Queue -> QueueListener -> stdout
        log_queue: Queue[logging.LogRecord] = Queue(maxsize=1000)
        queue_handler = QueueHandler(log_queue)
        queue_listener = QueueListener(
            log_queue,
            console_handler,
            respect_handler_level=True,
        )
        queue_listener.start()
        atexit.register(queue_listener.stop)

        # ----- CONFIGURE ROOT LOGGER -----
        logging.basicConfig(
            level=resolved_log_level,
            format="%(message)s",  # structlog handles formatting
            handlers=[queue_handler],
        )

        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        # ----- CONFIGURE STRUCTLOG -----
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                add_service_context(resolved_service, resolved_env),
                add_datadog_trace_context,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.EventRenamer("msg"),
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        _is_configured = True
        _logger_instance = structlog.get_logger("specgate")

        sys.stderr.write(
            f"Logger: READY "
            f"(level={resolved_level_name}, ddtrace={DDTRACE_AVAILABLE})\n"
        )
        sys.stderr.flush()

        return _logger_instance


# =============================================================================
# STEP 6: LAZY LOGGER PROXY
# =============================================================================


class LazyLoggerProxy:
    """
    A proxy that delays logger initialization until first use.

    Importing specgate must stay side-effect free, and callers may want to
    call configure_logging() with custom parameters before the first log.

    USAGE:
        from specgate.logger import logger
        logger.info("This triggers configuration")
    """

    def __getattr__(self, attribute_name: str) -> Any:
        real_logger = configure_logging()
        return getattr(real_logger, attribute_name)


logger = LazyLoggerProxy()
