"""
specgate logger - structured JSON logging via structlog.

BASIC USAGE:
    from specgate.logger import logger
    logger.info("openapi_spec_filtered", paths=12)

CUSTOM CONFIGURATION (call before the first log):
    from specgate.logger import configure_logging
    configure_logging(service="billing-api", env="staging", level="DEBUG")
"""

from .structured_logger import LazyLoggerProxy, configure_logging, logger

__all__ = [
    "logger",
    "configure_logging",
    "LazyLoggerProxy",
]
