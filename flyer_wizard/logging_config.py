"""
Application logging configuration.

Standard-library logging for the backend process, optionally forwarded to
Logfire (USE_LOGFIRE=true and LOGFIRE_TOKEN set). Engine internals log
through `flyer_wizard.pipeline_logger`; this module covers the process-level
loggers (startup, shutdown, request handling).
"""

import logging
import os
import sys
from typing import Optional

import logfire


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def _use_logfire() -> bool:
    return os.getenv("USE_LOGFIRE", "false").lower() in ("true", "1", "yes", "on")


def setup_logging(service_name: Optional[str] = None, level: str = "INFO") -> None:
    """
    Configure root logging once per process.

    Args:
        service_name: Logfire service name (defaults to LOGFIRE_SERVICE_NAME)
        level: Root log level name
    """
    global _configured
    if _configured:
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    token = os.getenv("LOGFIRE_TOKEN", "")
    if _use_logfire() and token:
        logfire.configure(
            token=token,
            service_name=service_name or os.getenv("LOGFIRE_SERVICE_NAME", "flyer-wizard"),
            environment=os.getenv("LOGFIRE_ENVIRONMENT", "production"),
            console=False,
        )
        handlers.append(logfire.LogfireLoggingHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        format=LOG_FORMAT,
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
