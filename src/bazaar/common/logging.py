import logging
import os
import sys
from typing import Any, Callable, Dict, Optional

import structlog

# Temporal SDK 'extra' keys -> the short keys used in log queries
TEMPORAL_KEYS = {
    "temporal_workflow_id": "workflow_id",
    "temporal_workflow_type": "workflow_type",
    "temporal_run_id": "run_id",
    "temporal_activity_id": "activity_id",
}

LIBRARY_LEVELS = {
    "temporalio": logging.INFO,
    "uvicorn": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
}

_configured = False


def add_temporal_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Workflow and activity logs reach us through stdlib logging with Temporal's
    'extra' fields merged in by ProcessorFormatter; shorten their keys.
    """
    for source, target in TEMPORAL_KEYS.items():
        if source in event_dict:
            event_dict[target] = event_dict.pop(source)
    return event_dict


def service_stamp(service: str) -> Callable[..., Dict[str, Any]]:
    def add_service(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict
    return add_service


def configure_logging(service: str = "bazaar", level: Optional[str] = None) -> None:
    """
    JSON lines on stdout for structlog and stdlib loggers alike.

    `service` goes on every line so API, worker and admin output can be told
    apart in one stream. LOG_LEVEL overrides the default level. Only the first
    call in a process takes effect.
    """
    global _configured
    if _configured:
        return

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        service_stamp(service),
        add_temporal_context,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared,
    ))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    _configured = True
