from __future__ import annotations

import logging

import structlog

_CONFIGURED = False


def configure_logging(log_level: str = "INFO", json_logs: bool = True, *, service: str = "webedt") -> None:
    """Route every ``get_logger`` logger through one structlog pipeline.

    Records carry an ISO timestamp, the level, the service name and any
    context variables bound for the current request. Exceptions passed with
    ``exc_info`` are rendered into the record rather than printed separately.
    """
    global _CONFIGURED

    def add_service(_logger, _method, event_dict):
        event_dict.setdefault("service", service)
        return event_dict

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        add_service,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _CONFIGURED = True


def get_logger(name: str):
    if not _CONFIGURED:
        configure_logging()
    return structlog.get_logger(name).bind(logger=name)
