"""structlog configuration shared by the API process and pipeline runs.

Everything goes through the stdlib root logger so uvicorn, SQLAlchemy and
the HTTP clients end up in the same JSON stream as the pipeline's own
events.  OAuth and API credentials that reach an event dict are masked
before rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SECRET_KEYS = frozenset({"access_token", "refresh_token", "api_key", "client_secret", "authorization"})

# Library loggers that are chatty at INFO; they only surface warnings.
QUIET_LOGGERS: Mapping[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "anthropic": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}

# uvicorn installs its own handlers; they are dropped so records reach root.
_PROPAGATING_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def mask_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging(*, json: bool = True, level: str = "INFO", service: str = "conduit") -> None:
    """Route structlog and stdlib logging through one handler on stdout.

    :param json: JSON lines when true, the coloured console renderer otherwise.
    :param level: root level name, case-insensitive.
    :param service: value of the ``service`` key added to every event.
    """
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.CallsiteParameterAdder(
            {structlog.processors.CallsiteParameter.MODULE},
        ),
        mask_secrets,
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: Processor = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    def add_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                add_service,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _PROPAGATING_LOGGERS:
        lib_logger = logging.getLogger(name)
        lib_logger.handlers.clear()
        lib_logger.propagate = True

    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(root.level, floor))
