"""Structured logging setup using structlog.

Every record, whether from structlog or a stdlib logger, is stamped with the
service name and deployment environment, then rendered as JSON in production
or as a colored console line elsewhere. Resilience events go through their
own logger (``EVENTS_LOGGER``) so they can be filtered apart from the
library's diagnostic chatter.
"""

import logging
import sys
from typing import Literal

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

EVENTS_LOGGER = "apiguard.events"

# Transport libraries log every request at INFO/DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "redis")


class ServiceContext:
    """Processor adding ``app`` and ``environment`` keys to each event.

    Values bound explicitly on a logger win over the configured ones.
    """

    def __init__(self, app_name: str, environment: str | None) -> None:
        self._context = {"app": app_name}
        if environment:
            self._context["environment"] = environment

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in self._context.items():
            event_dict.setdefault(key, value)
        return event_dict


def _shared_processors(app_name: str, environment: str | None) -> list[Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        ServiceContext(app_name, environment),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
    ]


def _renderer(json_format: bool) -> Processor:
    if json_format:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def _install_root_handler(formatter: logging.Formatter, level: LogLevel) -> None:
    # stdout is reserved for CLI command output
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level))


def _tune_library_loggers(events_level: LogLevel | None) -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    events_logger = logging.getLogger(EVENTS_LOGGER)
    if events_level is None:
        events_logger.setLevel(logging.NOTSET)
    else:
        events_logger.setLevel(getattr(logging, events_level))


def configure_logging(
    level: LogLevel = "INFO",
    json_format: bool = False,
    *,
    app_name: str = "apiguard",
    environment: str | None = None,
    events_level: LogLevel | None = None,
) -> None:
    """Configure structlog and the stdlib root logger for the application.

    Args:
        level: Root log level.
        json_format: If True, output JSON. If False, colored console.
        app_name: Service name stamped on every record as ``app``.
        environment: Deployment environment stamped on every record, if set.
        events_level: Separate level for resilience events; ``None`` inherits ``level``.
    """
    shared_processors = _shared_processors(app_name, environment)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(json_format),
        ],
    )

    _install_root_handler(formatter, level)
    _tune_library_loggers(events_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Configured structlog bound logger.
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
