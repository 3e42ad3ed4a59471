"""structlog setup shared by the miner and the pool bridge."""

import logging

import structlog

from dltminer.config import Settings

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("websockets", "httpx", "httpcore", "uvicorn.access")


def _service_tagger(service: str) -> structlog.types.Processor:
    def add_service(_logger: object, _method: str, event_dict: structlog.types.EventDict) -> structlog.types.EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def setup_logging(settings: Settings, service: str = "dlt-miner") -> None:
    """Configure structlog and the stdlib root logger.

    Every event carries ``service`` so miner and bridge output can share a sink.
    ``log_format == "json"`` selects one JSON object per line; anything else
    gets the console renderer.
    """
    if settings.log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _service_tagger(service),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger().setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
