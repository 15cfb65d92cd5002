"""structlog setup for the sniper, routed through stdlib logging.

Timestamps carry milliseconds in local time: order timing is judged from
these lines, so they must be comparable with the wall-clock offsets the
DelayCoordinator aims for. The cycle id bound by the executor is merged
from contextvars into every line emitted while a cycle runs.
"""

import logging
import os

import structlog

# Libraries that log every request or frame at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def setup_logging(log_level: str = "INFO", log_format: str | None = None) -> None:
    """Install structlog processors and a single root stream handler.

    Args:
        log_level: Root level name ("DEBUG", "INFO", ...).
        log_format: "json" or "console"; defaults to the LOG_FORMAT
            environment variable, then "console".
    """
    fmt = (log_format or os.environ.get("LOG_FORMAT", "console")).lower()

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%dT%H:%M:%S.%f", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, _renderer(fmt)],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_cycle(cycle_id: str, symbol: str) -> None:
    """Attach cycle_id and symbol to every log line in the current context."""
    structlog.contextvars.bind_contextvars(cycle_id=cycle_id, symbol=symbol)


def unbind_cycle() -> None:
    structlog.contextvars.unbind_contextvars("cycle_id", "symbol")
