# src/chaosproxy/logging.py
"""Structured logging for ChaosProxy.

Transport and proxy events are structlog key/value records (``method``,
``url``, ``delay_sec``, ``outcome``). uvicorn and httpx log through stdlib
``logging``; both kinds of record end in the same handler and renderer, so a
proxy run produces one uniform stream.
"""

import logging
import sys
from typing import IO, Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Per-connection chatter from the outbound client and uvicorn's access log.
# The transport already logs every request, so these stay at WARNING or above.
_NOISY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "uvicorn.access")

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso")


def _renderer(json_output: bool, stream: IO[str]) -> list[Any]:
    """Final processors: strip formatter metadata, then render."""
    if json_output:
        return [
            ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        ProcessorFormatter.remove_processors_meta,
        structlog.dev.ConsoleRenderer(colors=stream.isatty()),
    ]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: IO[str] | None = None,
) -> None:
    """Route structlog and stdlib records through one handler.

    Args:
        json_output: Emit JSON lines instead of console output.
        level: Root log level (DEBUG, INFO, WARNING, ERROR).
        stream: Where to write (default: sys.stdout).
    """
    log_level = logging.getLevelName(level.upper())
    out = stream if stream is not None else sys.stdout

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _TIMESTAMPER,
    ]

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Loggers are created per request via bind(); a cached one would
        # outlive a reconfiguration.
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(ProcessorFormatter(processors=_renderer(json_output, out), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger named after a module."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
