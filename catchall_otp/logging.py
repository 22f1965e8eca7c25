"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

_SENSITIVE_KEYS = frozenset({"password", "body", "body_text", "body_html", "raw"})


def _drop_sensitive(
    _logger: object, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    for key in _SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog for the service process.

    Parameters
    ----------
    json:
        If *True* (the default, suitable for the long-running service),
        output JSON lines.  If *False*, use the human-friendly console
        renderer (the ``check`` / ``watch`` CLI commands).
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).

    Values logged under credential or message-body keys are redacted.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _drop_sensitive,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    # stderr keeps the CLI's one-line answer on stdout clean
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # imaplib is silent, but httpx logs every webhook request at INFO
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))
