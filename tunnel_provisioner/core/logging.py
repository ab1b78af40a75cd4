"""Tunnel Provisioner logging.

Provisioning runs attach their context to log records through ``extra``:
the orchestrator sets ``serial``, ``step`` and ``tunnel_id``; the Cloudflare
client sets ``method``, ``url`` and ``status_code``. Both output formats render
that context, the JSON formatter as keys of the object and the dev formatter as
a bracketed prefix such as ``[12345/create_dns_record]``.
"""

import json
import logging
import sys
from typing import Any, Literal

# Record attributes carried through ``extra`` by provisioning code
CONTEXT_FIELDS = ("serial", "step", "tunnel_id", "method", "url", "status_code")

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields present on ``record``."""
    context = {}
    for field in CONTEXT_FIELDS:
        value = getattr(record, field, None)
        if value is not None:
            context[field] = value
    return context


class RunContextFormatter(logging.Formatter):
    """One readable line per record, prefixed with the run it belongs to."""

    def __init__(self):
        super().__init__(
            "%(asctime)s %(levelname)-7s %(name)s: %(run)s%(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        serial = getattr(record, "serial", None)
        step = getattr(record, "step", None)
        if serial and step:
            record.run = f"[{serial}/{step}] "
        elif serial:
            record.run = f"[{serial}] "
        else:
            record.run = ""
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """One JSON object per line with the run context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


_FORMATTERS: dict[str, type[logging.Formatter]] = {
    "dev": RunContextFormatter,
    "structured": JSONFormatter,
}


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """Route all logging to stdout in the chosen format.

    Request logging from uvicorn and httpx is kept at WARNING unless ``level``
    is DEBUG; the Cloudflare client already logs each call with its context.
    """
    numeric_level = logging.getLevelNamesMapping()[level.upper()]

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_FORMATTERS[format_type]())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)

    library_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.getLogger("tunnel_provisioner").debug(
        f"Logging configured: level={level}, format={format_type}"
    )
