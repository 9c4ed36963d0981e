"""Structured logging configuration.

JSON lines for services, `key=value` text for terminals. Records carrying one of
the workflow entity ids (`ENTITY_KEYS`) have it lifted to the top of the JSON
object so a log pipeline can filter an assignment's history without digging into
`extra`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

ENTITY_KEYS: tuple[str, ...] = (
    "assignment_id",
    "node_id",
    "template_id",
    "schedule_id",
    "correlation_id",
)

# Attributes every LogRecord has; anything else came in through `extra=`.
_STANDARD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def _split_extra(record: logging.LogRecord) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return (entity ids, remaining extra fields) attached to `record`."""

    ids: dict[str, Any] = {}
    rest: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_ATTRS or key.startswith("_"):
            continue
        if key in ENTITY_KEYS:
            ids[key] = value
        else:
            rest[key] = value
    return ids, rest


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        ids, rest = _split_extra(record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **ids,
        }
        if rest:
            payload["extra"] = rest
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """`time level logger: message ids... key=value ...`"""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        line = super().format(record)
        ids, rest = _split_extra(record)
        pairs = [(k, ids[k]) for k in ENTITY_KEYS if k in ids] + sorted(rest.items())
        if pairs:
            line += " " + " ".join(f"{k}={v}" for k, v in pairs)
        return line


def configure_logging(level: str, fmt: str = "json") -> None:
    """Configure root logging on stdout."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(TextFormatter() if fmt == "text" else JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    logging.getLogger("urllib3").setLevel(max(root.level, logging.INFO))
