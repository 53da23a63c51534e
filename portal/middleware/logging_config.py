"""
Log setup for the portal.

Two renderings of the same records:

    json      one object per line for the log aggregator (production default)
    readable  coloured single lines for a terminal (development / tests)

LOG_FORMAT forces one of them, LOG_LEVEL sets the threshold.

Workflow code passes its context through ``extra=`` and both renderings
pick it up:

    logger.info("Project %s moved", pid,
                extra={"project_id": pid, "phase_index": 3, "trigger": "manual-admin"})

Inside a request the id and acting role/actor are attached automatically,
so an engine line can be tied back to the API call that caused it.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes surfaced in JSON output when set
_EXTRA_FIELDS = (
    "request_id",
    "actor_role",
    "actor_id",
    "project_id",
    "phase_index",
    "trigger",
    "event_type",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

# record attribute -> flask.g attribute
_REQUEST_FIELDS = (
    ("request_id", "request_id"),
    ("actor_role", "current_user_role"),
    ("actor_id", "current_actor_id"),
)

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


class RequestContextFilter(logging.Filter):
    """Fill request id and actor from ``flask.g`` unless the caller set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            for attr, source in _REQUEST_FIELDS:
                if getattr(record, attr, None) is None:
                    setattr(record, attr, getattr(g, source, None))
        return True


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update({
            key: getattr(record, key)
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [project@phase trigger Nms]``"""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (f"{color}{stamp} {record.levelname:<8}{self.RESET} "
                f"{record.name}: {record.getMessage()}{self._context(record)}")
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def _context(record: logging.LogRecord) -> str:
        parts = []
        project = getattr(record, "project_id", None)
        if project is not None:
            phase = getattr(record, "phase_index", None)
            parts.append(f"{project}@{phase}" if phase is not None else str(project))
        trigger = getattr(record, "trigger", None)
        if trigger:
            parts.append(trigger)
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"{duration:.0f}ms")
        return f" [{' '.join(parts)}]" if parts else ""


def _choose_format(app) -> str:
    forced = os.getenv("LOG_FORMAT", "").lower()
    if forced in ("json", "readable"):
        return forced
    if app.config.get("DEBUG") or app.config.get("TESTING"):
        return "readable"
    return "json"


def _build_handler(fmt: str, level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)
    return handler


def configure_logging(app):
    """Replace root handlers with one stderr handler in the chosen format."""
    fmt = _choose_format(app)
    level_name = os.getenv("LOG_LEVEL", "INFO" if fmt == "json" else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_build_handler(fmt, level))
    root.setLevel(level)
    app.logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
