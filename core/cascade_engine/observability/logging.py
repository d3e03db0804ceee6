"""
Structured logging with automatic cascade context propagation.

Every record logged while a cascade runs carries the run it belongs to:

    CascadeExecutor.run()      → sets run_id and root_id once
        ↓ (ContextVar propagation through awaits)
    CascadeExecutor per node   → adds node_id and level_index
        ↓
    Collaborator code          → logger.info("...") gets all of it
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, Any

import litellm

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("cascade_trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Optional `extra=` fields copied into JSON log entries
_EXTRA_FIELDS = ("node_id", "level_index", "latency_ms", "tokens_used", "model", "status")

# Loggers of the LLM client stack, routed through our handler in JSON mode
_CLIENT_LOGGERS = ("LiteLLM", "httpcore", "httpx", "openai")


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    Keys: timestamp, level, logger, message, then the cascade context
    (run_id, root_id, node_id, level_index), then known ``extra=`` fields,
    ``event`` and ``exception`` when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }

        for name in (*_EXTRA_FIELDS, "event"):
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colored single-line logs prefixed with ``[run:xxxxxxxx | L<level> | node:<id>]``."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def context_prefix() -> str:
        context = trace_context.get() or {}
        parts = []
        if context.get("run_id"):
            parts.append(f"run:{context['run_id'][-8:]}")
        if context.get("level_index") is not None:
            parts.append(f"L{context['level_index']}")
        if context.get("node_id"):
            parts.append(f"node:{context['node_id']}")
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        line = f"{color}[{record.levelname:<8}]{self.RESET} {self.context_prefix()}"
        line += record.getMessage()

        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
    stream: IO[str] | None = None,
) -> None:
    """
    Install a single root handler for a cascade host process. Call once at startup.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
        stream: Where to write (default: stderr)
    """
    format = _resolve_format(format)

    handler = logging.StreamHandler(stream or sys.stderr)
    if format == "json":
        handler.setFormatter(StructuredFormatter())
        _quiet_client_logs()
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def _quiet_client_logs() -> None:
    """No ANSI colors or private handlers from the LLM client stack in JSON mode."""
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"
    litellm.suppress_debug_info = True

    for name in _CLIENT_LOGGERS:
        client_logger = logging.getLogger(name)
        client_logger.handlers.clear()
        client_logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the cascade context of the current task.

    The executor calls this with run_id/root_id at run start and with
    node_id/level_index before each node. Values propagate through awaits.
    """
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict:
    """Copy of the current cascade context (empty dict if unset)."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
