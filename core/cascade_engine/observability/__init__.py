"""
Observability for cascade runs: structured logging with automatic
run/node context attached to every record.
"""

from cascade_engine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
