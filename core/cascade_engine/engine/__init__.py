"""Cascade execution: executor, cascade context and collaborators."""

from cascade_engine.engine.collaborators import (
    DefaultInputResolver,
    InMemoryResultSink,
    InputResolver,
    NullResultSink,
    ResultSink,
)
from cascade_engine.engine.context import AccumulatedResponse, CascadeContext
from cascade_engine.engine.executor import (
    CascadeExecutor,
    CascadeResult,
    ErrorAction,
    NodeErrorHandler,
)

__all__ = [
    "AccumulatedResponse",
    "CascadeContext",
    "CascadeExecutor",
    "CascadeResult",
    "DefaultInputResolver",
    "ErrorAction",
    "InMemoryResultSink",
    "InputResolver",
    "NodeErrorHandler",
    "NullResultSink",
    "ResultSink",
]
