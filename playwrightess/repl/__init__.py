"""Snippet rewriting, console capture and the persistent execution context."""

from .capture import ConsoleCapture, SessionConsole
from .context import EvalResult, ExecutionContext
from .rewriter import TRACKED_IDENTIFIERS, promote_tracked_bindings, wrap_async_unit

__all__ = [
    "ConsoleCapture",
    "EvalResult",
    "ExecutionContext",
    "SessionConsole",
    "TRACKED_IDENTIFIERS",
    "promote_tracked_bindings",
    "wrap_async_unit",
]
