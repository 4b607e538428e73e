"""Playwrightess: persistent Playwright sessions driven by Python snippets over MCP."""

from .browser import SessionManager, get_session_manager
from .config import SessionConfig, SessionMode, load_config
from .mcp import configure_session, mcp
from .repl import EvalResult, ExecutionContext

__all__ = [
    "EvalResult",
    "ExecutionContext",
    "SessionConfig",
    "SessionManager",
    "SessionMode",
    "configure_session",
    "get_session_manager",
    "load_config",
    "mcp",
]
