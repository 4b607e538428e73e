"""Session lifecycle for the shared Playwright browser."""

from .session import (
    SessionManager,
    SessionStartError,
    SessionStatus,
    get_session_manager,
    reset_session_manager,
)

__all__ = [
    "SessionManager",
    "SessionStartError",
    "SessionStatus",
    "get_session_manager",
    "reset_session_manager",
]
