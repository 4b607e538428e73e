"""MCP transport for Playwrightess."""

from .server import configure_session, main, mcp, shutdown_session

__all__ = ["configure_session", "main", "mcp", "shutdown_session"]
