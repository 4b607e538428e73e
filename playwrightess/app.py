"""ASGI application serving ``playwright_eval`` over streamable HTTP.

Run it with any ASGI server, e.g. ``uvicorn playwrightess.app:app``.  There is
no command line in this mode, so the session settings come from the
``PLAYWRIGHTESS_*`` environment.  The browser starts on the first tool call.
"""

from __future__ import annotations

import logging

from playwrightess.mcp.server import mcp

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/mcp"


def create_app(path: str = DEFAULT_PATH):
    """Build the HTTP app for the shared server mounted at ``path``."""
    logger.info("Serving %s over HTTP at %s", mcp.name, path)
    return mcp.http_app(path=path)


app = create_app()
