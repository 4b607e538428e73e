"""Run Playwrightess from a checkout: ``python mcp_server.py --mode persistent``.

Hosts that load ``mcp_server:mcp`` get the same server object the
``playwrightess`` console script runs.
"""

from playwrightess.mcp.server import main, mcp

__all__ = ["main", "mcp"]

if __name__ == "__main__":
    main()
