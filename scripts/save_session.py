"""CLI helper to prime the storage state used by ephemeral sessions."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from playwrightess.browser.session import get_session_manager
from playwrightess.mcp.server import LOG_FORMAT, configure_session


async def _prime(url: Optional[str]) -> None:
    manager = get_session_manager()
    try:
        page = await manager.ensure_page()
        if url:
            await page.goto(url)
        await asyncio.to_thread(input, "Log in as needed, then press Enter to save the session...")
        path = await manager.save_storage_state()
    finally:
        await manager.cleanup()
    print(f"Cached storage state at {path}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Open a headed browser and cache its cookies/local storage for later sessions.",
    )
    parser.add_argument("url", nargs="?", help="Page to open first (e.g. a login page)")
    parser.add_argument(
        "--mode",
        default="ephemeral",
        help="Session mode to launch (default: ephemeral).",
    )
    parser.add_argument("--storage-state", help="Where to write the storage state file.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    configure_session(mode=args.mode, storage_state_path=args.storage_state, headless=False)
    asyncio.run(_prime(args.url))


if __name__ == "__main__":
    main()
