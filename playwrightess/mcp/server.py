"""FastMCP server exposing the persistent Playwright evaluator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional, Sequence

from fastmcp import FastMCP

from playwrightess.browser.session import get_session_manager
from playwrightess.config import SessionConfig, SessionMode
from playwrightess.repl.context import ExecutionContext

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

TOOL_NAME = "playwright_eval"
TOOL_DESCRIPTION = "\n".join(
    [
        "Evaluate Python code (supports top-level await) in a persistent Playwright session.",
        "Variables shared_state, browser, context, page and session_manager are kept "
        "between evaluations, others are lost.",
        "To accumulate data, put it into shared_state.",
        "The value of the last expression is returned.",
        "Use console.log()/print() for diagnostics; page console output is returned too.",
        "Place screenshots in a temp folder.",
        "DO NOT USE wait_for_load_state('networkidle') or wait_for_selector.",
    ]
)

mcp = FastMCP(name="playwrightess")

_execution_context: Optional[ExecutionContext] = None
_evaluation_lock: Optional[asyncio.Lock] = None


def get_execution_context() -> ExecutionContext:
    """Return the process-wide execution context, creating it on first use."""
    global _execution_context
    if _execution_context is None:
        _execution_context = ExecutionContext(get_session_manager())
        _execution_context.initialize()
    return _execution_context


def _get_evaluation_lock() -> asyncio.Lock:
    global _evaluation_lock
    if _evaluation_lock is None:
        _evaluation_lock = asyncio.Lock()
    return _evaluation_lock


def reset_server_state() -> None:
    """Forget the execution context and lock.  Meant for tests."""
    global _execution_context, _evaluation_lock
    _execution_context = None
    _evaluation_lock = None


def configure_session(
    *,
    mode: "str | SessionMode | None" = None,
    profile_dir: Optional[str] = None,
    storage_state_path: Optional[str] = None,
    app_executable: Optional[str] = None,
    app_args: Optional[Sequence[str]] = None,
    headless: Optional[bool] = None,
) -> SessionConfig:
    """Apply overrides to the session configuration before first use."""
    manager = get_session_manager()
    config = manager.config.with_overrides(
        mode=mode,
        profile_dir=profile_dir,
        storage_state_path=storage_state_path,
        app_executable=app_executable,
        app_args=app_args,
        headless=headless,
    )
    manager.configure(config)
    logger.info("Session configured: mode=%s", config.mode.value)
    return config


async def evaluate_snippet(code: str) -> Dict[str, Any]:
    """Evaluate ``code`` and return the JSON payload sent back to the client."""
    async with _get_evaluation_lock():
        logger.info("%s call: %d chars", TOOL_NAME, len(code))
        result = await get_execution_context().evaluate(code)
    logger.info("%s result: success=%s", TOOL_NAME, result.success)
    return result.to_payload()


async def shutdown_session() -> None:
    """Persist storage state, then tear the session down.  Both steps always run."""
    manager = get_session_manager()
    try:
        await manager.save_storage_state()
    except Exception as exc:
        logger.error("Failed to save storage state: %s", exc)
    try:
        await manager.cleanup()
    except Exception as exc:
        logger.error("Session cleanup failed: %s", exc)


@mcp.tool(name=TOOL_NAME, description=TOOL_DESCRIPTION)
async def playwright_eval(code: str) -> Dict[str, Any]:
    """Evaluate Python code against the shared Playwright session."""
    return await evaluate_snippet(code)


async def _shutdown_and_exit(signame: str) -> None:
    logger.error("Received %s, gracefully shutting down...", signame)
    await shutdown_session()
    raise SystemExit(0)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    def request_shutdown(sig: signal.Signals) -> None:
        loop.create_task(_shutdown_and_exit(sig.name))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler.
            signal.signal(
                sig,
                lambda signum, _frame: loop.call_soon_threadsafe(
                    request_shutdown, signal.Signals(signum)
                ),
            )


async def serve(transport: str = "stdio") -> None:
    """Run the MCP server until the transport closes or a signal arrives."""
    _install_signal_handlers(asyncio.get_running_loop())
    get_execution_context()
    logger.info("Playwrightess MCP server running on %s", transport)
    try:
        await mcp.run_async(transport=transport)
    finally:
        await shutdown_session()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Evaluate Python snippets against one persistent Playwright session.",
    )
    parser.add_argument(
        "--mode",
        help="Session mode: ephemeral, persistent or attached (default from PLAYWRIGHTESS_MODE).",
    )
    parser.add_argument("--profile-dir", help="Profile directory for persistent mode.")
    parser.add_argument("--storage-state", help="Storage state file for ephemeral mode.")
    parser.add_argument("--app", dest="app_executable", help="Application binary for attached mode.")
    parser.add_argument(
        "--app-arg",
        dest="app_args",
        action="append",
        default=None,
        help="Extra argument for the attached application (repeatable).",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        default=None,
        help="Run the browser headless (default: headed).",
    )
    parser.add_argument("--transport", default="stdio", help="MCP transport (default: stdio).")
    parser.add_argument("--log-level", help="Logging level (default from PLAYWRIGHTESS_LOG_LEVEL).")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Run the Playwrightess MCP server."""
    args = build_parser().parse_args(argv)
    config = configure_session(
        mode=args.mode,
        profile_dir=args.profile_dir,
        storage_state_path=args.storage_state,
        app_executable=args.app_executable,
        app_args=args.app_args,
        headless=args.headless,
    )
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    asyncio.run(serve(args.transport))


__all__ = [
    "TOOL_DESCRIPTION",
    "TOOL_NAME",
    "configure_session",
    "evaluate_snippet",
    "get_execution_context",
    "main",
    "mcp",
    "playwright_eval",
    "reset_server_state",
    "serve",
    "shutdown_session",
]
