"""Per-call capture of console output from snippets and from the page."""

from __future__ import annotations

import builtins
import json
import logging
import sys
import weakref
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

# Host-side output is re-emitted here so it still reaches the server log.
console_logger = logging.getLogger("playwrightess.console")

_LEVELS = {
    "LOG": logging.INFO,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "DEBUG": logging.DEBUG,
}


def format_console_args(args: tuple[Any, ...], sep: str = " ") -> str:
    parts = []
    for arg in args:
        if isinstance(arg, str):
            parts.append(arg)
        elif isinstance(arg, (dict, list, tuple)):
            try:
                parts.append(json.dumps(arg, default=repr))
            except (TypeError, ValueError):
                parts.append(repr(arg))
        else:
            parts.append(str(arg))
    return sep.join(parts)


class SessionConsole:
    """``console`` object handed to snippets."""

    def __init__(self, capture: "ConsoleCapture") -> None:
        self._capture = capture

    def log(self, *args: Any) -> None:
        self._capture.record("LOG", format_console_args(args))

    def info(self, *args: Any) -> None:
        self._capture.record("INFO", format_console_args(args))

    def warn(self, *args: Any) -> None:
        self._capture.record("WARN", format_console_args(args))

    warning = warn

    def error(self, *args: Any) -> None:
        self._capture.record("ERROR", format_console_args(args))

    def debug(self, *args: Any) -> None:
        self._capture.record("DEBUG", format_console_args(args))


class ConsoleCapture:
    """Collect session and page console lines until the next :meth:`drain`."""

    def __init__(self) -> None:
        self.session_lines: List[str] = []
        self.browser_lines: List[str] = []
        self._attached_pages: "weakref.WeakSet[Any]" = weakref.WeakSet()
        self.console = SessionConsole(self)

    def record(self, tag: str, message: str) -> None:
        self.session_lines.append(f"[{tag}] {message}")
        console_logger.log(_LEVELS.get(tag, logging.INFO), message)

    def print(self, *args: Any, sep: str = " ", end: str = "\n", file: Any = None, flush: bool = False) -> None:
        """Drop-in ``print`` for snippets; stdout belongs to the MCP transport."""
        if file is not None and file is not sys.stdout:
            builtins.print(*args, sep=sep, end=end, file=file, flush=flush)
            return
        self.session_lines.append(f"[LOG] {format_console_args(args, sep)}")
        builtins.print(*args, sep=sep, end=end, file=sys.stderr, flush=flush)

    def attach(self, page: Any) -> bool:
        """Start collecting ``page`` console messages.

        Returns False if ``page`` was attached before, so repeated calls never
        duplicate lines.
        """
        if page in self._attached_pages:
            return False
        page.on("console", self._on_browser_console)
        self._attached_pages.add(page)
        logger.debug("Capturing console output of %r", page)
        return True

    def _on_browser_console(self, message: Any) -> None:
        self.browser_lines.append(message.text)

    def drain(self) -> Dict[str, List[str]]:
        """Return both buffers and clear them."""
        drained = {
            "browser_console_log": list(self.browser_lines),
            "session_console_log": list(self.session_lines),
        }
        self.browser_lines.clear()
        self.session_lines.clear()
        return drained


__all__ = ["ConsoleCapture", "SessionConsole", "format_console_args"]
