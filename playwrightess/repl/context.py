"""Persistent execution context for Playwright snippets.

One :class:`ExecutionContext` keeps a namespace alive for the whole process.
Each :meth:`ExecutionContext.evaluate` call makes sure the shared session is
up, rewrites the snippet so tracked names are promoted into that namespace,
runs it as an ``async`` unit and reports the value together with the console
output produced during the call.
"""

from __future__ import annotations

import asyncio
import itertools
import linecache
import logging
import traceback
from typing import Any, AbstractSet, Dict, List, Optional

from playwright.async_api import expect
from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from ..browser.session import SessionManager, get_session_manager
from .capture import ConsoleCapture
from .rewriter import (
    PERSISTENT_TABLE_NAME,
    SNIPPET_FUNCTION_NAME,
    TRACKED_IDENTIFIERS,
    promote_tracked_bindings,
    wrap_async_unit,
)

logger = logging.getLogger(__name__)

# Returned as ``result`` when a snippet evaluates to nothing.
NO_VALUE_MARKER = "None"


class EvalResult(BaseModel):
    """Outcome of one snippet evaluation."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    browser_console_log: List[str] = Field(default_factory=list)
    session_console_log: List[str] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-safe dict; unserialisable values fall back to ``repr``."""
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            payload["result"] = to_jsonable_python(self.result, fallback=repr)
        else:
            payload["error"] = self.error
            if self.stack:
                payload["stack"] = self.stack
        payload["browser_console_log"] = list(self.browser_console_log)
        payload["session_console_log"] = list(self.session_console_log)
        return payload


class ExecutionContext:
    """Run snippets in one namespace that persists across calls."""

    def __init__(
        self,
        session_manager: Optional[SessionManager] = None,
        *,
        tracked: AbstractSet[str] = TRACKED_IDENTIFIERS,
    ) -> None:
        self._session = session_manager or get_session_manager()
        self._tracked = frozenset(tracked)
        self._capture = ConsoleCapture()
        self._shared_state: Dict[str, Any] = {}
        self._namespace: Dict[str, Any] = {}
        self._counter = itertools.count(1)
        self._initialized = False

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def capture(self) -> ConsoleCapture:
        return self._capture

    @property
    def bindings(self) -> Dict[str, Any]:
        """The persistent namespace snippets run in."""
        return self._namespace

    @property
    def shared_state(self) -> Dict[str, Any]:
        return self._shared_state

    def initialize(self) -> None:
        """Populate the namespace with the capabilities snippets can use."""
        if self._initialized:
            return
        self._namespace.update(
            {
                "__name__": "__playwrightess__",
                "asyncio": asyncio,
                "sleep": asyncio.sleep,
                "console": self._capture.console,
                "print": self._capture.print,
                "expect": expect,
                "shared_state": self._shared_state,
                "session_manager": self._session,
            }
        )
        # Promotion statements write through this alias.
        self._namespace[PERSISTENT_TABLE_NAME] = self._namespace
        self._initialized = True

    async def evaluate(self, code: str) -> EvalResult:
        """Run ``code`` and return its last expression value or the failure."""
        self.initialize()
        filename = f"<snippet-{next(self._counter)}>"
        try:
            await self._ensure_session()
            rewritten = promote_tracked_bindings(code, self._tracked, filename)
            self._remember_source(filename, rewritten)
            unit = wrap_async_unit(rewritten, filename, self._tracked)
            value = await self._run(unit)
        except asyncio.CancelledError as exc:
            if _cancel_requested():
                # The evaluation itself is being cancelled, not just a task the snippet awaited.
                self._capture.drain()
                raise
            return self._failure(filename, exc)
        except (Exception, SystemExit) as exc:
            return self._failure(filename, exc)
        finally:
            linecache.cache.pop(filename, None)
        return EvalResult(
            success=True,
            result=NO_VALUE_MARKER if value is None else value,
            **self._capture.drain(),
        )

    def _failure(self, filename: str, exc: BaseException) -> EvalResult:
        logger.info("Snippet %s failed: %r", filename, exc)
        return EvalResult(
            success=False,
            error=str(exc) or type(exc).__name__,
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            **self._capture.drain(),
        )

    async def _run(self, unit: Any) -> Any:
        exec(unit, self._namespace)
        snippet = self._namespace.pop(SNIPPET_FUNCTION_NAME)
        return await snippet()

    async def _ensure_session(self) -> None:
        missing = [name for name in ("context", "page") if self._namespace.get(name) is None]
        if not missing and self._session.is_ready():
            return

        browser = await self._session.ensure_handle()
        context = await self._session.ensure_context()
        page = await self._session.ensure_page()
        self._namespace.update(browser=browser, context=context, page=page)

        driver = self._session.playwright
        if driver is not None:
            self._namespace.update(
                playwright=driver,
                chromium=driver.chromium,
                firefox=driver.firefox,
                webkit=driver.webkit,
                devices=driver.devices,
            )
        self._capture.attach(page)
        logger.info("Session handles seeded into namespace (%s)", self._session.mode.value)

    def _remember_source(self, filename: str, source: str) -> None:
        # Lets tracebacks show the snippet's lines; dropped again once the call ends.
        lines = source.splitlines(keepends=True)
        linecache.cache[filename] = (len(source), None, lines, filename)


def _cancel_requested() -> bool:
    """True when the running task has a pending ``cancel()`` of its own."""
    task = asyncio.current_task()
    cancelling = getattr(task, "cancelling", None)  # Python 3.11+
    return bool(cancelling and cancelling())


__all__ = ["EvalResult", "ExecutionContext", "NO_VALUE_MARKER"]
