"""Process-wide Playwright session shared by every evaluated snippet.

A single :class:`SessionManager` owns the Playwright driver, the browser (or
attached application), its isolated context and the active page.  All
``ensure_*`` methods are idempotent: they return the live handle when there
is one and relaunch from a clean slate otherwise, so a crashed browser is
replaced transparently on the next call.

Three operating modes are supported (see :class:`~playwrightess.config.SessionMode`):

* ``ephemeral`` launches a fresh Chromium and restores cookies/local storage
  from the storage-state file written at the previous shutdown.
* ``persistent`` binds Chromium to an on-disk profile directory.  Orphaned
  processes still holding that profile are killed before launch.
* ``attached`` starts an external Chromium-based application with remote
  debugging enabled and drives its first window over CDP.

The manager does not serialise concurrent callers; two overlapping
``ensure_handle()`` calls can launch two browsers.  Callers are expected to
run one evaluation at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error,
    Page,
    Playwright,
    async_playwright,
)

from ..config import SessionConfig, SessionMode, load_config
from .processes import evict_profile_processes, get_free_port

logger = logging.getLogger(__name__)

_CDP_RETRY_INTERVAL_S = 0.25
_APP_EXIT_TIMEOUT_S = 5.0


class SessionStartError(RuntimeError):
    """Raised when the browser or attached application cannot be started."""


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class SessionManager:
    """Own the lifecycle of the one automation session in this process.

    Use :func:`get_session_manager` instead of constructing this directly.
    """

    def __init__(self, config: SessionConfig) -> None:
        self._config = config
        self._status = SessionStatus.UNINITIALIZED
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._app_process: asyncio.subprocess.Process | None = None
        self._closing = False

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def mode(self) -> SessionMode:
        return self._config.mode

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def playwright(self) -> Optional[Playwright]:
        return self._playwright

    @property
    def browser(self) -> Optional[Browser]:
        return self._browser

    @property
    def context(self) -> Optional[BrowserContext]:
        return self._context

    @property
    def page(self) -> Optional[Page]:
        return self._page

    def configure(self, config: SessionConfig) -> None:
        """Swap the configuration used for the next launch."""
        if self._status in (SessionStatus.LAUNCHING, SessionStatus.READY):
            raise RuntimeError("Call cleanup() before reconfiguring a live session.")
        self._config = config

    def is_ready(self) -> bool:
        """Return True when browser, context and page are all usable."""
        return (
            self._status is SessionStatus.READY
            and self._handle_alive()
            and self._context is not None
            and self._page is not None
            and not self._page.is_closed()
        )

    # ------------------------------------------------------------------ #
    # Ensure operations
    # ------------------------------------------------------------------ #

    async def ensure_handle(self) -> Optional[Browser]:
        """Start the browser or attached application unless one is connected.

        Returns the :class:`Browser` handle.  In ``persistent`` mode Playwright
        may not expose one, in which case ``None`` is returned and the context
        is the handle.
        """
        if self._status is SessionStatus.READY and self._handle_alive():
            return self._browser

        mode = self._config.mode
        if mode is SessionMode.ATTACHED and self._config.app_executable is None:
            raise SessionStartError(
                "Attached-application mode needs an application executable; "
                "set PLAYWRIGHTESS_APP_EXECUTABLE or pass --app."
            )

        self._forget_handles()
        self._status = SessionStatus.LAUNCHING
        logger.info("Starting %s session", mode.value)
        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            if mode is SessionMode.EPHEMERAL:
                await self._launch_ephemeral()
            elif mode is SessionMode.PERSISTENT:
                await self._launch_persistent()
            else:
                await self._launch_attached()
        except Exception as exc:
            logger.error("Failed to start %s session: %s", mode.value, exc)
            await self.cleanup()
            self._status = SessionStatus.UNINITIALIZED
            if isinstance(exc, SessionStartError):
                raise
            raise SessionStartError(f"Failed to start {mode.value} session: {exc}") from exc

        self._status = SessionStatus.READY
        logger.info("Session ready (%s)", mode.value)
        return self._browser

    async def ensure_context(self) -> BrowserContext:
        """Return the isolated browsing context, launching if necessary."""
        await self.ensure_handle()
        if self._context is None:
            if self._browser is None:
                raise SessionStartError("Session has no browser to create a context from.")
            # Only reachable in ephemeral/attached mode after the context was closed.
            self._context = await self._new_isolated_context(self._browser)
        return self._context

    async def ensure_page(self) -> Page:
        """Return the active page, opening a new one if none is open."""
        if self._page is None or self._page.is_closed():
            context = await self.ensure_context()
            if self._page is None or self._page.is_closed():
                self._page = await context.new_page()
        return self._page

    # ------------------------------------------------------------------ #
    # Persistence and teardown
    # ------------------------------------------------------------------ #

    async def save_storage_state(self, path: "str | Path | None" = None) -> Optional[Path]:
        """Write cookies and origin storage of the current context to disk.

        Returns the written path, or ``None`` when there is no context.
        """
        if self._context is None:
            logger.debug("No browser context; skipping storage state save")
            return None
        target = Path(path) if path is not None else self._config.storage_state_path
        target.parent.mkdir(parents=True, exist_ok=True)
        await self._context.storage_state(path=str(target))
        logger.info("Saved storage state to %s", target)
        return target

    async def cleanup(self) -> None:
        """Close page, context, browser/application and driver, in that order.

        Each step is attempted even if an earlier one fails.  The session
        always ends fully reset.  Without anything started this is a no-op.
        """
        page, context, browser = self._page, self._context, self._browser
        app_process, driver = self._app_process, self._playwright
        if all(handle is None for handle in (page, context, browser, app_process, driver)):
            logger.debug("No session to clean up")
            return
        self._closing = True
        try:
            try:
                if page is not None and not page.is_closed():
                    await page.close()
            except Exception as exc:
                logger.error("Error closing page: %s", exc)

            try:
                if context is not None:
                    await context.close()
            except Exception as exc:
                logger.error("Error closing context: %s", exc)

            try:
                if browser is not None and browser.is_connected():
                    await browser.close()
            except Exception as exc:
                logger.error("Error closing browser: %s", exc)

            try:
                await self._terminate_app(app_process)
            except Exception as exc:
                logger.error("Error stopping application: %s", exc)

            try:
                if driver is not None:
                    await driver.stop()
            except Exception as exc:
                logger.error("Error stopping Playwright: %s", exc)

            if self._config.mode is SessionMode.PERSISTENT:
                try:
                    await asyncio.to_thread(evict_profile_processes, self._config.profile_dir)
                except Exception as exc:
                    logger.error("Error evicting profile processes: %s", exc)
        finally:
            self._forget_handles()
            self._app_process = None
            self._playwright = None
            self._closing = False
            self._status = SessionStatus.CLOSED

    # ------------------------------------------------------------------ #
    # Mode-specific startup
    # ------------------------------------------------------------------ #

    async def _launch_ephemeral(self) -> None:
        assert self._playwright is not None
        browser = await self._playwright.chromium.launch(
            headless=self._config.headless,
            args=list(self._config.launch_args),
        )
        self._watch(browser, "disconnected")
        self._browser = browser
        self._context = await self._new_isolated_context(browser)

    async def _launch_persistent(self) -> None:
        assert self._playwright is not None
        profile_dir = self._config.profile_dir
        await asyncio.to_thread(evict_profile_processes, profile_dir)
        profile_dir.mkdir(parents=True, exist_ok=True)
        context = await self._playwright.chromium.launch_persistent_context(
            str(profile_dir),
            headless=self._config.headless,
            args=list(self._config.launch_args),
            viewport=dict(self._config.viewport),
            user_agent=self._config.user_agent,
        )
        context.set_default_navigation_timeout(self._config.navigation_timeout_ms)
        self._watch(context, "close")
        browser = context.browser
        if browser is not None:
            self._watch(browser, "disconnected")
        self._browser = browser
        self._context = context
        self._page = context.pages[0] if context.pages else None

    async def _launch_attached(self) -> None:
        assert self._playwright is not None
        await self._terminate_app(self._app_process)
        self._app_process = None

        executable = self._config.app_executable
        port = self._config.debug_port or get_free_port()
        command = [str(executable), f"--remote-debugging-port={port}", *self._config.app_args]
        logger.info("Launching application: %s", command)
        self._app_process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
        )
        browser = await self._connect_over_cdp(f"http://127.0.0.1:{port}")
        self._watch(browser, "disconnected")
        self._browser = browser
        context = browser.contexts[0] if browser.contexts else await browser.new_context()
        self._context = context
        self._page = context.pages[0] if context.pages else None

    async def _connect_over_cdp(self, endpoint: str) -> Browser:
        assert self._playwright is not None
        deadline = time.monotonic() + self._config.attach_timeout_s
        last_error: Exception | None = None
        while True:
            process = self._app_process
            if process is not None and process.returncode is not None:
                raise SessionStartError(
                    f"Application exited with code {process.returncode} before accepting a connection."
                )
            try:
                return await self._playwright.chromium.connect_over_cdp(endpoint)
            except Error as exc:
                last_error = exc
            if time.monotonic() >= deadline:
                raise SessionStartError(
                    f"Timed out connecting to {endpoint} after "
                    f"{self._config.attach_timeout_s:.1f}s: {last_error}"
                )
            await asyncio.sleep(_CDP_RETRY_INTERVAL_S)

    async def _new_isolated_context(self, browser: Browser) -> BrowserContext:
        storage_state = self._config.storage_state_path
        state_arg = str(storage_state) if storage_state.exists() else None
        if state_arg:
            logger.info("Restoring storage state from %s", storage_state)
        context = await browser.new_context(
            storage_state=state_arg,
            viewport=dict(self._config.viewport),
            user_agent=self._config.user_agent,
        )
        context.on("close", lambda *_: self._on_context_closed(context))
        return context

    async def _terminate_app(self, process: asyncio.subprocess.Process | None) -> None:
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_APP_EXIT_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.warning("Application pid %s ignored terminate; killing", process.pid)
            process.kill()
            await process.wait()

    # ------------------------------------------------------------------ #
    # Disconnect tracking
    # ------------------------------------------------------------------ #

    def _watch(self, emitter: Any, event: str) -> None:
        emitter.on(event, lambda *_: self._on_handle_closed(emitter))

    def _on_handle_closed(self, source: Any) -> None:
        if self._closing:
            return
        if source is not self._browser and source is not self._context:
            # Listener left over from an earlier launch.
            return
        logger.error("Browser disconnected unexpectedly")
        self._forget_handles()
        self._status = SessionStatus.DISCONNECTED

    def _on_context_closed(self, context: BrowserContext) -> None:
        # A snippet closed the isolated context; the browser itself is fine.
        if self._closing or context is not self._context:
            return
        logger.warning("Browser context closed; a new one is created on next use")
        self._context = None
        self._page = None

    def _handle_alive(self) -> bool:
        if self._browser is not None:
            return self._browser.is_connected()
        return self._context is not None

    def _forget_handles(self) -> None:
        self._browser = None
        self._context = None
        self._page = None


_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Return the process-wide session manager, creating it on first use."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager(load_config())
    return _session_manager


def reset_session_manager() -> None:
    """Drop the process-wide manager without closing it.  Meant for tests."""
    global _session_manager
    _session_manager = None


__all__ = [
    "SessionManager",
    "SessionStartError",
    "SessionStatus",
    "get_session_manager",
    "reset_session_manager",
]
