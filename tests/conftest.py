"""Shared fixtures: in-memory stand-ins for the Playwright async API.

We do not use pytest-asyncio; coroutines run through ``loop.run_until_complete()``.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path

import pytest

from playwrightess.browser import session as session_module
from playwrightess.browser.session import SessionManager, reset_session_manager
from playwrightess.config import SessionConfig, SessionMode
from playwrightess.mcp import server as server_module


class _Emitter:
    def __init__(self):
        self.handlers = defaultdict(list)

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def emit(self, event, *args):
        for handler in list(self.handlers[event]):
            handler(*args)


class FakeConsoleMessage:
    def __init__(self, text):
        self.text = text


class FakePage(_Emitter):
    def __init__(self, context=None):
        super().__init__()
        self.context = context
        self.url = "about:blank"
        self.closed = False

    def is_closed(self):
        return self.closed

    async def goto(self, url, **kwargs):
        self.url = url

    async def close(self):
        self.closed = True
        self.emit("close", self)

    def __repr__(self):
        return f"<FakePage url={self.url!r}>"


class FakeContext(_Emitter):
    def __init__(self, browser=None, pages=(), **options):
        super().__init__()
        self.browser = browser
        self.options = options
        self.pages = []
        for page in pages:
            page.context = self
            self.pages.append(page)
        self.closed = False
        self.navigation_timeout = None
        self.saved_paths = []

    async def new_page(self):
        page = FakePage(self)
        self.pages.append(page)
        return page

    def set_default_navigation_timeout(self, timeout):
        self.navigation_timeout = timeout

    async def storage_state(self, path=None):
        self.saved_paths.append(path)
        state = {"cookies": [], "origins": []}
        if path is not None:
            Path(path).write_text(json.dumps(state))
        return state

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.emit("close", self)


class FakeBrowser(_Emitter):
    def __init__(self):
        super().__init__()
        self.connected = True
        self.contexts = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self, **options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.connected = False
        self.emit("disconnected", self)

    def crash(self):
        """Simulate the browser process dying underneath us."""
        self.connected = False
        self.emit("disconnected", self)


class FakeBrowserType:
    def __init__(self, name):
        self.name = name
        self.launches = []
        self.persistent_launches = []
        self.cdp_connects = []
        self.browsers = []
        self.cdp_failures = 0

    async def launch(self, **options):
        self.launches.append(options)
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser

    async def launch_persistent_context(self, user_data_dir, **options):
        self.persistent_launches.append((user_data_dir, options))
        browser = FakeBrowser()
        self.browsers.append(browser)
        context = FakeContext(browser, pages=[FakePage()], **options)
        browser.contexts.append(context)
        return context

    async def connect_over_cdp(self, endpoint, **options):
        from playwright.async_api import Error

        self.cdp_connects.append(endpoint)
        if self.cdp_failures:
            self.cdp_failures -= 1
            raise Error("connect ECONNREFUSED")
        browser = FakeBrowser()
        browser.contexts.append(FakeContext(browser, pages=[FakePage()]))
        self.browsers.append(browser)
        return browser


class FakePlaywright:
    def __init__(self):
        self.chromium = FakeBrowserType("chromium")
        self.firefox = FakeBrowserType("firefox")
        self.webkit = FakeBrowserType("webkit")
        self.devices = {"iPhone 13": {"viewport": {"width": 390, "height": 844}}}
        self.starts = 0
        self.stopped = 0

    async def stop(self):
        self.stopped += 1


class _Starter:
    def __init__(self, playwright):
        self._playwright = playwright

    async def start(self):
        self._playwright.starts += 1
        return self._playwright


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    yield loop
    loop.close()
    asyncio.set_event_loop(None)


@pytest.fixture
def evictions(monkeypatch):
    calls = []

    def fake_evict(profile_dir, **kwargs):
        calls.append(Path(profile_dir))
        return []

    monkeypatch.setattr(session_module, "evict_profile_processes", fake_evict)
    return calls


@pytest.fixture
def fake_playwright(monkeypatch, evictions):
    playwright = FakePlaywright()
    monkeypatch.setattr(session_module, "async_playwright", lambda: _Starter(playwright))
    return playwright


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides):
        base = SessionConfig(
            profile_dir=tmp_path / "profile",
            storage_state_path=tmp_path / "state.json",
        )
        return base.with_overrides(**overrides)

    return factory


@pytest.fixture
def manager(fake_playwright, make_config):
    return SessionManager(make_config(mode=SessionMode.EPHEMERAL))


@pytest.fixture(autouse=True)
def _fresh_singletons():
    reset_session_manager()
    server_module.reset_server_state()
    yield
    reset_session_manager()
    server_module.reset_server_state()
