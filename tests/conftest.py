"""
Pytest configuration for tabrelay tests

Shared fixtures: relay config, a scripted debugger backend, polling helper
"""
import asyncio
from typing import Any, Callable

import pytest
from aiohttp.test_utils import unused_port

from tabrelay.bridge.debugger import DebuggerSubscription, TabInfo
from tabrelay.config import TabRelayConfig
from tabrelay.errors import CommandExecutionError

TEST_EXTENSION_ID = "test-extension"
EXTENSION_ORIGIN = f"chrome-extension://{TEST_EXTENSION_ID}"


class FakeBackend:
    """Scripted DebuggerBackend: records calls, answers from a method -> result map"""

    def __init__(self, tabs: list[TabInfo] | None = None):
        self.tabs = tabs if tabs is not None else [
            TabInfo(tab_id=1, title="Example", url="https://example.com", active=True),
            TabInfo(tab_id=2, title="Other", url="https://other.example"),
        ]
        self.attached: set[Any] = set()
        self.attach_calls: list[tuple[Any, str]] = []
        self.detach_calls: list[Any] = []
        self.commands: list[tuple[Any, str, Any]] = []
        self.responses: dict[str, Any] = {}
        self.failures: dict[str, str] = {}
        self.listeners: dict[Any, list[Callable]] = {}
        self.cache_cleared: list[Any] = []
        self.reloaded: list[tuple[Any, bool]] = []

    async def attach(self, tab_id, version):
        self.attach_calls.append((tab_id, version))
        if tab_id in self.attached:
            raise CommandExecutionError(f"Another debugger is already attached to tab {tab_id}")
        self.attached.add(tab_id)

    async def detach(self, tab_id):
        self.detach_calls.append(tab_id)
        if tab_id not in self.attached:
            raise CommandExecutionError(f"Debugger is not attached to the tab with id: {tab_id}")
        self.attached.discard(tab_id)

    async def send_command(self, tab_id, method, params=None):
        self.commands.append((tab_id, method, params))
        if method in self.failures:
            raise CommandExecutionError(self.failures[method], method=method)
        response = self.responses.get(method, {})
        return response(params) if callable(response) else response

    def subscribe(self, tab_id, listener):
        listeners = self.listeners.setdefault(tab_id, [])
        listeners.append(listener)
        return DebuggerSubscription(tab_id, lambda: listeners.remove(listener))

    def emit(self, tab_id, method, params=None):
        for listener in list(self.listeners.get(tab_id, [])):
            listener(method, params or {})

    async def list_tabs(self):
        return list(self.tabs)

    async def active_tab(self):
        return next((tab for tab in self.tabs if tab.active), None)

    async def clear_browser_cache(self, tab_id):
        self.cache_cleared.append(tab_id)

    async def reload(self, tab_id, bypass_cache=True):
        self.reloaded.append((tab_id, bypass_cache))


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def extension_origin():
    return EXTENSION_ORIGIN


@pytest.fixture
def relay_config():
    """Config with a free port and the test extension allow-listed"""
    return TabRelayConfig(port=unused_port(), extension_ids=[TEST_EXTENSION_ID])


@pytest.fixture
def fake_backend():
    return FakeBackend()
