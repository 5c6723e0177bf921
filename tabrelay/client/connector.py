"""
Client connector.

Gives automation code a page to drive through the relay:

    DISCONNECTED -> ENSURING_RELAY -> CONNECTING -> ACQUIRING_TARGET -> CONNECTED

Every operation first makes sure the connection is alive (a cheap
``document.title`` probe, and the session still listed by the relay) and
rebuilds it from scratch when it is not.
Operations report failures as OperationResult instead of raising.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx

from ..cdp import CDPConnection
from ..config import TabRelayConfig
from ..config.loader import ENV_CONFIG_PATH, ENV_EXTENSION_IDS, ENV_PORT, ENV_TOKEN
from ..errors import ConnectionSetupError, RelayError
from ..infra.retry_policy import fixed_interval, retry_async
from .page import PageSession

logger = logging.getLogger(__name__)

CLEAR_MODES = ("light", "aggressive")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    ENSURING_RELAY = "ensuring_relay"
    CONNECTING = "connecting"
    ACQUIRING_TARGET = "acquiring_target"
    CONNECTED = "connected"


@dataclass
class OperationResult:
    """Outcome of one connector operation"""

    operation: str
    success: bool
    value: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "value": self.value,
            "error": self.error,
        }


class RelayProcess:
    """A relay started as a child process (``python -m tabrelay relay``)"""

    def __init__(self, config: TabRelayConfig, config_path: str | Path | None = None):
        self.config = config
        self.config_path = config_path
        self.process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env[ENV_PORT] = str(self.config.port)
        if self.config.token:
            env[ENV_TOKEN] = self.config.token
        if self.config.extension_ids:
            env[ENV_EXTENSION_IDS] = ",".join(self.config.extension_ids)
        if self.config_path:
            env[ENV_CONFIG_PATH] = str(self.config_path)
        return env

    async def start(self) -> None:
        self.process = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "tabrelay", "relay",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
        )
        logger.info(f"Started relay process (pid {self.process.pid})")
        self._pumps = [
            asyncio.create_task(self._pump(self.process.stdout, logging.INFO)),
            asyncio.create_task(self._pump(self.process.stderr, logging.INFO)),
        ]

    async def _pump(self, stream: Optional[asyncio.StreamReader], level: int) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, f"[Relay] {text}")

    async def stop(self) -> None:
        if self.process is None:
            return
        process, self.process = self.process, None
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Relay process did not exit, killing it")
                process.kill()
                await process.wait()
        for task in self._pumps:
            task.cancel()
        self._pumps = []
        logger.info("Relay process stopped")


class ClientConnector:
    """
    Automation-facing connection to a page behind the relay

    Example:
        connector = ClientConnector(load_config())
        await connector.start()
        result = await connector.execute("document.title")
        await connector.close()
    """

    def __init__(
        self,
        config: TabRelayConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        relay_launcher: Callable[[], Awaitable[RelayProcess]] | None = None,
        config_path: str | Path | None = None,
    ):
        self.config = config
        self.settings = config.connector
        self.state = ConnectionState.DISCONNECTED

        self._http = http_client
        self._owns_http = http_client is None
        self._relay_launcher = relay_launcher
        self._config_path = config_path
        self._relay_process: RelayProcess | None = None
        self._connection: CDPConnection | None = None
        self._page: PageSession | None = None
        self._lock = asyncio.Lock()

    @property
    def page(self) -> Optional[PageSession]:
        return self._page

    @property
    def relay_process(self) -> Optional[RelayProcess]:
        return self._relay_process

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug(f"Connector state: {self.state.value} -> {state.value}")
            self.state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Make sure the relay is reachable; raises ConnectionSetupError otherwise"""
        await self.ensure_relay()

    async def close(self) -> None:
        """Drop the connection and stop a relay this connector launched"""
        async with self._lock:
            await self._teardown()
        if self._relay_process is not None:
            await self._relay_process.stop()
            self._relay_process = None
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.probe_timeout)
        return self._http

    async def _probe_relay(self) -> None:
        response = await self._http_client().get(
            f"{self.config.http_url}/version", timeout=self.settings.probe_timeout
        )
        response.raise_for_status()

    async def relay_reachable(self) -> bool:
        try:
            await self._probe_relay()
            return True
        except httpx.HTTPError:
            return False

    async def _launch_relay(self) -> RelayProcess:
        if self._relay_launcher is not None:
            return await self._relay_launcher()
        process = RelayProcess(self.config, self._config_path)
        await process.start()
        return process

    async def ensure_relay(self) -> None:
        if await self.relay_reachable():
            logger.debug("Relay server already running")
            return

        if not self.settings.launch_relay:
            raise ConnectionSetupError(f"Relay server not reachable at {self.config.http_url}")

        logger.info("Relay server not running, attempting to start...")
        try:
            self._relay_process = await self._launch_relay()
        except Exception as e:
            raise ConnectionSetupError(f"Failed to start relay server: {e}") from e

        try:
            await retry_async(
                self._probe_relay,
                fixed_interval(self.settings.launch_attempts, self.settings.launch_interval),
                on_retry=lambda info: logger.info("Waiting for relay server..."),
                label="relay launch",
            )
        except Exception as e:
            raise ConnectionSetupError("Failed to start relay server") from e
        logger.info("Relay server started successfully")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect_url(self) -> str:
        url = self.config.cdp_url(self.settings.client_id)
        if self.config.token:
            url = f"{url}?{urlencode({'token': self.config.token})}"
        return url

    async def ensure_connected(self) -> PageSession:
        """Return a live page, (re)connecting from scratch when needed"""
        async with self._lock:
            if self._page is not None and self._connection is not None:
                if not self._connection.closed:
                    try:
                        await self._page.title(timeout=self.settings.liveness_timeout)
                        if await self._session_listed(self._page.session_id):
                            return self._page
                        logger.info(f"Session {self._page.session_id} is no longer attached, reconnecting")
                    except (RelayError, httpx.HTTPError) as e:
                        logger.info(f"Liveness probe failed, reconnecting: {e}")
                else:
                    logger.info("Connection closed, reconnecting")
                await self._teardown()

            try:
                self._set_state(ConnectionState.ENSURING_RELAY)
                await self.ensure_relay()

                self._set_state(ConnectionState.CONNECTING)
                connection = await self._open_connection()

                self._set_state(ConnectionState.ACQUIRING_TARGET)
                self._page = await self._acquire_target(connection)
            except Exception:
                await self._teardown()
                raise

            self._set_state(ConnectionState.CONNECTED)
            logger.info("Connected to browser")
            return self._page

    async def _open_connection(self) -> CDPConnection:
        url = self.connect_url()
        logger.info(f"Connecting to browser over CDP: {self.config.cdp_url(self.settings.client_id)}")
        connection = CDPConnection(
            url,
            open_timeout=self.settings.open_timeout,
            command_timeout=self.settings.command_timeout,
            max_size=self.config.relay.max_message_size,
            name=self.settings.client_id,
        )
        await connection.connect()
        connection.on_close(lambda: logger.info("CDP connection closed"))
        self._connection = connection
        return connection

    async def _list_targets(self) -> list[dict[str, Any]]:
        response = await self._http_client().get(
            f"{self.config.http_url}/json/list", timeout=self.settings.probe_timeout
        )
        response.raise_for_status()
        targets = response.json()
        return [t for t in targets if isinstance(t, dict)] if isinstance(targets, list) else []

    async def _session_listed(self, session_id: str | None) -> bool:
        """True when the relay still lists the session (re-attaching a tab issues a new one)"""
        if session_id is None:
            return True
        targets = await self._list_targets()
        return any(target.get("sessionId") == session_id for target in targets)

    async def _acquire_target(self, connection: CDPConnection) -> PageSession:
        targets = await self._list_targets()
        if targets:
            session_id = targets[0].get("sessionId")
            logger.debug(f"Using attached session {session_id}")
            page = PageSession(connection, session_id, navigation_timeout=self.settings.navigation_timeout)
        else:
            result = await connection.send("Target.createTarget", {"url": "about:blank"})
            logger.info(f"Created target {result.get('targetId')}")
            page = PageSession(connection, None, navigation_timeout=self.settings.navigation_timeout)
            await page.navigate("about:blank")

        await page.title(timeout=self.settings.liveness_timeout)
        return page

    async def _teardown(self) -> None:
        connection, self._connection = self._connection, None
        self._page = None
        if connection is not None:
            await connection.close()
        self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _run(
        self, operation: str, fn: Callable[[PageSession], Awaitable[Any]]
    ) -> OperationResult:
        try:
            page = await self.ensure_connected()
            value = await fn(page)
        except Exception as e:
            logger.error(f"Error executing {operation}: {e}")
            return OperationResult(operation=operation, success=False, error=str(e))
        return OperationResult(operation=operation, success=True, value=value)

    async def screenshot(self) -> OperationResult:
        return await self._run("screenshot", lambda page: page.screenshot())

    async def accessibility_snapshot(self) -> OperationResult:
        return await self._run("accessibility_snapshot", lambda page: page.accessibility_snapshot())

    async def execute(self, code: str) -> OperationResult:
        return await self._run("execute", lambda page: page.execute(code))

    async def reset(self) -> OperationResult:
        async with self._lock:
            await self._teardown()
        logger.info("Connection reset")
        return OperationResult(operation="reset", success=True, value="Connection reset")

    async def clear_cache_and_reload(self, mode: str = "light") -> OperationResult:
        if mode not in CLEAR_MODES:
            return OperationResult(
                operation="clear_cache_and_reload",
                success=False,
                error=f"Unknown mode: {mode} (expected one of {', '.join(CLEAR_MODES)})",
            )

        async def clear(page: PageSession) -> str:
            if mode == "aggressive":
                await page.clear_browser_data()
            await page.reload(ignore_cache=True)
            return f"Cache cleared with mode: {mode}"

        return await self._run("clear_cache_and_reload", clear)

    async def ensure_fresh_render(self) -> OperationResult:
        async def reload(page: PageSession) -> str:
            await page.reload(ignore_cache=True)
            return "Page reloaded with fresh cache"

        return await self._run("ensure_fresh_render", reload)

    async def navigate(self, url: str) -> OperationResult:
        async def go(page: PageSession) -> str:
            await page.navigate(url)
            return f"Navigated to {url}"

        return await self._run("navigate", go)


__all__ = [
    "CLEAR_MODES",
    "ClientConnector",
    "ConnectionState",
    "OperationResult",
    "RelayProcess",
]
