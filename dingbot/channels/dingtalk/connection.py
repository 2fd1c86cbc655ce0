"""Stream connection lifecycle: transport abstraction, backoff and reconnection."""

import asyncio
import json
import random
import urllib.parse
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from dingtalk_stream import Credential, DingTalkStreamClient
from loguru import logger

from dingbot.config.schema import ConnectionConfig

MIN_DELAY_S = 0.1
HEALTH_CHECK_INTERVAL_S = 5.0


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DISCONNECTING = "DISCONNECTING"
    FAILED = "FAILED"


class StreamTransport(ABC):
    """Minimal surface the connection manager needs from a stream client."""

    def __init__(self) -> None:
        self._close_listeners: list[Callable[[str], None]] = []
        self._error_listeners: list[Callable[[BaseException], None]] = []

    @abstractmethod
    async def connect(self) -> None:
        """Open the stream. Raises on failure."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    def on_close(self, callback: Callable[[str], None]) -> None:
        self._close_listeners.append(callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> None:
        self._error_listeners.append(callback)

    def remove_listeners(self) -> None:
        self._close_listeners.clear()
        self._error_listeners.clear()

    def _emit_close(self, reason: str = "") -> None:
        for cb in list(self._close_listeners):
            cb(reason)

    def _emit_error(self, error: BaseException) -> None:
        for cb in list(self._error_listeners):
            cb(error)


class DingTalkStreamTransport(StreamTransport):
    """
    Drives a ``dingtalk-stream`` client one connection at a time.

    The SDK's own ``start()`` loops and reconnects forever; here the ticket
    handshake and websocket are opened explicitly so reconnection policy stays
    with :class:`ConnectionManager`. Inbound frames are routed through the
    client, which invokes the registered callback handlers and sends acks.
    """

    def __init__(self, client_id: str, client_secret: str, handlers: dict[str, Any]):
        super().__init__()
        self.client = DingTalkStreamClient(Credential(client_id, client_secret))
        for topic, handler in handlers.items():
            self.client.register_callback_handler(topic, handler)
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._keepalive: asyncio.Task | None = None
        # Hold references to in-flight frame handlers to prevent GC
        self._frame_tasks: set[asyncio.Task] = set()
        self._prepared = False
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def connect(self) -> None:
        if not self._prepared:
            self.client.pre_start()
            self._prepared = True

        # open_connection() is a blocking HTTP call in the SDK
        endpoint = await asyncio.to_thread(self.client.open_connection)
        if not endpoint:
            raise ConnectionError("DingTalk stream open_connection failed")

        uri = f"{endpoint['endpoint']}?ticket={urllib.parse.quote_plus(endpoint['ticket'])}"
        self._closing = False
        self._ws = await websockets.connect(uri)
        self.client.websocket = self._ws
        self._keepalive = asyncio.create_task(self.client.keepalive(self._ws))
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws: Any) -> None:
        reason = "closed"
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError as e:
                    logger.warning("Dropping unparseable DingTalk stream frame: {}", e)
                    continue
                task = asyncio.create_task(self.client.background_task(frame))
                self._frame_tasks.add(task)
                task.add_done_callback(self._frame_tasks.discard)
        except websockets.ConnectionClosed as e:
            reason = str(e)
        except Exception as e:
            reason = str(e)
            self._emit_error(e)
        if not self._closing:
            self._emit_close(reason)

    async def disconnect(self) -> None:
        self._closing = True
        for task in (self._keepalive, self._reader):
            if task and not task.done():
                task.cancel()
        if self._ws is not None:
            await self._ws.close()
        self._ws = None
        self._reader = None
        self._keepalive = None


class ConnectionManager:
    """
    Connection state machine for one account's stream transport.

    The initial :meth:`connect` gives up after ``max_attempts``. Once connected,
    a close event or a failed health check triggers reconnection that keeps
    retrying with the same backoff until :meth:`stop`.
    """

    def __init__(
        self,
        transport: StreamTransport,
        account_id: str,
        config: ConnectionConfig | None = None,
        *,
        abort: asyncio.Event | None = None,
        health_interval: float = HEALTH_CHECK_INTERVAL_S,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rand: Callable[[], float] = random.random,
    ):
        self.transport = transport
        self.account_id = account_id
        self.config = config or ConnectionConfig()
        self.abort = abort
        self.health_interval = health_interval
        self._sleep = sleep
        self._rand = rand

        self.state = ConnectionState.DISCONNECTED
        self.attempt_count = 0
        self._stopped = False
        self._stop_event = asyncio.Event()
        self._listening = False
        self._health_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._abort_task: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def next_delay(self, attempt: int) -> float:
        """``min(initial * 2**attempt, max)`` jittered by ``± jitter``, floored at 100ms."""
        capped = min(self.config.initial_delay * (2 ** attempt), self.config.max_delay)
        jitter = capped * self.config.jitter * (self._rand() * 2 - 1)
        return max(MIN_DELAY_S, capped + jitter)

    async def connect(self) -> None:
        """Connect, retrying up to ``max_attempts`` times before failing."""
        if self.abort is not None and self.abort.is_set():
            raise ConnectionAbortedError("Connection aborted before start")
        if self._stopped:
            raise RuntimeError("Cannot connect: connection manager is stopped")

        if self.abort is not None and self._abort_task is None:
            self._abort_task = asyncio.create_task(self._watch_abort())
        if not self._listening:
            self.transport.on_close(self._on_transport_close)
            self.transport.on_error(self._on_transport_error)
            self._listening = True

        logger.info("[{}] Starting DingTalk stream connection", self.account_id)
        await self._connect_loop(self.config.max_attempts)

    async def _connect_loop(self, max_attempts: int | None) -> None:
        self.attempt_count = 0
        while not self._stopped:
            self.attempt_count += 1
            self.state = ConnectionState.CONNECTING
            logger.info(
                "[{}] Connection attempt {}/{}",
                self.account_id, self.attempt_count, max_attempts or "∞",
            )
            try:
                await self.transport.connect()
            except Exception as e:
                logger.error("[{}] Connection attempt {} failed: {}", self.account_id, self.attempt_count, e)
                if max_attempts is not None and self.attempt_count >= max_attempts:
                    self.state = ConnectionState.FAILED
                    logger.error("[{}] Max connection attempts ({}) reached", self.account_id, max_attempts)
                    raise ConnectionError(
                        f"Failed to connect after {self.attempt_count} attempts"
                    ) from e
                delay = self.next_delay(self.attempt_count)
                logger.warning("[{}] Retrying connection in {:.2f}s", self.account_id, delay)
                await self._wait(delay)
                continue

            if self._stopped:
                # stop() raced the handshake
                await self._safe_disconnect()
                return
            self.state = ConnectionState.CONNECTED
            self.attempt_count = 0
            logger.info("[{}] DingTalk stream connected", self.account_id)
            self._start_health_check()
            return

    async def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _start_health_check(self) -> None:
        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.health_interval)
            if self.state == ConnectionState.CONNECTED and not self.transport.is_connected:
                logger.warning("[{}] Health check detected disconnection", self.account_id)
                self._handle_disconnect()
                return

    def _on_transport_close(self, reason: str) -> None:
        logger.warning("[{}] Stream closed ({})", self.account_id, reason or "none")
        if self.state == ConnectionState.CONNECTED:
            self._handle_disconnect()

    def _on_transport_error(self, error: BaseException) -> None:
        logger.error("[{}] Stream error: {}", self.account_id, error)

    def _handle_disconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self.state = ConnectionState.DISCONNECTED
        self.attempt_count = 0
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        delay = self.next_delay(0)
        logger.info("[{}] Reconnecting in {:.2f}s", self.account_id, delay)
        await self._wait(delay)
        if self._stopped:
            return
        await self._safe_disconnect()
        # Runtime drops are transient: no attempt limit
        await self._connect_loop(None)
        if self.is_connected:
            logger.info("[{}] Reconnection successful", self.account_id)

    async def _watch_abort(self) -> None:
        await self.abort.wait()
        logger.info("[{}] Abort signalled, stopping connection", self.account_id)
        await self.stop()

    async def _safe_disconnect(self) -> None:
        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.warning("[{}] Error during disconnect: {}", self.account_id, e)

    async def stop(self) -> None:
        """Stop reconnecting and close the transport. Safe to call repeatedly."""
        if self._stopped:
            return
        logger.info("[{}] Stopping connection manager", self.account_id)
        self._stopped = True
        self.state = ConnectionState.DISCONNECTING
        self._stop_event.set()

        current = asyncio.current_task()
        for task in (self._reconnect_task, self._health_task, self._abort_task):
            if task and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = self._health_task = None

        self.transport.remove_listeners()
        self._listening = False
        await self._safe_disconnect()

        self.state = ConnectionState.DISCONNECTED
        logger.info("[{}] Connection manager stopped", self.account_id)

    async def wait_for_stop(self) -> None:
        await self._stop_event.wait()
