"""Binance stream connection management.

``BinanceStreamManager`` owns one websocket per ``(instrument, stream kind)``
pair, fans every decoded message out to the handlers registered for that
pair and reconnects dropped sockets after a fixed delay.  REST calls needed
by the streams (history, depth snapshots, exchange metadata, listen keys)
go through :meth:`BinanceStreamManager.request` so they share the
rate-limited admission queue with the rest of the engine.

Shutdown is cooperative.  A :class:`ShutdownToken` is consulted after every
await that can resume into stream work: once it is set, reconnect timers
are cancelled, sockets that finish their handshake are closed unused and
late messages are dropped.  Requests already admitted by the queue are
allowed to finish.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from binance_rest import REQUEST_WEIGHTS, BinanceRestClient
from log_utils import setup_logger
from observability import log_event, record_metric
from rate_limiter import RateLimitedQueue

logger = setup_logger(__name__)

Handler = Callable[[Dict[str, Any]], None]
Connector = Callable[..., Awaitable[Any]]

USER_STREAM_INSTRUMENT = "USER"
LISTEN_KEY_KEEPALIVE_SECS = 30 * 60


class StreamKind(str, Enum):
    KLINE = "kline"
    DEPTH = "depth"
    USER_DATA = "user_data"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"


class ShutdownToken:
    """Shared cooperative cancellation flag."""

    def __init__(self) -> None:
        self._set = False

    def set(self) -> None:
        self._set = True

    def clear(self) -> None:
        self._set = False

    def is_set(self) -> bool:
        return self._set


StreamKey = Tuple[str, StreamKind]


@dataclass
class _Stream:
    instrument: str
    kind: StreamKind
    state: ConnectionState = ConnectionState.DISCONNECTED
    socket: Any = None
    reader: Optional[asyncio.Task] = None
    reconnect: Optional[asyncio.TimerHandle] = None
    listen_key: Optional[str] = None
    keepalive: Optional[asyncio.Task] = None
    reconnects: int = 0

    @property
    def key(self) -> StreamKey:
        return (self.instrument, self.kind)

    @property
    def label(self) -> str:
        return f"{self.instrument}:{self.kind.value}"


@dataclass
class BinanceStreamManager:
    """Per-instrument websocket lifecycle with delayed reconnects."""

    queue: RateLimitedQueue
    rest: BinanceRestClient
    ws_base_url: str = "wss://stream.binance.com:9443"
    kline_interval: str = "1h"
    depth_levels: int = 20
    depth_speed: str = "100ms"
    reconnect_delay: float = 5.0
    keepalive_interval: float = LISTEN_KEY_KEEPALIVE_SECS
    shutdown_timeout: float = 10.0
    connector: Connector = websockets.connect
    token: ShutdownToken = field(default_factory=ShutdownToken)
    _streams: Dict[StreamKey, _Stream] = field(default_factory=dict, init=False, repr=False)
    _handlers: Dict[StreamKey, List[Handler]] = field(default_factory=dict, init=False, repr=False)
    _tasks: Set[asyncio.Task] = field(default_factory=set, init=False, repr=False)
    _connecting: Set[asyncio.Future] = field(default_factory=set, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_shutting_down(self) -> bool:
        return self.token.is_set()

    @property
    def pending_reconnects(self) -> int:
        return sum(1 for stream in self._streams.values() if stream.reconnect is not None)

    def state(self, instrument: str, kind: StreamKind) -> ConnectionState:
        stream = self._streams.get((instrument.upper(), kind))
        return stream.state if stream else ConnectionState.DISCONNECTED

    def stream_url(self, instrument: str, kind: StreamKind, listen_key: Optional[str] = None) -> str:
        base = self.ws_base_url.rstrip("/")
        if kind is StreamKind.KLINE:
            return f"{base}/ws/{instrument.lower()}@kline_{self.kline_interval}"
        if kind is StreamKind.DEPTH:
            return f"{base}/ws/{instrument.lower()}@depth{self.depth_levels}@{self.depth_speed}"
        if not listen_key:
            raise ValueError("user data stream requires a listen key")
        return f"{base}/ws/{listen_key}"

    def subscribe(self, instrument: str, kind: StreamKind, handler: Handler) -> None:
        """Register ``handler`` for every message on ``(instrument, kind)``."""

        key = (instrument.upper(), kind)
        self._handlers.setdefault(key, []).append(handler)

    async def request(self, func: Callable[..., Awaitable[Any]], *args: Any, weight: int = 1) -> Any:
        """Run a REST coroutine function through the admission queue."""

        return await self.queue.enqueue(lambda: func(*args), weight)

    async def connect(self, instrument: str, kind: StreamKind) -> bool:
        """Open the stream for ``(instrument, kind)``.

        Returns ``True`` once the socket is open.  Already connecting or
        connected streams are left alone.  Failures schedule a reconnect.
        """

        if self.token.is_set():
            logger.debug("Ignoring connect for %s:%s during shutdown", instrument, kind.value)
            return False
        stream = self._stream(instrument, kind)
        if stream.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return True
        self._cancel_reconnect(stream)
        stream.state = ConnectionState.CONNECTING

        # Shutdown waits on this marker so a listen key or socket obtained
        # mid-shutdown is released while the queue is still open.
        done = asyncio.get_running_loop().create_future()
        self._connecting.add(done)
        try:
            return await self._open(stream)
        finally:
            self._connecting.discard(done)
            done.set_result(None)

    async def _open(self, stream: _Stream) -> bool:
        kind = stream.kind
        if kind is StreamKind.USER_DATA:
            try:
                stream.listen_key = await self.request(
                    self.rest.create_listen_key, weight=REQUEST_WEIGHTS["listen_key"]
                )
            except asyncio.CancelledError:
                stream.state = ConnectionState.DISCONNECTED
                raise
            except Exception as exc:
                logger.warning("Listen key request failed: %s", exc)
                await self._handle_close(stream)
                return False
            if self.token.is_set():
                await self._release_listen_key(stream)
                stream.state = ConnectionState.DISCONNECTED
                return False

        url = self.stream_url(stream.instrument, kind, stream.listen_key)
        try:
            ws = await self.connector(
                url,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=5,
                max_queue=64,
            )
        except asyncio.CancelledError:
            stream.state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            logger.warning("Stream %s failed to open: %r", stream.label, exc)
            await self._handle_close(stream)
            return False

        if self.token.is_set():
            # Shutdown began while the handshake was in flight.
            await self._close_socket(ws)
            await self._release_listen_key(stream)
            stream.state = ConnectionState.DISCONNECTED
            return False

        stream.socket = ws
        stream.state = ConnectionState.CONNECTED
        log_event(logger, "stream_connected", stream=stream.label, reconnects=stream.reconnects)
        stream.reader = self._spawn(self._read(stream, ws))
        if kind is StreamKind.USER_DATA:
            stream.keepalive = self._spawn(self._keepalive(stream))
        return True

    async def connect_user_data(self) -> bool:
        return await self.connect(USER_STREAM_INSTRUMENT, StreamKind.USER_DATA)

    async def shutdown(self) -> None:
        """Stop every stream and cancel pending reconnects. Safe to call twice.

        Connects that are mid-flight are awaited (up to ``shutdown_timeout``)
        so any listen key they obtain is closed before this returns.
        """

        if self._closed:
            return
        self._closed = True
        self.token.set()
        sockets = []
        readers = []
        for stream in self._streams.values():
            self._cancel_reconnect(stream)
            self._stop_keepalive(stream)
            if stream.socket is not None:
                # Detach first so the reader exit does not run close handling.
                sockets.append(stream.socket)
                stream.socket = None
            if stream.reader is not None and not stream.reader.done():
                readers.append(stream.reader)
            stream.reader = None
            stream.state = ConnectionState.DISCONNECTED
        log_event(logger, "stream_shutdown", sockets=len(sockets), streams=len(self._streams))

        await asyncio.gather(*(self._close_socket(ws) for ws in sockets))
        if readers:
            _, still_running = await asyncio.wait(readers, timeout=5)
            for task in still_running:
                task.cancel()
        if self._connecting:
            _, stuck = await asyncio.wait(list(self._connecting), timeout=self.shutdown_timeout)
            if stuck:
                logger.warning("%d stream connect(s) still in flight after shutdown", len(stuck))
        for stream in self._streams.values():
            await self._release_listen_key(stream)

    def resume(self) -> None:
        """Clear the shutdown state so streams can be connected again."""

        self._closed = False
        self.token.clear()
        for stream in self._streams.values():
            self._cancel_reconnect(stream)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _stream(self, instrument: str, kind: StreamKind) -> _Stream:
        key = (instrument.upper(), kind)
        stream = self._streams.get(key)
        if stream is None:
            stream = _Stream(instrument=key[0], kind=kind)
            self._streams[key] = stream
        return stream

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _read(self, stream: _Stream, ws: Any) -> None:
        try:
            async for raw in ws:
                if self.token.is_set():
                    break
                self._dispatch(stream, raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.info("Stream %s closed: %s", stream.label, exc)
        except Exception as exc:
            logger.warning("Stream %s reader failed: %r", stream.label, exc)
        if stream.socket is ws:
            await self._handle_close(stream)

    def _dispatch(self, stream: _Stream, raw: Any) -> None:
        text = raw.decode() if isinstance(raw, (bytes, bytearray)) else str(raw)
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Discarding malformed message on %s", stream.label)
            return
        if (
            stream.kind is StreamKind.USER_DATA
            and isinstance(message, dict)
            and message.get("e") == "listenKeyExpired"
        ):
            logger.warning("Listen key expired; reopening user data stream")
            if stream.socket is not None:
                self._spawn(self._close_socket(stream.socket))
        for handler in list(self._handlers.get(stream.key, ())):
            try:
                handler(message)
            except Exception:
                logger.exception("Stream handler for %s raised", stream.label)

    async def _handle_close(self, stream: _Stream) -> None:
        stream.socket = None
        stream.reader = None
        self._stop_keepalive(stream)
        await self._release_listen_key(stream)
        stream.state = ConnectionState.DISCONNECTED
        if self.token.is_set():
            return
        loop = asyncio.get_running_loop()
        stream.reconnect = loop.call_later(self.reconnect_delay, self._on_reconnect_timer, stream)
        stream.state = ConnectionState.RECONNECT_SCHEDULED
        stream.reconnects += 1
        log_event(
            logger,
            "stream_reconnect_scheduled",
            stream=stream.label,
            delay=self.reconnect_delay,
            attempt=stream.reconnects,
        )
        record_metric("stream_reconnects", stream.reconnects, labels={"stream": stream.label})

    def _on_reconnect_timer(self, stream: _Stream) -> None:
        stream.reconnect = None
        if self.token.is_set():
            stream.state = ConnectionState.DISCONNECTED
            return
        self._spawn(self.connect(stream.instrument, stream.kind))

    def _cancel_reconnect(self, stream: _Stream) -> None:
        if stream.reconnect is not None:
            stream.reconnect.cancel()
            stream.reconnect = None
            if stream.state is ConnectionState.RECONNECT_SCHEDULED:
                stream.state = ConnectionState.DISCONNECTED

    def _stop_keepalive(self, stream: _Stream) -> None:
        task = stream.keepalive
        stream.keepalive = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _keepalive(self, stream: _Stream) -> None:
        while not self.token.is_set():
            await asyncio.sleep(self.keepalive_interval)
            key = stream.listen_key
            if key is None or self.token.is_set():
                return
            try:
                await self.request(
                    self.rest.keep_alive_listen_key, key, weight=REQUEST_WEIGHTS["listen_key"]
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Listen key keepalive failed: %s", exc)

    async def _release_listen_key(self, stream: _Stream) -> None:
        key = stream.listen_key
        stream.listen_key = None
        if not key:
            return
        try:
            await self.request(self.rest.close_listen_key, key, weight=REQUEST_WEIGHTS["listen_key"])
        except Exception as exc:
            logger.warning("Failed to close listen key: %s", exc)

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except Exception as exc:
            logger.debug("Error while closing websocket: %r", exc)


__all__ = [
    "BinanceStreamManager",
    "ConnectionState",
    "ShutdownToken",
    "StreamKind",
    "USER_STREAM_INSTRUMENT",
]
