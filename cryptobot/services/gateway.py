"""Market data gateway.

Keeps one websocket connection to the exchange stream endpoint, subscribes to
the configured streams and decodes every inbound message into a typed event
for the event processor. Dropped connections are retried with exponential
backoff up to a bounded number of attempts; a successful connection resets
the counter. `last_message_at` is the liveness marker read by the health
endpoint and the watchdog job.
"""

import asyncio
import itertools
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from cryptobot.errors import MalformedEventError
from cryptobot.services.events import MarketEvent, decode_event
from cryptobot.utils.constants import (
    GATEWAY_CLOSED,
    GATEWAY_CONNECTED,
    GATEWAY_CONNECTING,
    GATEWAY_FAILED,
    GATEWAY_IDLE,
    GATEWAY_RECONNECTING,
)
from cryptobot.utils.logging import log_event
from cryptobot.utils.retry import compute_backoff

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class MarketDataGateway:
    def __init__(
        self,
        url: str,
        streams: list[str],
        on_event: Callable[[MarketEvent], object],
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        max_attempts: int = 10,
        connect: Callable[..., Awaitable] | None = None,
        sleep: Callable[[float], Awaitable] | None = None,
    ):
        self.url = url
        self.streams: list[str] = list(dict.fromkeys(streams))
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self._on_event = on_event
        self._connect = connect or websockets.connect
        self._sleep = sleep

        self.status = GATEWAY_IDLE
        self.reconnect_attempts = 0
        self.started_at: datetime | None = None
        self.connected_at: datetime | None = None
        self.last_message_at: datetime | None = None
        self.messages_received = 0
        self.malformed_messages = 0

        self._closed = False
        self._ws = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event = asyncio.Event()
        self._request_ids = itertools.count(1)
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def run(self):
        """Connect and pump messages until closed or reconnects are exhausted."""
        self._loop = asyncio.get_running_loop()
        self.started_at = datetime.now(timezone.utc)

        while not self._closed:
            self.status = GATEWAY_CONNECTING if self.reconnect_attempts == 0 else GATEWAY_RECONNECTING
            try:
                ws = await self._connect(self.url, ping_interval=20, ping_timeout=20, close_timeout=5)
            except TRANSPORT_ERRORS as e:
                log_event(logger, logging.WARNING, "GATEWAY_DISCONNECTED",
                          f"Connect to {self.url} failed: {e!r}", attempt=self.reconnect_attempts)
            else:
                await self._consume(ws)

            if self._closed:
                break

            if self.reconnect_attempts >= self.max_attempts:
                self.status = GATEWAY_FAILED
                log_event(logger, logging.CRITICAL, "GATEWAY_FAILED",
                          f"Giving up after {self.reconnect_attempts} reconnect attempts",
                          url=self.url, streams=len(self.streams))
                return

            delay_ms = compute_backoff(self.base_delay_ms, self.reconnect_attempts, self.max_delay_ms)
            self.reconnect_attempts += 1
            log_event(logger, logging.INFO, "GATEWAY_RECONNECT_SCHEDULED",
                      f"Reconnecting in {delay_ms:.0f}ms (attempt {self.reconnect_attempts}/{self.max_attempts})",
                      delay_ms=delay_ms, attempt=self.reconnect_attempts)
            await self._wait(delay_ms / 1000)

        self.status = GATEWAY_CLOSED

    async def _consume(self, ws):
        self._ws = ws
        try:
            if self._closed:
                return
            await self._send(ws, "SUBSCRIBE", self.streams)
            self._on_connected()
            async for raw in ws:
                self._handle_message(raw)
            if not self._closed:
                log_event(logger, logging.WARNING, "GATEWAY_DISCONNECTED", "Stream closed by server")
        except ConnectionClosed as e:
            if not self._closed:
                log_event(logger, logging.WARNING, "GATEWAY_DISCONNECTED", f"Connection closed: {e!r}")
        except TRANSPORT_ERRORS as e:
            log_event(logger, logging.WARNING, "GATEWAY_DISCONNECTED", f"Transport error: {e!r}")
        finally:
            self._ws = None
            await self._close_ws(ws)

    def _on_connected(self):
        self.reconnect_attempts = 0
        self.status = GATEWAY_CONNECTED
        self.connected_at = datetime.now(timezone.utc)
        log_event(logger, logging.INFO, "GATEWAY_CONNECTED",
                  f"Subscribed to {len(self.streams)} streams", url=self.url)

    async def _send(self, ws, method: str, streams: list[str]):
        if not streams:
            return
        await ws.send(json.dumps({"method": method, "params": streams, "id": next(self._request_ids)}))

    async def _close_ws(self, ws):
        try:
            await ws.close()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Ignoring error while closing websocket: {e!r}")

    async def _wait(self, seconds: float):
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass  # backoff elapsed

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _handle_message(self, raw):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
            self.malformed_messages += 1
            log_event(logger, logging.WARNING, "MALFORMED_MESSAGE", f"Unparsable message dropped: {e}",
                      raw=str(raw)[:500])
            return

        self.last_message_at = datetime.now(timezone.utc)
        self.messages_received += 1

        try:
            event = decode_event(payload)
        except MalformedEventError as e:
            self.malformed_messages += 1
            log_event(logger, logging.WARNING, "MALFORMED_MESSAGE", str(e), raw=str(raw)[:500])
            return

        if event is None:
            return
        try:
            self._on_event(event)
        except Exception as e:
            log_event(logger, logging.ERROR, "EVENT_DISPATCH_FAILED",
                      f"Dispatch of {type(event).__name__} for {event.symbol} failed: {e!r}")

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def subscribe(self, streams: list[str]):
        new = [s for s in streams if s not in self.streams]
        self.streams.extend(new)
        if self._ws is not None and new:
            await self._send(self._ws, "SUBSCRIBE", new)

    async def unsubscribe(self, streams: list[str]):
        gone = [s for s in streams if s in self.streams]
        self.streams = [s for s in self.streams if s not in gone]
        if self._ws is not None and gone:
            await self._send(self._ws, "UNSUBSCRIBE", gone)

    def force_reconnect(self):
        """Drop the current connection; the run loop reconnects with backoff."""
        if self._closed or self._ws is None:
            return
        self._spawn(self._ws.close())

    def close(self):
        """Stop the gateway. Idempotent; safe from signal handlers and other threads."""
        if self._closed:
            return
        self._closed = True
        self.status = GATEWAY_CLOSED
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._abort()
        else:
            loop.call_soon_threadsafe(self._abort)

    def _abort(self):
        self._stop_event.set()
        if self._ws is not None:
            self._spawn(self._ws.close())

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def seconds_since_last_message(self, now: datetime | None = None) -> float | None:
        reference = self.last_message_at or self.started_at
        if reference is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - reference).total_seconds()

    def is_stale(self, threshold_seconds: float, now: datetime | None = None) -> bool:
        if self.status == GATEWAY_FAILED:
            return True
        elapsed = self.seconds_since_last_message(now)
        return elapsed is not None and elapsed > threshold_seconds

    def health(self, threshold_seconds: float, now: datetime | None = None) -> dict:
        return {
            "status": self.status,
            "url": self.url,
            "streams": len(self.streams),
            "reconnect_attempts": self.reconnect_attempts,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "seconds_since_last_message": self.seconds_since_last_message(now),
            "messages_received": self.messages_received,
            "malformed_messages": self.malformed_messages,
            "stale": self.is_stale(threshold_seconds, now),
        }
