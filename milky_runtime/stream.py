"""
Stream driver: events over one persistent WebSocket.

The driver keeps the connection alive with heartbeats, reconnects with
exponential backoff when it drops, and routes every decoded frame either
to the dispatch channel (events) or to the correlator (responses).

API calls are posted to the HTTP API, whose base URL is ``http_endpoint``
or is derived from ``ws_endpoint``. With ``api_over_socket`` they are
written to the event socket instead. Either way a call in flight when the
socket drops fails with TransportClosedError.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from milky_runtime.channel import DispatchChannel
from milky_runtime.correlator import Correlator
from milky_runtime.decoder import EventFrame, ResponseFrame, decode
from milky_runtime.errors import (
    ChannelClosedError,
    ConfigError,
    ConnectFailedError,
    DecodeError,
    TransportNotReadyError,
)
from milky_runtime.http_client import ApiHttpClient
from milky_runtime.transport import send_over_http, transition
from milky_runtime.types import ApiRequest, RuntimeConfig, TransportSession, TransportState

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
TerminalHandler = Callable[[BaseException], Awaitable[None]]


def build_event_url(ws_endpoint: str, access_token: str | None = None) -> str:
    """Return the event socket URL for a ``ws://`` / ``wss://`` endpoint."""
    parts = urlsplit(ws_endpoint)
    path = parts.path.rstrip("/")
    if not path.endswith("/event"):
        path = f"{path}/event"
    query = parts.query
    if access_token:
        extra = urlencode({"access_token": access_token})
        query = f"{query}&{extra}" if query else extra
    return urlunsplit((parts.scheme, parts.netloc, path, query, ""))


def _redact(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class StreamDriver:
    """Persistent duplex transport.

    States: ``idle -> connecting -> open -> closing -> closed`` with
    ``reconnecting`` reachable from ``connecting`` and ``open``.
    """

    name = "stream"

    def __init__(
        self,
        config: RuntimeConfig,
        channel: DispatchChannel,
        correlator: Correlator,
        *,
        connect: Connector | None = None,
        on_terminal: TerminalHandler | None = None,
        http: ApiHttpClient | None = None,
    ) -> None:
        if not config.ws_endpoint:
            raise ConfigError("ws_endpoint is required for the stream transport")
        self._config = config
        self._channel = channel
        self._correlator = correlator
        self._connect = connect or websockets.connect
        self._on_terminal = on_terminal
        self._url = build_event_url(config.ws_endpoint, config.access_token)

        # API calls go over HTTP unless configured onto the event socket.
        self._owns_http = False
        self._http: ApiHttpClient | None = None
        if not config.api_over_socket:
            self._owns_http = http is None
            self._http = http or ApiHttpClient(
                config.api_base_url(),
                config.access_token,
                timeout=config.call_timeout_ms / 1000.0,
            )

        self._session = TransportSession()
        self._ws: Any | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[int] | None = None
        self._stopping = False

    @property
    def session(self) -> TransportSession:
        return self._session

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Connect, retrying with backoff. Raises ConnectFailedError when out of retries."""
        self._stopping = False
        self._session.attempts = 0
        self._session.last_error = None
        transition(self._session, TransportState.CONNECTING, self.name)
        logger.info("Connecting event stream: %s", _redact(self._url))
        ws = await self._establish()
        self._opened(ws)
        self._run_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the connection gracefully, bounded by ``close_timeout_ms``."""
        if self._session.state in (TransportState.IDLE, TransportState.CLOSED):
            transition(self._session, TransportState.CLOSED, self.name)
            await self._close_http()
            return
        self._stopping = True
        transition(self._session, TransportState.CLOSING, self.name)
        await self._stop_heartbeat()
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await asyncio.wait_for(ws.close(), timeout=self._config.close_timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for the stream close handshake")
            except Exception as e:
                logger.warning("Error closing event stream: %s", e)

        if self._run_task and not self._run_task.done():
            self._run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task
        self._run_task = None
        await self._close_http()
        transition(self._session, TransportState.CLOSED, self.name)
        logger.info("Event stream closed")

    async def _close_http(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.close()

    async def _establish(self) -> Any:
        reconnect = self._config.reconnect
        attempt = 0
        while True:
            try:
                return await self._connect(self._url)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._session.last_error = str(e) or type(e).__name__
                if self._stopping or attempt >= reconnect.max_retries:
                    transition(self._session, TransportState.CLOSED, self.name)
                    raise ConnectFailedError(
                        f"Could not connect to {_redact(self._url)} after "
                        f"{attempt + 1} attempt(s): {self._session.last_error}"
                    ) from e
                delay = reconnect.delay_for(attempt)
                attempt += 1
                self._session.attempts = attempt
                transition(self._session, TransportState.RECONNECTING, self.name)
                logger.warning(
                    "Stream connection failed (attempt %d/%d); retrying in %.1fs",
                    attempt, reconnect.max_retries + 1, delay,
                )
                await asyncio.sleep(delay)

    def _opened(self, ws: Any) -> None:
        self._ws = ws
        self._session.attempts = 0
        transition(self._session, TransportState.OPEN, self.name)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        self._flush_task = asyncio.create_task(self._correlator.flush())
        logger.info("Event stream open")

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # -- Receive loop -----------------------------------------------------------

    async def _run(self) -> None:
        while True:
            ws = self._ws
            if ws is None:
                return
            reason = await self._receive_loop(ws)
            if self._stopping:
                return

            await self._stop_heartbeat()
            self._ws = None
            failed = self._correlator.fail_in_flight(f"Stream connection lost: {reason}")
            self._session.last_error = reason
            transition(self._session, TransportState.RECONNECTING, self.name)
            logger.warning(
                "Stream connection lost (%s); %d in-flight call(s) failed, reconnecting",
                reason, failed,
            )
            with contextlib.suppress(Exception):
                await asyncio.wait_for(ws.close(), timeout=self._config.close_timeout_ms / 1000.0)

            try:
                new_ws = await self._establish()
            except ConnectFailedError as e:
                logger.error("Giving up on the event stream: %s", e)
                if self._on_terminal is not None:
                    await self._on_terminal(e)
                return
            if self._stopping:
                with contextlib.suppress(Exception):
                    await new_ws.close()
                return
            self._opened(new_ws)

    async def _receive_loop(self, ws: Any) -> str:
        """Pump frames until the connection ends. Returns the reason it ended."""
        liveness = self._config.liveness_timeout_ms / 1000.0
        while True:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=liveness)
            except asyncio.TimeoutError:
                return f"no frame within {liveness:.1f}s"
            except ConnectionClosed as e:
                return f"connection closed ({e})"
            except OSError as e:
                return f"I/O error ({e})"
            await self._handle_frame(raw)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = decode(raw)
        except DecodeError as e:
            logger.warning("Dropping undecodable frame: %s", e)
            return

        if isinstance(frame, EventFrame):
            logger.debug("Event %s received", frame.event.event_type)
            try:
                await self._channel.send(frame.event)
            except ChannelClosedError:
                logger.debug("Dispatch channel closed; dropping %s event", frame.event.event_type)
        elif isinstance(frame, ResponseFrame):
            self._correlator.resolve(frame)
        else:
            logger.debug("Control frame received: %s", frame.kind)

    async def _heartbeat_loop(self, ws: Any) -> None:
        """Send periodic keep-alive frames while the connection is open."""
        interval = self._config.heartbeat_interval_ms / 1000.0
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await ws.send(
                        json.dumps(
                            {
                                "type": "heartbeat",
                                "timestamp": datetime.now(timezone.utc).isoformat(),
                            }
                        )
                    )
                except Exception:
                    logger.debug("Heartbeat failed; will retry next interval")
        except asyncio.CancelledError:
            pass

    # -- Outbound ---------------------------------------------------------------

    async def send_request(self, request: ApiRequest) -> None:
        ws = self._ws
        if ws is None or self._session.state is not TransportState.OPEN:
            raise TransportNotReadyError(f"Stream transport is {self._session.state.value}")
        if self._http is not None:
            await send_over_http(self._http, self._correlator, request)
            return
        try:
            await ws.send(request.model_dump_json())
        except ConnectionClosed as e:
            raise TransportNotReadyError("Stream connection closed while sending") from e
        logger.debug("Sent %s (echo=%s)", request.action, request.echo)
