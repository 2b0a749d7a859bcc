"""
Push driver: the backend POSTs events to a local HTTP listener.

Events arrive through a small Starlette app served in-process by uvicorn.
API calls go out over plain HTTP through :class:`ApiHttpClient`; their
responses are decoded and routed through the correlator like any other
response frame.

Unlike the stream driver, the delivery handler never waits indefinitely
on a full dispatch channel: it waits ``push_enqueue_timeout_ms`` at most,
then drops the event and answers 503 so the backend can redeliver.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import logging
import socket
from collections import OrderedDict
from typing import Iterator

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from milky_runtime.channel import DispatchChannel
from milky_runtime.correlator import Correlator
from milky_runtime.decoder import EventFrame, decode
from milky_runtime.errors import (
    AuthError,
    ChannelClosedError,
    ConnectFailedError,
    DecodeError,
    TransportNotReadyError,
)
from milky_runtime.http_client import ApiHttpClient
from milky_runtime.transport import send_over_http, transition
from milky_runtime.types import ApiRequest, RuntimeConfig, TransportSession, TransportState

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host application."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class DeliveryLedger:
    """Bounded memory of recently accepted deliveries, oldest evicted first."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._seen: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: str) -> None:
        if self._size <= 0:
            return
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self._size:
            self._seen.popitem(last=False)

    def discard(self, key: str) -> None:
        self._seen.pop(key, None)


class PushDriver:
    """Inbound HTTP delivery transport with an outbound HTTP call path."""

    name = "push"

    def __init__(
        self,
        config: RuntimeConfig,
        channel: DispatchChannel,
        correlator: Correlator,
        *,
        http: ApiHttpClient | None = None,
    ) -> None:
        self._config = config
        self._channel = channel
        self._correlator = correlator
        self._owns_http = http is None
        self._http = http or ApiHttpClient(
            config.api_base_url(),
            config.access_token,
            timeout=config.call_timeout_ms / 1000.0,
        )
        self._session = TransportSession()
        self._ledger = DeliveryLedger(config.push_dedup_window)
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._flush_task: asyncio.Task[int] | None = None
        self.app = Starlette(
            routes=[Route(config.webhook_path, self._handle_delivery, methods=["POST"])],
        )

    @property
    def session(self) -> TransportSession:
        return self._session

    @property
    def bound_port(self) -> int | None:
        """Port the listener is bound to (useful with ``listen_port=0``)."""
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Bind the listener and serve deliveries in the background."""
        transition(self._session, TransportState.CONNECTING, self.name)
        host, port = self._config.listen_host, self._config.listen_port
        try:
            sock = socket.socket(socket.AF_INET6 if ":" in host else socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
        except OSError as e:
            self._session.last_error = str(e)
            transition(self._session, TransportState.CLOSED, self.name)
            raise ConnectFailedError(f"Could not bind push listener on {host}:{port}: {e}") from e
        self._socket = sock

        server_config = uvicorn.Config(self.app, log_level="warning", lifespan="off")
        self._server = _EmbeddedServer(server_config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(self._config.close_timeout_ms / 1000.0, 1.0)
        while not self._server.started:
            if self._serve_task.done() or loop.time() > deadline:
                finished = self._serve_task.done() and not self._serve_task.cancelled()
                error = self._serve_task.exception() if finished else "timed out"
                await self._abort_start()
                raise ConnectFailedError(f"Push listener failed to start: {error}")
            await asyncio.sleep(0.01)

        transition(self._session, TransportState.OPEN, self.name)
        logger.info(
            "Push listener on http://%s:%s%s", host, self.bound_port, self._config.webhook_path
        )
        self._flush_task = asyncio.create_task(self._correlator.flush())

    async def stop(self) -> None:
        """Stop the listener and close the outbound HTTP client."""
        if self._session.state is TransportState.CLOSED:
            if self._owns_http:
                await self._http.close()
            return
        transition(self._session, TransportState.CLOSING, self.name)
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        if self._server is not None and self._serve_task is not None:
            self._server.should_exit = True
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._serve_task),
                    timeout=self._config.close_timeout_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                logger.warning("Push listener did not stop in time; forcing exit")
                self._server.force_exit = True
                self._serve_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._serve_task
        self._server = None
        self._serve_task = None
        await self._release_socket()
        if self._owns_http:
            await self._http.close()
        transition(self._session, TransportState.CLOSED, self.name)
        logger.info("Push listener stopped")

    async def _abort_start(self) -> None:
        if self._server is not None:
            self._server.force_exit = True
            self._server.should_exit = True
        if self._serve_task is not None and not self._serve_task.done():
            self._serve_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._serve_task
        self._server = None
        self._serve_task = None
        await self._release_socket()
        transition(self._session, TransportState.CLOSED, self.name)

    async def _release_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    # -- Inbound --------------------------------------------------------------

    def _authenticate(self, request: Request) -> None:
        token = self._config.access_token
        if not token:
            return
        scheme, _, supplied = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(
            supplied.strip().encode(), token.encode()
        ):
            raise AuthError("Missing or invalid bearer token")

    async def _handle_delivery(self, request: Request) -> Response:
        try:
            self._authenticate(request)
        except AuthError as e:
            client = request.client.host if request.client else "unknown"
            logger.warning("Rejected delivery from %s: %s", client, e)
            return JSONResponse({"status": "failed", "message": "unauthorized"}, status_code=401)

        body = await request.body()
        try:
            frame = decode(body)
        except DecodeError as e:
            logger.warning("Rejected malformed delivery: %s", e)
            return JSONResponse({"status": "failed", "message": "malformed payload"}, status_code=400)

        if not isinstance(frame, EventFrame):
            logger.debug("Ignoring non-event delivery (%s)", type(frame).__name__)
            return JSONResponse({"status": "ok"})

        fingerprint = hashlib.sha256(body).hexdigest()
        if fingerprint in self._ledger:
            logger.warning("Duplicate delivery of %s event ignored", frame.event.event_type)
            return JSONResponse({"status": "ok"})
        # Claim the fingerprint first so a concurrent redelivery is not enqueued twice.
        self._ledger.add(fingerprint)

        try:
            accepted = await self._channel.offer(
                frame.event, timeout=self._config.push_enqueue_timeout_ms / 1000.0
            )
        except ChannelClosedError:
            self._ledger.discard(fingerprint)
            logger.warning("Dispatch channel closed; dropping %s event", frame.event.event_type)
            return JSONResponse({"status": "failed", "message": "closed"}, status_code=503)

        if not accepted:
            self._ledger.discard(fingerprint)
            logger.warning(
                "Dispatch channel at capacity (%d); dropping %s event",
                self._channel.capacity, frame.event.event_type,
            )
            return JSONResponse(
                {"status": "failed", "message": "capacity exceeded"},
                status_code=503,
                headers={"Retry-After": "1"},
            )
        return JSONResponse({"status": "ok"})

    # -- Outbound -------------------------------------------------------------

    async def send_request(self, request: ApiRequest) -> None:
        if self._session.state not in (TransportState.CONNECTING, TransportState.OPEN):
            raise TransportNotReadyError(f"Push transport is {self._session.state.value}")
        await send_over_http(self._http, self._correlator, request)
