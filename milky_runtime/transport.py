"""
The contract shared by the stream and push drivers.

The facade only relies on this capability set, never on a concrete
driver class.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from milky_runtime.correlator import Correlator
from milky_runtime.errors import ApiHttpError, DecodeError
from milky_runtime.http_client import ApiHttpClient
from milky_runtime.types import ApiRequest, TransportSession, TransportState

logger = logging.getLogger(__name__)


@runtime_checkable
class EventTransport(Protocol):
    """Produces events into a dispatch channel and accepts outbound calls."""

    @property
    def session(self) -> TransportSession: ...

    async def start(self) -> None:
        """Open the event channel. Raises ConnectFailedError on terminal failure."""
        ...

    async def stop(self) -> None: ...

    async def send_request(self, request: ApiRequest) -> None:
        """Write one API request. Raises TransportNotReadyError if it cannot yet."""
        ...


def transition(session: TransportSession, state: TransportState, name: str) -> None:
    """Move ``session`` to ``state`` and log the change."""
    if session.state is state:
        return
    logger.debug("%s transport: %s -> %s", name, session.state.value, state.value)
    session.state = state


async def send_over_http(http: ApiHttpClient, correlator: Correlator, request: ApiRequest) -> None:
    """Post one call over HTTP and resolve it through ``correlator``.

    A TransportError propagates so the correlator fails the call.
    """
    if request.echo is None:
        raise ValueError("request has no echo")
    try:
        frame = await http.call(request)
    except (ApiHttpError, DecodeError) as e:
        correlator.fail(request.echo, e)
        return
    correlator.resolve(frame)
