"""
Request/response correlation for outbound API calls.

Every call gets an ``echo`` id and a :class:`PendingCall` entry. The entry
is removed by exactly one of: a matching response, its deadline, caller
cancellation, or transport teardown. All of these go through
:meth:`Correlator._pop`, so a call can never be resolved twice.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Any, Awaitable, Callable, Generator

from milky_runtime.decoder import ResponseFrame
from milky_runtime.errors import (
    ApiError,
    CallTimeoutError,
    TransportClosedError,
    TransportError,
    TransportNotReadyError,
)
from milky_runtime.types import ApiRequest

logger = logging.getLogger(__name__)

# Writes one request to the active transport. Raises TransportNotReadyError
# when the transport cannot write yet.
RequestSender = Callable[[ApiRequest], Awaitable[None]]


class PendingCall:
    """An in-flight API call. Await it for the response ``data``."""

    def __init__(
        self,
        request: ApiRequest,
        future: asyncio.Future[Any],
        submitted_at: float,
        deadline: float,
    ) -> None:
        self.request = request
        self.future = future
        self.submitted_at = submitted_at
        self.deadline = deadline
        self.sent = False
        self._sending = False
        self._timer: asyncio.TimerHandle | None = None
        self._correlator: Correlator | None = None

    @property
    def echo(self) -> str:
        return self.request.echo or ""

    @property
    def action(self) -> str:
        return self.request.action

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        """Withdraw the call. A response arriving later is ignored."""
        if self._correlator is None:
            return False
        return self._correlator.cancel(self.echo)

    def __await__(self) -> Generator[Any, None, Any]:
        return self.future.__await__()

    def __repr__(self) -> str:
        return f"PendingCall(echo={self.echo!r}, action={self.action!r}, sent={self.sent})"


class Correlator:
    """Tracks in-flight calls and matches responses to them by echo."""

    def __init__(
        self,
        sender: RequestSender | None = None,
        default_timeout: float = 30.0,
    ) -> None:
        self._sender = sender
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingCall] = {}
        self._prefix = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._send_tasks: set[asyncio.Task[None]] = set()

    def bind(self, sender: RequestSender | None) -> None:
        """Route future sends through ``sender`` (``None`` to detach)."""
        self._sender = sender

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, echo: str) -> bool:
        return echo in self._pending

    def _next_echo(self) -> str:
        while True:
            echo = f"{self._prefix}-{next(self._counter)}"
            if echo not in self._pending:
                return echo

    # -- Submission -----------------------------------------------------------

    def submit(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> PendingCall:
        """Register a call and start sending it.

        Must be called from a running event loop. The returned
        :class:`PendingCall` resolves with the response ``data`` or raises
        :class:`ApiError`, :class:`CallTimeoutError`,
        :class:`TransportClosedError` or :class:`TransportError`.
        """
        loop = asyncio.get_running_loop()
        timeout = self._default_timeout if timeout is None else timeout
        now = loop.time()
        request = ApiRequest(action=action, params=params or {}, echo=self._next_echo())
        call = PendingCall(request, loop.create_future(), now, now + timeout)
        call._correlator = self
        call._timer = loop.call_at(call.deadline, self._expire, call.echo)
        self._pending[call.echo] = call
        # A caller cancelling its await also withdraws the call.
        call.future.add_done_callback(lambda _f, echo=call.echo: self._discard(echo))
        logger.debug("Submitted %s (echo=%s, timeout=%.3fs)", action, call.echo, timeout)
        self._spawn_send(call)
        return call

    async def call(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Submit a call and wait for its response data."""
        return await self.submit(action, params, timeout)

    def _spawn_send(self, call: PendingCall) -> None:
        task = asyncio.create_task(self._send(call))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send(self, call: PendingCall) -> None:
        if call.echo not in self._pending or call.sent or call._sending:
            return
        if self._sender is None:
            logger.debug("No transport bound; %s (echo=%s) waits", call.action, call.echo)
            return
        call._sending = True
        try:
            await self._sender(call.request)
        except TransportNotReadyError:
            logger.debug("Transport not ready; %s (echo=%s) waits", call.action, call.echo)
            return
        except TransportError as e:
            self._fail(call.echo, e)
            return
        except Exception as e:
            self._fail(call.echo, TransportError(f"Failed to send {call.action}: {e}"))
            return
        finally:
            call._sending = False
        if call.echo in self._pending:
            call.sent = True

    async def flush(self) -> int:
        """Send every pending call that has not been written yet.

        Called by a driver once its session is open again. Returns the
        number of calls re-submitted.
        """
        unsent = [c for c in self._pending.values() if not c.sent]
        for call in unsent:
            await self._send(call)
        if unsent:
            logger.info("Re-submitted %d pending call(s)", len(unsent))
        return len(unsent)

    # -- Resolution -----------------------------------------------------------

    def _pop(self, echo: str) -> PendingCall | None:
        call = self._pending.pop(echo, None)
        if call is not None and call._timer is not None:
            call._timer.cancel()
            call._timer = None
        return call

    def _discard(self, echo: str) -> None:
        self._pop(echo)

    def _fail(self, echo: str, exc: BaseException) -> bool:
        call = self._pop(echo)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_exception(exc)
        return True

    def resolve(self, frame: ResponseFrame) -> bool:
        """Deliver a response frame to its waiter.

        Returns ``False`` for orphaned responses (unknown, timed out or
        cancelled calls), which are otherwise ignored.
        """
        call = self._pop(frame.echo)
        if call is None:
            logger.debug("Ignoring orphaned response (echo=%s)", frame.echo)
            return False
        if call.future.done():
            return False
        if frame.ok:
            call.future.set_result(frame.response.data)
        else:
            call.future.set_exception(
                ApiError(frame.response.message or "Unknown API error", frame.response.retcode)
            )
        return True

    def fail(self, echo: str, exc: BaseException) -> bool:
        """Resolve one call with ``exc``."""
        return self._fail(echo, exc)

    def _expire(self, echo: str) -> None:
        call = self._pending.get(echo)
        if call is None:
            return
        loop = asyncio.get_running_loop()
        remaining = call.deadline - loop.time()
        if remaining > 0:
            call._timer = loop.call_later(remaining, self._expire, echo)
            return
        logger.warning("Call %s timed out (echo=%s)", call.action, echo)
        self._fail(echo, CallTimeoutError(f"{call.action} timed out", echo))

    def cancel(self, echo: str) -> bool:
        """Withdraw a call. Its future is cancelled."""
        call = self._pop(echo)
        if call is None:
            return False
        call.future.cancel()
        return True

    def fail_in_flight(self, reason: str = "Transport dropped") -> int:
        """Fail every call already written to (or being written to) the transport.

        Calls that were never written stay pending for :meth:`flush`.
        """
        echoes = [echo for echo, c in self._pending.items() if c.sent or c._sending]
        for echo in echoes:
            self._fail(echo, TransportClosedError(reason, echo))
        return len(echoes)

    def close(self, reason: str = "Transport closed") -> int:
        """Fail every pending call with :class:`TransportClosedError`."""
        echoes = list(self._pending)
        for echo in echoes:
            self._fail(echo, TransportClosedError(reason, echo))
        for task in list(self._send_tasks):
            task.cancel()
        return len(echoes)
