"""
Tests for request/response correlation.

A list-backed sender stands in for the transport so each test controls
exactly when (and whether) responses arrive.
"""

from __future__ import annotations

import asyncio
import random

import pytest

from milky_runtime.correlator import Correlator
from milky_runtime.decoder import decode
from milky_runtime.errors import (
    ApiError,
    CallTimeoutError,
    TransportClosedError,
    TransportError,
    TransportNotReadyError,
)
from milky_runtime.types import ApiRequest

from conftest import ok_response, wait_until


class RecordingSender:
    def __init__(self) -> None:
        self.requests: list[ApiRequest] = []
        self.ready = True

    async def __call__(self, request: ApiRequest) -> None:
        if not self.ready:
            raise TransportNotReadyError("not yet")
        self.requests.append(request)


def _response(echo: str, data=None):
    return decode(ok_response(echo, data))


# ============================================================
#  Submission and resolution
# ============================================================


@pytest.mark.asyncio
async def test_response_resolves_matching_call() -> None:
    sender = RecordingSender()
    correlator = Correlator(sender)

    call = correlator.submit("get_login_info")
    await wait_until(lambda: call.sent)

    assert sender.requests[0].echo == call.echo
    assert correlator.resolve(_response(call.echo, {"uin": 1, "nickname": "bot"}))
    assert await call == {"uin": 1, "nickname": "bot"}
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_concurrent_calls_resolve_in_any_order() -> None:
    """Each caller gets its own response regardless of arrival order."""
    sender = RecordingSender()
    correlator = Correlator(sender)

    calls = [correlator.submit("get_group_info", {"group_id": n}) for n in range(25)]
    await wait_until(lambda: len(sender.requests) == 25)

    echoes = [c.echo for c in calls]
    assert len(set(echoes)) == 25

    shuffled = list(sender.requests)
    random.shuffle(shuffled)
    for request in shuffled:
        correlator.resolve(_response(request.echo, {"group_id": request.params["group_id"]}))

    results = await asyncio.gather(*calls)
    assert [r["group_id"] for r in results] == list(range(25))
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_failed_response_raises_api_error() -> None:
    correlator = Correlator(RecordingSender())
    call = correlator.submit("get_group_info", {"group_id": 1})

    frame = decode({"status": "failed", "retcode": 1404, "message": "not found", "echo": call.echo})
    correlator.resolve(frame)

    with pytest.raises(ApiError) as exc_info:
        await call
    assert exc_info.value.retcode == 1404
    assert exc_info.value.message == "not found"


@pytest.mark.asyncio
async def test_orphaned_response_is_ignored() -> None:
    correlator = Correlator(RecordingSender())

    assert correlator.resolve(_response("nobody-1")) is False


@pytest.mark.asyncio
async def test_second_response_for_same_echo_is_ignored() -> None:
    correlator = Correlator(RecordingSender())
    call = correlator.submit("get_csrf_token")

    assert correlator.resolve(_response(call.echo, {"csrf_token": "a"}))
    assert not correlator.resolve(_response(call.echo, {"csrf_token": "b"}))
    assert await call == {"csrf_token": "a"}


# ============================================================
#  Timeouts and cancellation
# ============================================================


@pytest.mark.asyncio
async def test_call_times_out_no_earlier_than_deadline() -> None:
    loop = asyncio.get_running_loop()
    correlator = Correlator(RecordingSender())

    started = loop.time()
    call = correlator.submit("get_login_info", timeout=0.5)
    with pytest.raises(CallTimeoutError) as exc_info:
        await call
    elapsed = loop.time() - started

    assert elapsed >= 0.5
    assert exc_info.value.echo == call.echo
    assert not correlator.is_pending(call.echo)
    # A late response is a no-op.
    assert correlator.resolve(_response(call.echo, {})) is False


@pytest.mark.asyncio
async def test_call_timeout_is_a_builtin_timeout() -> None:
    correlator = Correlator(RecordingSender(), default_timeout=0.05)

    with pytest.raises(TimeoutError):
        await correlator.call("get_login_info")


@pytest.mark.asyncio
async def test_cancel_withdraws_call() -> None:
    correlator = Correlator(RecordingSender())
    call = correlator.submit("get_friend_list")

    assert call.cancel()
    assert not correlator.is_pending(call.echo)
    assert correlator.resolve(_response(call.echo, {})) is False
    with pytest.raises(asyncio.CancelledError):
        await call


@pytest.mark.asyncio
async def test_cancelled_caller_discards_entry() -> None:
    correlator = Correlator(RecordingSender())

    task = asyncio.create_task(correlator.call("get_friend_list"))
    await wait_until(lambda: correlator.pending_count == 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert correlator.pending_count == 0


# ============================================================
#  Transport interaction
# ============================================================


@pytest.mark.asyncio
async def test_unsent_calls_wait_for_flush() -> None:
    sender = RecordingSender()
    sender.ready = False
    correlator = Correlator(sender)

    call = correlator.submit("get_login_info")
    await asyncio.sleep(0.01)
    assert not call.sent
    assert correlator.is_pending(call.echo)

    sender.ready = True
    assert await correlator.flush() == 1
    assert call.sent
    assert sender.requests[0].echo == call.echo


@pytest.mark.asyncio
async def test_calls_without_sender_wait_for_bind() -> None:
    correlator = Correlator()
    call = correlator.submit("get_login_info")
    await asyncio.sleep(0.01)

    sender = RecordingSender()
    correlator.bind(sender)
    await correlator.flush()

    assert [r.echo for r in sender.requests] == [call.echo]


@pytest.mark.asyncio
async def test_fail_in_flight_only_fails_sent_calls() -> None:
    sender = RecordingSender()
    correlator = Correlator(sender)

    first = correlator.submit("get_group_list")
    second = correlator.submit("get_friend_list")
    await wait_until(lambda: first.sent and second.sent)
    sender.ready = False
    waiting = correlator.submit("get_login_info")
    await asyncio.sleep(0.01)

    assert correlator.fail_in_flight("connection lost") == 2

    for call in (first, second):
        with pytest.raises(TransportClosedError):
            await call
    assert correlator.is_pending(waiting.echo)


@pytest.mark.asyncio
async def test_close_fails_everything() -> None:
    sender = RecordingSender()
    sender.ready = False
    correlator = Correlator(sender)
    calls = [correlator.submit("get_login_info") for _ in range(3)]

    assert correlator.close("shutting down") == 3

    for call in calls:
        with pytest.raises(TransportClosedError):
            await call
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_sender_failure_fails_the_call() -> None:
    async def broken(request: ApiRequest) -> None:
        raise RuntimeError("socket exploded")

    correlator = Correlator(broken)

    with pytest.raises(TransportError) as exc_info:
        await correlator.call("get_login_info")
    assert "socket exploded" in str(exc_info.value)
