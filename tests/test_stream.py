"""
Tests for the WebSocket stream driver.

A scripted connector hands the driver in-memory sockets, so reconnects,
drops and liveness timeouts can be driven deterministically.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import respx

from milky_runtime.channel import DispatchChannel
from milky_runtime.correlator import Correlator
from milky_runtime.errors import ConnectFailedError, TransportClosedError, TransportNotReadyError
from milky_runtime.http_client import ApiHttpClient
from milky_runtime.stream import StreamDriver, build_event_url
from milky_runtime.types import ApiRequest, TransportState

from conftest import (
    HTTP_ENDPOINT,
    FakeConnector,
    FakeWebSocket,
    event_envelope,
    ok_response,
    stream_config,
    wait_until,
)


def _driver(connector: FakeConnector, capacity: int = 16, on_terminal=None, http=None, **overrides):
    config = stream_config(channel_capacity=capacity, **overrides)
    channel = DispatchChannel(config.channel_capacity)
    correlator = Correlator(default_timeout=config.call_timeout_ms / 1000.0)
    driver = StreamDriver(
        config, channel, correlator, connect=connector, on_terminal=on_terminal, http=http
    )
    correlator.bind(driver.send_request)
    return driver, channel, correlator


# ============================================================
#  URL building
# ============================================================


def test_event_url_appends_path_and_token() -> None:
    url = build_event_url("ws://127.0.0.1:3000", "s3cret")

    assert url == "ws://127.0.0.1:3000/event?access_token=s3cret"


def test_event_url_keeps_existing_path_and_query() -> None:
    url = build_event_url("wss://bot.example.com/milky/?v=1", None)

    assert url == "wss://bot.example.com/milky/event?v=1"


# ============================================================
#  Lifecycle
# ============================================================


@pytest.mark.asyncio
async def test_start_opens_session() -> None:
    ws = FakeWebSocket()
    connector = FakeConnector(ws)
    driver, _, _ = _driver(connector)

    await driver.start()
    try:
        assert driver.session.state is TransportState.OPEN
        assert connector.urls == ["ws://127.0.0.1:3000/event?access_token=milky_test_token"]
    finally:
        await driver.stop()

    assert driver.session.state is TransportState.CLOSED
    assert ws.closed


@pytest.mark.asyncio
async def test_start_retries_then_succeeds() -> None:
    ws = FakeWebSocket()
    connector = FakeConnector(OSError("refused"), OSError("refused"), ws)
    driver, _, _ = _driver(connector)

    await driver.start()
    try:
        assert len(connector.urls) == 3
        assert driver.session.state is TransportState.OPEN
        assert driver.session.attempts == 0
    finally:
        await driver.stop()


@pytest.mark.asyncio
async def test_start_gives_up_after_max_retries() -> None:
    connector = FakeConnector()
    driver, _, _ = _driver(connector)

    with pytest.raises(ConnectFailedError):
        await driver.start()

    # max_retries=2 means one attempt plus two retries.
    assert len(connector.urls) == 3
    assert driver.session.state is TransportState.CLOSED
    assert "refused" in (driver.session.last_error or "")


# ============================================================
#  Inbound frames
# ============================================================


@pytest.mark.asyncio
async def test_events_delivered_in_order_without_duplicates() -> None:
    ws = FakeWebSocket()
    driver, channel, _ = _driver(FakeConnector(ws), capacity=64)
    await driver.start()
    try:
        for n in range(50):
            ws.feed(event_envelope("friend_nudge", user_id=n))
        received = [(await asyncio.wait_for(channel.receive(), 1.0)).data.user_id for _ in range(50)]
    finally:
        await driver.stop()

    assert received == list(range(50))
    assert len(channel) == 0


@pytest.mark.asyncio
async def test_full_channel_suspends_reading() -> None:
    """With capacity 1 the second event waits in the driver, not the channel."""
    ws = FakeWebSocket()
    driver, channel, _ = _driver(FakeConnector(ws), capacity=1)
    await driver.start()
    try:
        ws.feed(event_envelope("friend_nudge", user_id=1))
        ws.feed(event_envelope("friend_nudge", user_id=2))
        ws.feed(event_envelope("friend_nudge", user_id=3))
        await wait_until(lambda: len(channel) == 1)
        await asyncio.sleep(0.05)

        assert len(channel) == 1
        # One frame is held by the suspended driver; the third is unread.
        assert ws.incoming.qsize() == 1

        ids = [(await asyncio.wait_for(channel.receive(), 1.0)).data.user_id for _ in range(3)]
        assert ids == [1, 2, 3]
    finally:
        await driver.stop()


@pytest.mark.asyncio
async def test_undecodable_frames_are_skipped() -> None:
    ws = FakeWebSocket()
    driver, channel, _ = _driver(FakeConnector(ws))
    await driver.start()
    try:
        ws.feed("{not json")
        ws.feed({"time": 1, "self_id": 2, "event_type": "group_mute", "data": {}})
        ws.feed({"type": "heartbeat"})
        ws.feed(event_envelope("friend_nudge", user_id=7))

        event = await asyncio.wait_for(channel.receive(), 1.0)
    finally:
        await driver.stop()

    assert event.data.user_id == 7
    assert driver.session.state is TransportState.CLOSED


@pytest.mark.asyncio
async def test_response_frames_resolve_calls() -> None:
    ws = FakeWebSocket()
    driver, _, correlator = _driver(FakeConnector(ws), api_over_socket=True)
    await driver.start()
    try:
        call = correlator.submit("get_login_info")
        await wait_until(lambda: len(ws.sent_requests()) == 1)
        request = ws.sent_requests()[0]
        assert request == {"action": "get_login_info", "params": {}, "echo": call.echo}

        ws.feed(ok_response(call.echo, {"uin": 99999, "nickname": "bot"}))
        assert await asyncio.wait_for(call, 1.0) == {"uin": 99999, "nickname": "bot"}
    finally:
        await driver.stop()


# ============================================================
#  Drops and reconnects
# ============================================================


@pytest.mark.asyncio
async def test_drop_fails_in_flight_calls_and_reconnects() -> None:
    first, second = FakeWebSocket(), FakeWebSocket()
    connector = FakeConnector(first, second)
    driver, channel, correlator = _driver(connector, api_over_socket=True)
    await driver.start()
    try:
        calls = [correlator.submit("get_friend_list"), correlator.submit("get_group_list")]
        await wait_until(lambda: all(c.sent for c in calls))

        first.drop()
        for call in calls:
            with pytest.raises(TransportClosedError):
                await asyncio.wait_for(call, 1.0)

        await wait_until(lambda: driver.session.state is TransportState.OPEN and len(connector.urls) == 2)
        second.feed(event_envelope("friend_nudge", user_id=5))
        event = await asyncio.wait_for(channel.receive(), 1.0)
        assert event.data.user_id == 5
    finally:
        await driver.stop()


@pytest.mark.asyncio
async def test_calls_made_while_reconnecting_are_sent_after_reconnect() -> None:
    first, second = FakeWebSocket(), FakeWebSocket()
    gate = asyncio.Event()
    driver, _, correlator = _driver(FakeConnector(first, gate, second), api_over_socket=True)
    await driver.start()
    try:
        first.drop()
        await wait_until(lambda: driver.session.state is TransportState.RECONNECTING)

        call = correlator.submit("get_impl_info")
        await asyncio.sleep(0.02)
        assert not call.sent
        assert first.sent_requests() == []

        gate.set()
        await wait_until(lambda: len(second.sent_requests()) == 1)
        assert second.sent_requests()[0]["echo"] == call.echo

        second.feed(ok_response(call.echo, {"impl_name": "lagrange", "impl_version": "1.0"}))
        result = await asyncio.wait_for(call, 1.0)
        assert result["impl_name"] == "lagrange"
    finally:
        await driver.stop()


@pytest.mark.asyncio
async def test_liveness_timeout_forces_reconnect() -> None:
    first, second = FakeWebSocket(), FakeWebSocket()
    # The third connect never completes, so the driver stays put after the second drop.
    connector = FakeConnector(first, second, asyncio.Event())
    driver, _, _ = _driver(connector, liveness_timeout_ms=50)
    await driver.start()
    try:
        await wait_until(lambda: len(connector.urls) >= 2, timeout=2.0)
        assert "no frame" in (driver.session.last_error or "")
    finally:
        await driver.stop()


@pytest.mark.asyncio
async def test_terminal_failure_after_drop_is_reported() -> None:
    reported: list[BaseException] = []

    async def on_terminal(error: BaseException) -> None:
        reported.append(error)

    ws = FakeWebSocket()
    driver, _, _ = _driver(FakeConnector(ws), on_terminal=on_terminal)
    await driver.start()

    ws.drop()
    await wait_until(lambda: bool(reported), timeout=2.0)

    assert isinstance(reported[0], ConnectFailedError)
    assert driver.session.state is TransportState.CLOSED
    await driver.stop()


@pytest.mark.asyncio
async def test_heartbeats_are_sent_while_open() -> None:
    ws = FakeWebSocket()
    driver, _, _ = _driver(FakeConnector(ws), heartbeat_interval_ms=20)
    await driver.start()
    try:
        await wait_until(lambda: len(ws.sent) >= 2)
    finally:
        await driver.stop()

    frames = [json.loads(s) for s in ws.sent]
    assert all(f["type"] == "heartbeat" for f in frames)
    assert "timestamp" in frames[0]


@pytest.mark.asyncio
async def test_send_request_requires_open_session() -> None:
    driver, _, _ = _driver(FakeConnector())

    with pytest.raises(TransportNotReadyError):
        await driver.send_request(ApiRequest(action="get_login_info", echo="x-1"))


# ============================================================
#  API calls over HTTP
# ============================================================


@pytest.mark.asyncio
async def test_calls_go_to_http_api_by_default() -> None:
    """The API base is derived from ws_endpoint; nothing is written to the socket."""
    ws = FakeWebSocket()
    driver, _, correlator = _driver(FakeConnector(ws))
    await driver.start()
    try:
        with respx.mock:
            route = respx.post(f"{HTTP_ENDPOINT}/api/get_login_info").mock(
                return_value=httpx.Response(
                    200, json={"status": "ok", "retcode": 0, "data": {"uin": 1, "nickname": "bot"}}
                )
            )
            data = await asyncio.wait_for(correlator.call("get_login_info"), 1.0)

            assert route.called
    finally:
        await driver.stop()

    assert data == {"uin": 1, "nickname": "bot"}
    assert ws.sent_requests() == []


@pytest.mark.asyncio
async def test_drop_fails_call_waiting_on_http() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_backend(request: httpx.Request) -> httpx.Response:
        started.set()
        await release.wait()
        return httpx.Response(200, json={"status": "ok", "retcode": 0, "data": {}})

    http = ApiHttpClient(HTTP_ENDPOINT, transport=httpx.MockTransport(slow_backend))
    first, second = FakeWebSocket(), FakeWebSocket()
    driver, _, correlator = _driver(FakeConnector(first, second), http=http)
    await driver.start()
    try:
        call = correlator.submit("get_group_list")
        await asyncio.wait_for(started.wait(), 1.0)

        first.drop()
        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(call, 1.0)

        # The late HTTP reply is ignored.
        release.set()
        await wait_until(lambda: driver.session.state is TransportState.OPEN)
        assert correlator.pending_count == 0
    finally:
        await driver.stop()
        await http.close()
