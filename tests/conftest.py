"""Shared fakes and helpers for the runtime tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from milky_runtime.types import ReconnectConfig, RuntimeConfig

WS_ENDPOINT = "ws://127.0.0.1:3000"
HTTP_ENDPOINT = "http://127.0.0.1:3000"
ACCESS_TOKEN = "milky_test_token"


def stream_config(**overrides: Any) -> RuntimeConfig:
    """Stream config with fast backoff so reconnect tests stay quick."""
    options: dict[str, Any] = {
        "transport": "stream",
        "ws_endpoint": WS_ENDPOINT,
        "access_token": ACCESS_TOKEN,
        "call_timeout_ms": 2000,
        "close_timeout_ms": 200,
        "reconnect": ReconnectConfig(max_retries=2, initial_delay_ms=1, max_delay_ms=5),
    }
    options.update(overrides)
    return RuntimeConfig(**options)


def push_config(**overrides: Any) -> RuntimeConfig:
    options: dict[str, Any] = {
        "transport": "push",
        "http_endpoint": HTTP_ENDPOINT,
        "access_token": ACCESS_TOKEN,
        "listen_port": 0,
        "call_timeout_ms": 2000,
        "close_timeout_ms": 1000,
    }
    options.update(overrides)
    return RuntimeConfig(**options)


def event_envelope(event_type: str = "friend_nudge", **data: Any) -> dict[str, Any]:
    payloads: dict[str, dict[str, Any]] = {
        "friend_nudge": {"user_id": 10001, "is_self_send": False, "is_self_receive": True},
        "group_mute": {"group_id": 20001, "user_id": 10001, "duration": 60},
    }
    payload = {**payloads.get(event_type, {}), **data}
    return {"time": 1718000000, "self_id": 99999, "event_type": event_type, "data": payload}


def ok_response(echo: str, data: Any = None) -> dict[str, Any]:
    return {"status": "ok", "retcode": 0, "data": data, "message": None, "echo": echo}


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it holds or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeWebSocket:
    """In-memory stand-in for a ``websockets`` client connection."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def recv(self) -> str | bytes:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(ConnectionClosedOK(None, None))

    def feed(self, frame: dict[str, Any] | str | bytes) -> None:
        self.incoming.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def drop(self) -> None:
        """Simulate the peer vanishing."""
        self.closed = True
        self.incoming.put_nowait(ConnectionClosedError(None, None))

    def sent_requests(self) -> list[dict[str, Any]]:
        frames = [json.loads(s) for s in self.sent]
        return [f for f in frames if "action" in f]


class AutoReplyWebSocket(FakeWebSocket):
    """Answers every API request with ``replies[action]``."""

    def __init__(self, replies: dict[str, Any]) -> None:
        super().__init__()
        self.replies = replies

    async def send(self, data: str) -> None:
        await super().send(data)
        frame = json.loads(data)
        if "action" in frame:
            reply = self.replies.get(frame["action"])
            if isinstance(reply, dict) and "retcode" in reply:
                self.feed({**reply, "echo": frame["echo"]})
            else:
                self.feed(ok_response(frame["echo"], reply))


class FakeConnector:
    """Hands out prepared sockets (or raises prepared errors) in order.

    An ``asyncio.Event`` in the script makes the next connect wait for it.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.urls: list[str] = []

    async def __call__(self, url: str) -> Any:
        self.urls.append(url)
        item = self.script.pop(0) if self.script else OSError("connection refused")
        if isinstance(item, asyncio.Event):
            await item.wait()
            item = self.script.pop(0) if self.script else OSError("connection refused")
        if isinstance(item, BaseException):
            raise item
        return item
