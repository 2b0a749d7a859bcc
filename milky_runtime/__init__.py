"""
Milky Runtime SDK for Python.

An async client for Milky protocol backends. Events arrive either over a
persistent WebSocket (``transport="stream"``) or through a local webhook
listener (``transport="push"``); both end up on the same typed event
channel. API calls are correlated with their responses on either
transport.

Example::

    from milky_runtime import MilkyRuntime

    runtime = MilkyRuntime(
        ws_endpoint="ws://127.0.0.1:3000",
        access_token="secret",
    )

    await runtime.connect()
    me = await runtime.system.get_login_info()
    print(f"Logged in as {me.nickname} ({me.uin})")

    async for event in runtime.events:
        if event.event_type == "message_receive":
            await runtime.messages.send_private_message(event.data.sender_id, "Hello!")

    await runtime.disconnect()
"""

from milky_runtime.channel import DispatchChannel
from milky_runtime.client import MilkyRuntime
from milky_runtime.correlator import Correlator, PendingCall
from milky_runtime.decoder import ControlFrame, EventFrame, ResponseFrame, decode
from milky_runtime.errors import (
    ApiError,
    ApiHttpError,
    AuthError,
    CallTimeoutError,
    ChannelClosedError,
    ConfigError,
    ConnectFailedError,
    CorrelationError,
    DecodeError,
    MalformedFrameError,
    MalformedPayloadError,
    MilkyError,
    TransportClosedError,
    TransportError,
)
from milky_runtime.push import PushDriver
from milky_runtime.stream import StreamDriver
from milky_runtime.transport import EventTransport
from milky_runtime.types import (
    ApiRequest,
    ApiResponse,
    Event,
    IncomingMessage,
    ReconnectConfig,
    RuntimeConfig,
    TransportKind,
    TransportSession,
    TransportState,
    UnknownEventData,
)

__all__ = [
    "MilkyRuntime",
    "RuntimeConfig",
    "ReconnectConfig",
    "TransportKind",
    "TransportSession",
    "TransportState",
    "Event",
    "IncomingMessage",
    "UnknownEventData",
    "ApiRequest",
    "ApiResponse",
    "DispatchChannel",
    "Correlator",
    "PendingCall",
    "EventTransport",
    "StreamDriver",
    "PushDriver",
    "decode",
    "EventFrame",
    "ResponseFrame",
    "ControlFrame",
    "MilkyError",
    "ConfigError",
    "DecodeError",
    "MalformedFrameError",
    "MalformedPayloadError",
    "TransportError",
    "ConnectFailedError",
    "ChannelClosedError",
    "AuthError",
    "CorrelationError",
    "CallTimeoutError",
    "TransportClosedError",
    "ApiError",
    "ApiHttpError",
]

__version__ = "0.1.0"
