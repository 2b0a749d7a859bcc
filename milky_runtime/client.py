"""
Milky runtime client.

:class:`MilkyRuntime` composes one transport driver (stream or push), one
dispatch channel and one correlator behind a connect / call / disconnect
lifecycle. It is the only class most applications need.

Usage::

    from milky_runtime import MilkyRuntime

    runtime = MilkyRuntime(ws_endpoint="ws://127.0.0.1:3000", access_token="secret")
    await runtime.connect()

    info = await runtime.system.get_login_info()
    async for event in runtime.events:
        if event.event_type == "message_receive":
            ...

    await runtime.disconnect()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from milky_runtime.channel import DispatchChannel
from milky_runtime.correlator import Correlator, PendingCall
from milky_runtime.errors import ConfigError, ConnectFailedError, TransportClosedError
from milky_runtime.events import EventHandler, EventManager
from milky_runtime.http_client import ApiHttpClient
from milky_runtime.push import PushDriver
from milky_runtime.segments import text as text_segment
from milky_runtime.stream import Connector, StreamDriver
from milky_runtime.transport import EventTransport
from milky_runtime.types import (
    Event,
    Friend,
    Group,
    GroupAnnouncement,
    GroupFile,
    GroupFolder,
    GroupMember,
    ImplInfo,
    IncomingMessage,
    LoginInfo,
    RuntimeConfig,
    SendMessageResult,
    TransportKind,
    TransportSession,
    TransportState,
)

logger = logging.getLogger(__name__)

Caller = Callable[..., Awaitable[Any]]
MessageContent = str | list[dict[str, Any]]


def _load_config(config: RuntimeConfig | None, options: dict[str, Any]) -> RuntimeConfig:
    try:
        if config is None:
            return RuntimeConfig(**options)
        if options:
            return RuntimeConfig(**{**config.model_dump(), **options})
        return config
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def _as_segments(message: MessageContent) -> list[dict[str, Any]]:
    if isinstance(message, str):
        return [text_segment(message)]
    return list(message)


# ============================================================
#  Endpoint managers
# ============================================================


class _MessageApi:
    """Sending, recalling and fetching messages."""

    def __init__(self, call: Caller) -> None:
        self._call = call

    async def send_private_message(self, user_id: int, message: MessageContent) -> SendMessageResult:
        data = await self._call(
            "send_private_message", {"user_id": user_id, "message": _as_segments(message)}
        )
        return SendMessageResult(**data)

    async def send_group_message(self, group_id: int, message: MessageContent) -> SendMessageResult:
        data = await self._call(
            "send_group_message", {"group_id": group_id, "message": _as_segments(message)}
        )
        return SendMessageResult(**data)

    async def recall_private_message(self, user_id: int, message_seq: int, client_seq: int) -> None:
        await self._call(
            "recall_private_message",
            {"user_id": user_id, "message_seq": message_seq, "client_seq": client_seq},
        )

    async def recall_group_message(self, group_id: int, message_seq: int) -> None:
        await self._call("recall_group_message", {"group_id": group_id, "message_seq": message_seq})

    async def get_message(self, message_scene: str, peer_id: int, message_seq: int) -> IncomingMessage:
        data = await self._call(
            "get_message",
            {"message_scene": message_scene, "peer_id": peer_id, "message_seq": message_seq},
        )
        return IncomingMessage.model_validate(data["message"])

    async def get_history_messages(
        self,
        message_scene: str,
        peer_id: int,
        start_message_seq: int | None = None,
        direction: str = "older",
        limit: int = 20,
    ) -> list[IncomingMessage]:
        """Fetch message history.

        Args:
            message_scene: ``friend``, ``group`` or ``temp``.
            peer_id: Friend QQ number or group id.
            start_message_seq: Start from this sequence (latest if omitted).
            direction: ``older`` or ``newer``.
            limit: Max messages (backend caps this at 30).
        """
        params: dict[str, Any] = {
            "message_scene": message_scene,
            "peer_id": peer_id,
            "direction": direction,
            "limit": limit,
        }
        if start_message_seq is not None:
            params["start_message_seq"] = start_message_seq
        data = await self._call("get_history_messages", params)
        return [IncomingMessage.model_validate(m) for m in data.get("messages", [])]

    async def get_resource_temp_url(self, resource_id: str) -> str:
        data = await self._call("get_resource_temp_url", {"resource_id": resource_id})
        return data["url"]

    async def get_forwarded_messages(self, forward_id: str) -> list[dict[str, Any]]:
        data = await self._call("get_forwarded_messages", {"forward_id": forward_id})
        return data.get("messages", [])


class _FriendApi:
    def __init__(self, call: Caller) -> None:
        self._call = call

    async def get_friend_list(self, no_cache: bool = False) -> list[Friend]:
        data = await self._call("get_friend_list", {"no_cache": no_cache})
        return [Friend(**f) for f in data.get("friends", [])]

    async def get_friend_info(self, user_id: int, no_cache: bool = False) -> Friend:
        data = await self._call("get_friend_info", {"user_id": user_id, "no_cache": no_cache})
        return Friend(**data["friend"])

    async def send_nudge(self, user_id: int, is_self: bool = False) -> None:
        """Nudge a friend, or yourself in their chat when ``is_self`` is set."""
        await self._call("send_friend_nudge", {"user_id": user_id, "is_self": is_self})

    async def send_profile_like(self, user_id: int, count: int = 1) -> None:
        await self._call("send_profile_like", {"user_id": user_id, "count": count})


class _GroupApi:
    """Group administration."""

    def __init__(self, call: Caller) -> None:
        self._call = call

    async def get_group_list(self, no_cache: bool = False) -> list[Group]:
        data = await self._call("get_group_list", {"no_cache": no_cache})
        return [Group(**g) for g in data.get("groups", [])]

    async def get_group_info(self, group_id: int, no_cache: bool = False) -> Group:
        data = await self._call("get_group_info", {"group_id": group_id, "no_cache": no_cache})
        return Group(**data["group"])

    async def get_member_list(self, group_id: int, no_cache: bool = False) -> list[GroupMember]:
        data = await self._call("get_group_member_list", {"group_id": group_id, "no_cache": no_cache})
        return [GroupMember(**m) for m in data.get("members", [])]

    async def get_member_info(self, group_id: int, user_id: int, no_cache: bool = False) -> GroupMember:
        data = await self._call(
            "get_group_member_info",
            {"group_id": group_id, "user_id": user_id, "no_cache": no_cache},
        )
        return GroupMember(**data["member"])

    async def set_name(self, group_id: int, name: str) -> None:
        await self._call("set_group_name", {"group_id": group_id, "name": name})

    async def set_avatar(self, group_id: int, image_uri: str) -> None:
        await self._call("set_group_avatar", {"group_id": group_id, "image_uri": image_uri})

    async def set_member_card(self, group_id: int, user_id: int, card: str) -> None:
        await self._call("set_group_member_card", {"group_id": group_id, "user_id": user_id, "card": card})

    async def set_member_special_title(self, group_id: int, user_id: int, special_title: str) -> None:
        await self._call(
            "set_group_member_special_title",
            {"group_id": group_id, "user_id": user_id, "special_title": special_title},
        )

    async def set_member_admin(self, group_id: int, user_id: int, is_set: bool = True) -> None:
        await self._call(
            "set_group_member_admin", {"group_id": group_id, "user_id": user_id, "is_set": is_set}
        )

    async def set_member_mute(self, group_id: int, user_id: int, duration: int = 0) -> None:
        """Mute a member for ``duration`` seconds; 0 lifts the mute."""
        await self._call(
            "set_group_member_mute", {"group_id": group_id, "user_id": user_id, "duration": duration}
        )

    async def set_whole_mute(self, group_id: int, is_mute: bool = True) -> None:
        await self._call("set_group_whole_mute", {"group_id": group_id, "is_mute": is_mute})

    async def kick_member(self, group_id: int, user_id: int, reject_add_request: bool = False) -> None:
        await self._call(
            "kick_group_member",
            {"group_id": group_id, "user_id": user_id, "reject_add_request": reject_add_request},
        )

    async def get_announcements(self, group_id: int) -> list[GroupAnnouncement]:
        data = await self._call("get_group_announcement_list", {"group_id": group_id})
        return [GroupAnnouncement(**a) for a in data.get("announcements", [])]

    async def send_announcement(self, group_id: int, content: str, image_uri: str | None = None) -> None:
        params: dict[str, Any] = {"group_id": group_id, "content": content}
        if image_uri:
            params["image_uri"] = image_uri
        await self._call("send_group_announcement", params)

    async def delete_announcement(self, group_id: int, announcement_id: str) -> None:
        await self._call(
            "delete_group_announcement", {"group_id": group_id, "announcement_id": announcement_id}
        )

    async def quit(self, group_id: int) -> None:
        await self._call("quit_group", {"group_id": group_id})

    async def send_message_reaction(
        self, group_id: int, message_seq: int, reaction: str, is_add: bool = True
    ) -> None:
        await self._call(
            "send_group_message_reaction",
            {"group_id": group_id, "message_seq": message_seq, "reaction": reaction, "is_add": is_add},
        )

    async def send_nudge(self, group_id: int, user_id: int) -> None:
        await self._call("send_group_nudge", {"group_id": group_id, "user_id": user_id})


class _FileApi:
    def __init__(self, call: Caller) -> None:
        self._call = call

    async def upload_private_file(self, user_id: int, file_uri: str, file_name: str) -> str:
        data = await self._call(
            "upload_private_file", {"user_id": user_id, "file_uri": file_uri, "file_name": file_name}
        )
        return data["file_id"]

    async def upload_group_file(
        self,
        group_id: int,
        file_uri: str,
        file_name: str,
        parent_folder_id: str = "/",
    ) -> str:
        data = await self._call(
            "upload_group_file",
            {
                "group_id": group_id,
                "file_uri": file_uri,
                "file_name": file_name,
                "parent_folder_id": parent_folder_id,
            },
        )
        return data["file_id"]

    async def get_private_file_download_url(self, user_id: int, file_id: str) -> str:
        data = await self._call(
            "get_private_file_download_url", {"user_id": user_id, "file_id": file_id}
        )
        return data["download_url"]

    async def get_group_file_download_url(self, group_id: int, file_id: str) -> str:
        data = await self._call("get_group_file_download_url", {"group_id": group_id, "file_id": file_id})
        return data["download_url"]

    async def get_group_files(
        self, group_id: int, parent_folder_id: str | None = None
    ) -> tuple[list[GroupFile], list[GroupFolder]]:
        params: dict[str, Any] = {"group_id": group_id}
        if parent_folder_id is not None:
            params["parent_folder_id"] = parent_folder_id
        data = await self._call("get_group_files", params)
        files = [GroupFile(**f) for f in data.get("files", [])]
        folders = [GroupFolder(**f) for f in data.get("folders", [])]
        return files, folders

    async def move_group_file(
        self, group_id: int, file_id: str, target_folder_id: str | None = None
    ) -> None:
        """Move a group file; without ``target_folder_id`` it goes to the root folder."""
        params: dict[str, Any] = {"group_id": group_id, "file_id": file_id}
        if target_folder_id is not None:
            params["target_folder_id"] = target_folder_id
        await self._call("move_group_file", params)

    async def rename_group_file(self, group_id: int, file_id: str, new_name: str) -> None:
        await self._call(
            "rename_group_file", {"group_id": group_id, "file_id": file_id, "new_name": new_name}
        )

    async def delete_group_file(self, group_id: int, file_id: str) -> None:
        await self._call("delete_group_file", {"group_id": group_id, "file_id": file_id})

    async def create_group_folder(self, group_id: int, folder_name: str) -> str:
        data = await self._call("create_group_folder", {"group_id": group_id, "folder_name": folder_name})
        return data["folder_id"]

    async def rename_group_folder(self, group_id: int, folder_id: str, new_name: str) -> None:
        await self._call(
            "rename_group_folder",
            {"group_id": group_id, "folder_id": folder_id, "new_name": new_name},
        )

    async def delete_group_folder(self, group_id: int, folder_id: str) -> None:
        await self._call("delete_group_folder", {"group_id": group_id, "folder_id": folder_id})


class _RequestApi:
    """Accept or reject friend and group requests."""

    def __init__(self, call: Caller) -> None:
        self._call = call

    async def accept(self, request_id: str) -> None:
        await self._call("accept_request", {"request_id": request_id})

    async def reject(self, request_id: str, reason: str | None = None) -> None:
        params: dict[str, Any] = {"request_id": request_id}
        if reason:
            params["reason"] = reason
        await self._call("reject_request", params)


class _SystemApi:
    def __init__(self, call: Caller) -> None:
        self._call = call

    async def get_login_info(self) -> LoginInfo:
        return LoginInfo(**await self._call("get_login_info"))

    async def get_impl_info(self) -> ImplInfo:
        return ImplInfo(**await self._call("get_impl_info"))

    async def get_user_profile(self, user_id: int) -> dict[str, Any]:
        return await self._call("get_user_profile", {"user_id": user_id})

    async def get_cookies(self, domain: str) -> str:
        data = await self._call("get_cookies", {"domain": domain})
        return data["cookies"]

    async def get_csrf_token(self) -> str:
        data = await self._call("get_csrf_token")
        return data["csrf_token"]


# ============================================================
#  Main Runtime Client
# ============================================================


class MilkyRuntime:
    """
    The Milky runtime client.

    Owns the transport driver selected by ``config.transport``, the
    dispatch channel events are delivered through, and the correlator
    that pairs API calls with their responses.

    Configuration may be passed as a :class:`RuntimeConfig` or as keyword
    options (``ws_endpoint=...``, ``transport="push"``, ...). Invalid
    configuration raises :class:`ConfigError` here, never later.
    """

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        *,
        connector: Connector | None = None,
        http: ApiHttpClient | None = None,
        **options: Any,
    ) -> None:
        self._config = _load_config(config, options)
        self._connector = connector
        self._http = http

        self._channel = DispatchChannel(self._config.channel_capacity)
        self._correlator = Correlator(default_timeout=self._config.call_timeout_ms / 1000.0)
        self._events = EventManager()
        self._transport: EventTransport | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._terminal_error: BaseException | None = None

        # Endpoint managers
        self.messages = _MessageApi(self.call)
        self.friends = _FriendApi(self.call)
        self.groups = _GroupApi(self.call)
        self.files = _FileApi(self.call)
        self.requests = _RequestApi(self.call)
        self.system = _SystemApi(self.call)

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def session(self) -> TransportSession:
        """Snapshot of the transport state."""
        if self._transport is None:
            return TransportSession()
        return self._transport.session.model_copy()

    @property
    def is_connected(self) -> bool:
        return self.session.state is TransportState.OPEN

    @property
    def events(self) -> DispatchChannel:
        """The dispatch channel for the current lifecycle (async iterable)."""
        return self._channel

    @property
    def transport(self) -> EventTransport | None:
        return self._transport

    @property
    def terminal_error(self) -> BaseException | None:
        """Why the transport gave up, if it did."""
        return self._terminal_error

    # -- Lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        """
        Start the event transport.

        Idempotent while connecting or connected; concurrent callers wait
        on the same attempt. After :meth:`disconnect` (or a terminal
        transport failure) it starts a fresh lifecycle with a new channel.

        Raises:
            ConnectFailedError: The transport could not be established.
        """
        if self._connect_task is not None and not self._connect_task.done():
            await asyncio.shield(self._connect_task)
            return
        state = self.session.state
        if state in (TransportState.OPEN, TransportState.RECONNECTING, TransportState.CONNECTING):
            return
        self._connect_task = asyncio.create_task(self._start_lifecycle())
        await asyncio.shield(self._connect_task)

    async def _start_lifecycle(self) -> None:
        if self._channel.closed:
            self._channel = DispatchChannel(self._config.channel_capacity)
        self._terminal_error = None
        transport = self._build_transport()
        self._transport = transport
        self._correlator.bind(transport.send_request)
        try:
            await transport.start()
        except ConnectFailedError as e:
            self._terminal_error = e
            self._correlator.bind(None)
            self._correlator.close(f"Connect failed: {e}")
            raise
        logger.info("Connected to Milky backend via %s transport", self._config.transport.value)

    def _build_transport(self) -> EventTransport:
        if self._config.transport is TransportKind.STREAM:
            return StreamDriver(
                self._config,
                self._channel,
                self._correlator,
                connect=self._connector,
                on_terminal=self._on_terminal,
                http=self._http,
            )
        return PushDriver(self._config, self._channel, self._correlator, http=self._http)

    async def _on_terminal(self, error: BaseException) -> None:
        self._terminal_error = error
        self._correlator.bind(None)
        failed = self._correlator.close(f"Transport closed: {error}")
        await self._channel.close()
        logger.error("Event transport closed permanently (%d pending call(s) failed)", failed)

    async def disconnect(self) -> None:
        """Close the channel, fail pending calls and stop the transport."""
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectFailedError):
                await self._connect_task
        self._connect_task = None

        await self._channel.close()
        failed = self._correlator.close("Client disconnected")
        self._correlator.bind(None)
        if failed:
            logger.info("Cancelled %d pending call(s) on disconnect", failed)

        if self._transport is not None:
            await self._transport.stop()
        logger.info("Disconnected from Milky backend")

    async def __aenter__(self) -> MilkyRuntime:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # -- Calls ----------------------------------------------------------------

    def submit(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> PendingCall:
        """Submit an API call without waiting. Await the result to get ``data``."""
        if self.session.state is TransportState.CLOSED:
            raise TransportClosedError("Client is not connected")
        return self._correlator.submit(action, params, timeout)

    async def call(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Call an API action and return its response ``data``.

        Args:
            action: Action name, e.g. ``send_group_message``.
            params: JSON-serialisable parameters.
            timeout: Seconds to wait (default ``call_timeout_ms``).

        Raises:
            ApiError: The backend reported a failure.
            ApiHttpError: The HTTP API returned an error status (push mode).
            CallTimeoutError: No response in time.
            TransportClosedError: The transport went away first.
        """
        return await self.submit(action, params, timeout)

    # -- Events ---------------------------------------------------------------

    async def next_event(self) -> Event:
        """Wait for the next event. Raises ChannelClosedError after shutdown."""
        return await self._channel.receive()

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to a specific event type (used by :meth:`listen`)."""
        self._events.subscribe(event_type, handler)

    def on_any(self, handler: EventHandler) -> None:
        """Subscribe to every event (used by :meth:`listen`)."""
        self._events.subscribe_all(handler)

    def off(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Unsubscribe from an event type."""
        self._events.unsubscribe(event_type, handler)

    async def listen(self) -> None:
        """Connect if needed and dispatch events to handlers until shutdown.

        Returns once the channel is closed and drained (after
        :meth:`disconnect` or a terminal transport failure).
        """
        await self.connect()
        logger.info("Listening for events...")
        try:
            await self._events.run(self._channel)
        except asyncio.CancelledError:
            pass
        finally:
            await self.disconnect()
