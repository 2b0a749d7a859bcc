"""
Envelope decoding for frames arriving on either transport.

:func:`decode` is pure: it turns one raw frame into an :class:`EventFrame`,
a :class:`ResponseFrame` or a :class:`ControlFrame`, and raises a
:class:`~milky_runtime.errors.DecodeError` for frames it cannot use.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from milky_runtime.errors import MalformedFrameError, MalformedPayloadError
from milky_runtime.types import (
    ApiResponse,
    Event,
    FriendFileUploadData,
    FriendNudgeData,
    FriendRequestData,
    GroupAdminChangeData,
    GroupEssenceMessageChangeData,
    GroupFileUploadData,
    GroupInvitationRequestData,
    GroupInvitedJoinRequestData,
    GroupJoinRequestData,
    GroupMemberDecreaseData,
    GroupMemberIncreaseData,
    GroupMessageReactionData,
    GroupMuteData,
    GroupNameChangeData,
    GroupNudgeData,
    GroupWholeMuteData,
    IncomingMessage,
    MessageRecallData,
    UnknownEventData,
)

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "message_receive": IncomingMessage,
    "message_recall": MessageRecallData,
    "friend_request": FriendRequestData,
    "group_join_request": GroupJoinRequestData,
    "group_invited_join_request": GroupInvitedJoinRequestData,
    "group_invitation_request": GroupInvitationRequestData,
    "friend_nudge": FriendNudgeData,
    "friend_file_upload": FriendFileUploadData,
    "group_admin_change": GroupAdminChangeData,
    "group_essence_message_change": GroupEssenceMessageChangeData,
    "group_member_increase": GroupMemberIncreaseData,
    "group_member_decrease": GroupMemberDecreaseData,
    "group_name_change": GroupNameChangeData,
    "group_message_reaction": GroupMessageReactionData,
    "group_mute": GroupMuteData,
    "group_whole_mute": GroupWholeMuteData,
    "group_nudge": GroupNudgeData,
    "group_file_upload": GroupFileUploadData,
}


@dataclass(frozen=True)
class EventFrame:
    """A push event."""

    event: Event


@dataclass(frozen=True)
class ResponseFrame:
    """A reply to an API call, successful or not."""

    echo: str
    response: ApiResponse

    @property
    def ok(self) -> bool:
        return self.response.ok


@dataclass(frozen=True)
class ControlFrame:
    """Heartbeats and other frames that only prove the peer is alive."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


Frame = EventFrame | ResponseFrame | ControlFrame


def _load(raw: str | bytes | bytearray | dict[str, Any]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedFrameError(f"Frame is not valid JSON: {e}", raw) from e
    if not isinstance(parsed, dict):
        raise MalformedFrameError("Frame is not a JSON object", raw)
    return parsed


def _short_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def decode_event(envelope: dict[str, Any]) -> Event:
    """Build an :class:`Event` from an envelope carrying ``event_type``."""
    tag = envelope.get("event_type")
    if not isinstance(tag, str) or not tag:
        raise MalformedFrameError("event_type must be a non-empty string", envelope)

    model = EVENT_TYPES.get(tag)
    payload = envelope.get("data")
    try:
        if model is None:
            data: BaseModel = UnknownEventData(raw_tag=tag, raw_payload=payload)
        else:
            data = model.model_validate(payload if payload is not None else {})
        return Event(
            time=envelope.get("time"),
            self_id=envelope.get("self_id"),
            event_type=tag,
            data=data,
        )
    except ValidationError as e:
        raise MalformedPayloadError(tag, envelope, _short_error(e)) from e


def decode(raw: str | bytes | bytearray | dict[str, Any]) -> Frame:
    """Classify and decode one raw frame.

    Raises:
        MalformedFrameError: The frame is not a JSON object or has a
            malformed discriminator.
        MalformedPayloadError: A known event tag is missing required fields.
    """
    envelope = _load(raw)

    if "event_type" in envelope:
        return EventFrame(decode_event(envelope))

    if "echo" in envelope and envelope["echo"] is not None:
        echo = str(envelope["echo"])
        try:
            response = ApiResponse.model_validate({**envelope, "echo": echo})
        except ValidationError as e:
            raise MalformedFrameError(
                f"Malformed response for echo {echo}: {_short_error(e)}", envelope
            ) from e
        return ResponseFrame(echo=echo, response=response)

    kind = envelope.get("type")
    return ControlFrame(kind=str(kind) if kind is not None else "unknown", payload=envelope)
