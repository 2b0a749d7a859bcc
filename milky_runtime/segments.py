"""
Helpers for message segments.

Builders return plain dicts in the wire shape ``{"type": ..., "data": ...}``
ready to pass to :meth:`MessageApi.send_private_message` and friends.

Example::

    from milky_runtime import segments

    await runtime.messages.send_group_message(
        123456,
        [segments.mention(10001), segments.text(" hello")],
    )
"""

from __future__ import annotations

from typing import Any, Iterable

from milky_runtime.types import TextSegment


def _segment(kind: str, **data: Any) -> dict[str, Any]:
    return {"type": kind, "data": {k: v for k, v in data.items() if v is not None}}


def text(content: str) -> dict[str, Any]:
    return _segment("text", text=content)


def mention(user_id: int) -> dict[str, Any]:
    return _segment("mention", user_id=user_id)


def mention_all() -> dict[str, Any]:
    return _segment("mention_all")


def face(face_id: str) -> dict[str, Any]:
    return _segment("face", face_id=face_id)


def reply(message_seq: int) -> dict[str, Any]:
    return _segment("reply", message_seq=message_seq)


def image(uri: str, summary: str | None = None, sub_type: str = "normal") -> dict[str, Any]:
    """Image by URI (``file://``, ``http(s)://`` or ``base64://``)."""
    return _segment("image", uri=uri, summary=summary, sub_type=sub_type)


def record(uri: str) -> dict[str, Any]:
    return _segment("record", uri=uri)


def video(uri: str, thumb_uri: str | None = None) -> dict[str, Any]:
    return _segment("video", uri=uri, thumb_uri=thumb_uri)


def forward_node(user_id: int, sender_name: str, segments: list[dict[str, Any]]) -> dict[str, Any]:
    """One message inside a forwarded bundle."""
    return {"user_id": user_id, "sender_name": sender_name, "segments": segments}


def forward(messages: list[dict[str, Any]]) -> dict[str, Any]:
    return _segment("forward", messages=messages)


def plain_text(segments: Iterable[Any]) -> str:
    """Concatenate the text of every text segment, in order."""
    return "".join(s.data.text for s in segments if isinstance(s, TextSegment))
