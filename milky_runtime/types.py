"""
Pydantic models for the Milky runtime.

Wire payloads use snake_case already, so most models map one-to-one onto
the JSON the backend sends. Event payloads and message segments are
closed unions with an explicit ``Unknown`` fallback so newer backends
never break decoding.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlsplit, urlunsplit

from pydantic import (
    AliasChoices,
    BaseModel,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)


# ============================================================
#  Configuration
# ============================================================


class TransportKind(str, Enum):
    """How events reach the client."""

    STREAM = "stream"
    PUSH = "push"


class ReconnectConfig(BaseModel):
    """WebSocket reconnection settings."""

    max_retries: int = Field(10, ge=0)
    initial_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(30000, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay in seconds before retry number ``attempt`` (0-based)."""
        delay_ms = min(self.initial_delay_ms * (2 ** attempt), self.max_delay_ms)
        return delay_ms / 1000.0


class RuntimeConfig(BaseModel):
    """Configuration for connecting to a Milky backend."""

    transport: TransportKind = TransportKind.STREAM
    ws_endpoint: str | None = None
    http_endpoint: str | None = None
    access_token: str | None = None

    # Push listener
    listen_host: str = "127.0.0.1"
    listen_port: int = Field(8080, ge=0, le=65535)
    webhook_path: str = "/webhook"

    channel_capacity: int = Field(256, ge=1)
    call_timeout_ms: int = Field(30000, gt=0)
    heartbeat_interval_ms: int = Field(30000, gt=0)
    liveness_timeout_ms: int = Field(90000, gt=0)
    close_timeout_ms: int = Field(5000, ge=0)
    push_enqueue_timeout_ms: int = Field(500, ge=0)
    push_dedup_window: int = Field(0, ge=0)
    # Stream mode only: carry API calls on the event socket instead of HTTP.
    api_over_socket: bool = False
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @field_validator("webhook_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("webhook_path must start with '/'")
        return value

    @model_validator(mode="after")
    def _check_endpoints(self) -> RuntimeConfig:
        if self.transport is TransportKind.STREAM:
            if not self.ws_endpoint:
                raise ValueError("ws_endpoint is required for the stream transport")
            if not self.ws_endpoint.startswith(("ws://", "wss://")):
                raise ValueError(f"Unsupported scheme in ws_endpoint: {self.ws_endpoint}")
        elif not self.http_endpoint:
            raise ValueError("http_endpoint is required for the push transport")
        if self.http_endpoint and not self.http_endpoint.startswith(("http://", "https://")):
            raise ValueError(f"Unsupported scheme in http_endpoint: {self.http_endpoint}")
        return self

    def api_base_url(self) -> str:
        """Base URL for HTTP API calls.

        ``http_endpoint`` when set, otherwise derived from ``ws_endpoint``
        (``ws`` -> ``http``, ``wss`` -> ``https``, path dropped).
        """
        if self.http_endpoint:
            return self.http_endpoint.rstrip("/")
        if not self.ws_endpoint:
            raise ValueError("No endpoint to derive the API base URL from")
        parts = urlsplit(self.ws_endpoint)
        scheme = "https" if parts.scheme == "wss" else "http"
        return urlunsplit((scheme, parts.netloc, "", "", ""))


# ============================================================
#  Transport session
# ============================================================


class TransportState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


class TransportSession(BaseModel):
    """Connection and liveness state of a transport driver."""

    state: TransportState = TransportState.IDLE
    attempts: int = 0
    last_error: str | None = None


# ============================================================
#  API envelopes
# ============================================================


class ApiRequest(BaseModel):
    """An outbound API call."""

    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    echo: str | None = None


class ApiResponse(BaseModel):
    """The backend's reply to an API call."""

    status: str
    retcode: int
    data: Any = None
    message: str | None = None
    echo: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and self.retcode == 0


# ============================================================
#  Entities
# ============================================================


class FriendCategory(BaseModel):
    category_id: int
    category_name: str


class Friend(BaseModel):
    user_id: int
    qid: str | None = None
    nickname: str
    remark: str = ""
    category: FriendCategory | None = None


class Group(BaseModel):
    group_id: int
    name: str
    member_count: int = 0
    max_member_count: int = 0


class GroupMember(BaseModel):
    group_id: int
    user_id: int
    nickname: str
    card: str = ""
    title: str | None = None
    sex: str = "unknown"
    level: int = 0
    role: str = "member"
    join_time: int = 0
    last_sent_time: int = 0


class GroupAnnouncement(BaseModel):
    group_id: int
    announcement_id: str
    user_id: int
    time: int
    content: str
    image_url: str | None = None


class GroupFile(BaseModel):
    group_id: int
    file_id: str
    file_name: str
    parent_folder_id: str | None = None
    file_size: int
    uploaded_time: int
    expire_time: int = 0
    uploader_id: int
    downloaded_times: int = 0


class GroupFolder(BaseModel):
    group_id: int
    folder_id: str
    parent_folder_id: str | None = None
    folder_name: str
    created_time: int
    last_modified_time: int
    creator_id: int
    file_count: int = 0


class LoginInfo(BaseModel):
    uin: int
    nickname: str


class ImplInfo(BaseModel):
    impl_name: str
    impl_version: str
    qq_protocol_version: str = ""
    qq_protocol_type: str = ""
    milky_version: str = ""


class SendMessageResult(BaseModel):
    message_seq: int
    time: int
    client_seq: int | None = None


# ============================================================
#  Message segments
# ============================================================


class TextData(BaseModel):
    text: str


class MentionData(BaseModel):
    user_id: int


class FaceData(BaseModel):
    face_id: str


class ReplyData(BaseModel):
    message_seq: int


class ImageData(BaseModel):
    resource_id: str
    temp_url: str
    summary: str | None = None
    sub_type: str = "normal"


class RecordData(BaseModel):
    resource_id: str
    temp_url: str
    duration: int = 0


class VideoData(BaseModel):
    resource_id: str
    temp_url: str


class ForwardData(BaseModel):
    forward_id: str


class MarketFaceData(BaseModel):
    url: str


class LightAppData(BaseModel):
    app_name: str
    json_payload: str


class XmlData(BaseModel):
    service_id: int
    xml_payload: str


class TextSegment(BaseModel):
    type: Literal["text"] = "text"
    data: TextData


class MentionSegment(BaseModel):
    type: Literal["mention"] = "mention"
    data: MentionData


class MentionAllSegment(BaseModel):
    type: Literal["mention_all"] = "mention_all"
    data: dict[str, Any] = Field(default_factory=dict)


class FaceSegment(BaseModel):
    type: Literal["face"] = "face"
    data: FaceData


class ReplySegment(BaseModel):
    type: Literal["reply"] = "reply"
    data: ReplyData


class ImageSegment(BaseModel):
    type: Literal["image"] = "image"
    data: ImageData


class RecordSegment(BaseModel):
    type: Literal["record"] = "record"
    data: RecordData


class VideoSegment(BaseModel):
    type: Literal["video"] = "video"
    data: VideoData


class ForwardSegment(BaseModel):
    type: Literal["forward"] = "forward"
    data: ForwardData


class MarketFaceSegment(BaseModel):
    type: Literal["market_face"] = "market_face"
    data: MarketFaceData


class LightAppSegment(BaseModel):
    type: Literal["light_app"] = "light_app"
    data: LightAppData


class XmlSegment(BaseModel):
    type: Literal["xml"] = "xml"
    data: XmlData


class UnknownSegment(BaseModel):
    """A segment type this SDK does not know yet."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


SEGMENT_TYPES: dict[str, type[BaseModel]] = {
    "text": TextSegment,
    "mention": MentionSegment,
    "mention_all": MentionAllSegment,
    "face": FaceSegment,
    "reply": ReplySegment,
    "image": ImageSegment,
    "record": RecordSegment,
    "video": VideoSegment,
    "forward": ForwardSegment,
    "market_face": MarketFaceSegment,
    "light_app": LightAppSegment,
    "xml": XmlSegment,
}


def _segment_tag(value: Any) -> str:
    tag = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return tag if tag in SEGMENT_TYPES else "unknown"


IncomingSegment = Annotated[
    Union[
        Annotated[TextSegment, Tag("text")],
        Annotated[MentionSegment, Tag("mention")],
        Annotated[MentionAllSegment, Tag("mention_all")],
        Annotated[FaceSegment, Tag("face")],
        Annotated[ReplySegment, Tag("reply")],
        Annotated[ImageSegment, Tag("image")],
        Annotated[RecordSegment, Tag("record")],
        Annotated[VideoSegment, Tag("video")],
        Annotated[ForwardSegment, Tag("forward")],
        Annotated[MarketFaceSegment, Tag("market_face")],
        Annotated[LightAppSegment, Tag("light_app")],
        Annotated[XmlSegment, Tag("xml")],
        Annotated[UnknownSegment, Tag("unknown")],
    ],
    Discriminator(_segment_tag),
]


# ============================================================
#  Event payloads
# ============================================================


class IncomingMessage(BaseModel):
    """A received message. ``segments`` keeps wire order."""

    message_scene: str
    peer_id: int
    message_seq: int
    sender_id: int
    time: int
    segments: list[IncomingSegment] = Field(
        validation_alias=AliasChoices("segments", "message")
    )
    client_seq: int | None = None
    friend: Friend | None = None
    group: Group | None = None
    group_member: GroupMember | None = None


class MessageRecallData(BaseModel):
    message_scene: str
    peer_id: int
    message_seq: int
    sender_id: int
    operator_id: int


class FriendRequestData(BaseModel):
    request_id: str
    operator_id: int
    comment: str | None = None
    via: str | None = None


class GroupJoinRequestData(BaseModel):
    request_id: str
    operator_id: int
    group_id: int
    comment: str | None = None


class GroupInvitedJoinRequestData(BaseModel):
    request_id: str
    operator_id: int
    group_id: int
    invitee_id: int


class GroupInvitationRequestData(BaseModel):
    request_id: str
    operator_id: int
    group_id: int


class FriendNudgeData(BaseModel):
    user_id: int
    is_self_send: bool
    is_self_receive: bool


class FriendFileUploadData(BaseModel):
    user_id: int
    file_id: str
    file_name: str
    file_size: int
    is_self: bool


class GroupAdminChangeData(BaseModel):
    group_id: int
    user_id: int
    is_set: bool


class GroupEssenceMessageChangeData(BaseModel):
    group_id: int
    message_seq: int
    is_set: bool


class GroupMemberIncreaseData(BaseModel):
    group_id: int
    user_id: int
    operator_id: int | None = None
    invitor_id: int | None = None


class GroupMemberDecreaseData(BaseModel):
    group_id: int
    user_id: int
    operator_id: int | None = None


class GroupNameChangeData(BaseModel):
    group_id: int
    name: str
    operator_id: int


class GroupMessageReactionData(BaseModel):
    group_id: int
    user_id: int
    message_seq: int
    face_id: str
    # Some implementations omit the flag for additions.
    is_add: bool = True


class GroupMuteData(BaseModel):
    group_id: int
    user_id: int
    duration: int


class GroupWholeMuteData(BaseModel):
    group_id: int
    operator_id: int
    is_mute: bool


class GroupNudgeData(BaseModel):
    group_id: int
    sender_id: int
    receiver_id: int


class GroupFileUploadData(BaseModel):
    group_id: int
    user_id: int
    file_id: str
    file_name: str
    file_size: int


class UnknownEventData(BaseModel):
    """Payload of an event tag this SDK does not recognise."""

    raw_tag: str
    raw_payload: Any = None


EventData = Union[
    IncomingMessage,
    MessageRecallData,
    FriendRequestData,
    GroupJoinRequestData,
    GroupInvitedJoinRequestData,
    GroupInvitationRequestData,
    FriendNudgeData,
    FriendFileUploadData,
    GroupAdminChangeData,
    GroupEssenceMessageChangeData,
    GroupMemberIncreaseData,
    GroupMemberDecreaseData,
    GroupNameChangeData,
    GroupMessageReactionData,
    GroupMuteData,
    GroupWholeMuteData,
    GroupNudgeData,
    GroupFileUploadData,
    UnknownEventData,
]


# ============================================================
#  Events
# ============================================================


class Event(BaseModel):
    """An event pushed by the backend.

    ``event_type`` is the wire tag; for unknown tags it is still the raw
    tag and ``data`` is an :class:`UnknownEventData`.
    """

    time: int
    self_id: int
    event_type: str
    data: EventData

    @property
    def is_unknown(self) -> bool:
        return isinstance(self.data, UnknownEventData)
