from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

# === WhatsApp Cloud API ===


class CloudText(BaseModel):
    body: str = ""


class CloudMedia(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class CloudMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    sender: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "sender"))
    to: Optional[str] = None
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[CloudText] = None
    image: Optional[CloudMedia] = None
    audio: Optional[CloudMedia] = None
    video: Optional[CloudMedia] = None
    document: Optional[CloudMedia] = None
    sticker: Optional[CloudMedia] = None
    button: Optional[dict[str, Any]] = None
    interactive: Optional[dict[str, Any]] = None

    def content(self) -> tuple[str, str, dict]:
        """Return (content, content_type, extra metadata) for this message."""
        if self.type == "text":
            return (self.text.body if self.text else ""), "text", {}
        if self.type == "button" and self.button:
            return str(self.button.get("text") or ""), "text", {"button_payload": self.button.get("payload")}
        if self.type == "interactive" and self.interactive:
            reply = self.interactive.get("button_reply") or self.interactive.get("list_reply") or {}
            return str(reply.get("title") or ""), "text", {"reply_id": reply.get("id")}
        media = getattr(self, self.type, None) if self.type in {"image", "audio", "video", "document", "sticker"} else None
        if isinstance(media, CloudMedia):
            extra = {"media_id": media.id, "mime_type": media.mime_type}
            if media.filename:
                extra["filename"] = media.filename
            return media.caption or "", self.type, extra
        return "", self.type, {}


class CloudProfile(BaseModel):
    name: Optional[str] = None


class CloudContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[CloudProfile] = None


class CloudStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: list[dict[str, Any]] = []


class CloudMetadata(BaseModel):
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None


class CloudChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    metadata: Optional[CloudMetadata] = None
    contacts: list[CloudContact] = []
    messages: list[CloudMessage] = []
    statuses: list[CloudStatus] = []
    message_echoes: list[CloudMessage] = []


class CloudChange(BaseModel):
    field: str
    value: CloudChangeValue = CloudChangeValue()


class CloudEntry(BaseModel):
    id: Optional[str] = None
    changes: list[CloudChange] = []


class CloudWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[CloudEntry] = []


# === WhatsApp-Web bridge ===

LegacyEventType = Literal[
    "qr_code_received",
    "client_ready",
    "message_received",
    "authenticated",
    "message_sent",
    "disconnected",
]

BridgeDataType = Literal[
    "qr",
    "ready",
    "authenticated",
    "disconnected",
    "message",
    "media",
    "message_create",
    "group_update",
    "message_ack",
]


class WhatsappWebWebhookRequest(BaseModel):
    """Bridge webhook body; either the legacy ``event_type`` or the new ``dataType`` format."""

    model_config = ConfigDict(extra="allow")

    event_type: Optional[LegacyEventType] = None
    session_id: Optional[str] = None
    qr_code: Optional[str] = None
    message: Optional[dict[str, Any]] = None
    phone_number_id: Optional[str] = None

    dataType: Optional[BridgeDataType] = None
    sessionId: Optional[str] = None
    data: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_format(self) -> "WhatsappWebWebhookRequest":
        if self.event_type and self.dataType:
            raise ValueError("event_type and dataType cannot both be present")
        if not self.event_type and not self.dataType:
            raise ValueError("event_type or dataType is required")
        if self.event_type and not self.session_id:
            raise ValueError("session_id is required with event_type")
        if self.dataType and not self.sessionId:
            raise ValueError("sessionId is required with dataType")
        if self.dataType == "message_ack":
            data = self.data or {}
            ack = data.get("ack")
            if not isinstance(ack, int) or isinstance(ack, bool):
                raise ValueError("data.ack must be an integer")
            serialized = ((data.get("message") or {}).get("id") or {}).get("_serialized")
            if not isinstance(serialized, str) or not serialized:
                raise ValueError("data.message.id._serialized is required")
        return self

    @property
    def is_legacy(self) -> bool:
        return self.event_type is not None

    @property
    def session(self) -> str:
        return self.session_id if self.is_legacy else self.sessionId


# === TextMeBot ===


class TextMeBotWebhookRequest(BaseModel):
    type: Literal["text"]
    sender: str = Field(validation_alias=AliasChoices("from", "sender"))
    from_name: str
    to: str
    message: str
    from_lid: Optional[str] = None
    origin: Optional[str] = None


class WebhookAck(BaseModel):
    status: str = "received"
