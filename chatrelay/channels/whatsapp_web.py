"""WhatsApp-Web bridge (whatsapp-web.js sidecar): adapter, HTTP client, senders and variant detection.

Two bridge generations exist in the field. The new one exposes
``/client/sendMessage/{session}`` and answers ``/ping``; the legacy one exposes
``/sessions/{session}/messages`` and answers ``/health``.
"""

import threading
import time
import uuid
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session

from chatrelay.channels.base import (
    AdaptedWebhook,
    ChannelNotFound,
    ChannelSender,
    InboundEvent,
    MalformedPayload,
    StatusUpdate,
    TransportError,
    contact_identifier,
    parse_timestamp,
    post_json,
    recipient_identifier,
)
from chatrelay.config import settings
from chatrelay.logging_config import get_logger
from chatrelay.models import Channel, ChatbotChannel, Message
from chatrelay.schemas.webhook import WhatsappWebWebhookRequest
from chatrelay.services.phone_service import is_group_identifier, normalize_phone_number, to_chat_id

logger = get_logger("channels.whatsapp_web")

SLUG = "whatsapp-web"
SESSION_PREFIX = "chatbot-"

BRIDGE_NEW = "new"
BRIDGE_LEGACY = "legacy"

# wwebjs message types -> stored content_type
CONTENT_TYPES = {
    "chat": "text",
    "text": "text",
    "image": "image",
    "video": "video",
    "audio": "audio",
    "ptt": "audio",
    "document": "document",
    "sticker": "sticker",
}

IGNORED_MESSAGE_TYPES = {"e2e_notification", "notification_template", "protocol"}

# Status updates (stories) arrive as messages from this pseudo-chat.
STATUS_BROADCAST = "status@broadcast"


def session_id_for(chatbot_id) -> str:
    return f"{SESSION_PREFIX}{chatbot_id}"


def chatbot_id_from_session(session_id: str) -> Optional[uuid.UUID]:
    if not session_id or not session_id.startswith(SESSION_PREFIX):
        return None
    try:
        return uuid.UUID(session_id[len(SESSION_PREFIX):])
    except ValueError:
        return None


def bridge_url_for_chatbot(chatbot_id) -> str:
    """Bridge base URL for a chatbot; some chatbots run on a dedicated bridge."""
    override = settings.wwebjs_url_overrides.get(str(chatbot_id))
    return (override or settings.wwebjs_url).rstrip("/")


def _serialized_id(message: dict) -> Optional[str]:
    raw_id = message.get("id")
    if isinstance(raw_id, dict):
        return raw_id.get("_serialized")
    return raw_id if isinstance(raw_id, str) else None


def _notify_name(message: dict) -> Optional[str]:
    return (message.get("_data") or {}).get("notifyName") or message.get("notifyName")


class BridgeDetectionError(TransportError):
    """Neither bridge generation answered its health probe."""


class WhatsappWebClient:
    """Thin httpx wrapper around one bridge instance."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else settings.wwebjs_api_key
        self.timeout = timeout if timeout is not None else settings.sender_timeout_seconds

    @property
    def headers(self) -> dict:
        return {"x-api-key": self.api_key} if self.api_key else {}

    def send_message(self, session_id: str, chat_id: str, content: str) -> dict:
        return post_json(
            f"{self.base_url}/client/sendMessage/{session_id}",
            provider="WhatsApp-Web bridge",
            payload={"chatId": chat_id, "contentType": "string", "content": content},
            headers=self.headers,
            timeout=self.timeout,
        )

    def send_legacy_message(self, session_id: str, to: str, text: str) -> dict:
        return post_json(
            f"{self.base_url}/sessions/{session_id}/messages",
            provider="WhatsApp-Web legacy bridge",
            payload={"to": to, "text": text},
            headers=self.headers,
            timeout=self.timeout,
        )

    def get_session_info(self, session_id: str) -> Optional[dict]:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(f"{self.base_url}/client/getClassInfo/{session_id}", headers=self.headers)
        except httpx.HTTPError as e:
            logger.error(
                "Failed to fetch bridge session info",
                extra={"context": {"session_id": session_id, "error": str(e)}},
            )
            return None
        if response.status_code != 200:
            logger.error(
                "Failed to fetch bridge session info",
                extra={"context": {"session_id": session_id, "status": response.status_code}},
            )
            return None
        try:
            return (response.json() or {}).get("sessionInfo")
        except (ValueError, AttributeError):
            logger.error(
                "Bridge session info is not a JSON object",
                extra={"context": {"session_id": session_id, "body": response.text[:300]}},
            )
            return None

    def get_group_info(self, session_id: str, group_id: str) -> Optional[dict]:
        """Group chat details (``name``, ``participants``...) or None when the bridge cannot say."""
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/groupChat/getClassInfo/{session_id}",
                    json={"chatId": group_id},
                    headers=self.headers,
                )
        except httpx.HTTPError as e:
            logger.error(
                "Failed to fetch group info",
                extra={"context": {"session_id": session_id, "group_id": group_id, "error": str(e)}},
            )
            return None
        try:
            data = response.json()
        except ValueError:
            data = None
        if response.status_code != 200 or not isinstance(data, dict) or not data.get("success"):
            logger.error(
                "Failed to fetch group info",
                extra={
                    "context": {
                        "session_id": session_id,
                        "group_id": group_id,
                        "status": response.status_code,
                        "body": response.text[:300],
                    }
                },
            )
            return None
        return data.get("chat")


class BridgeDetector:
    """Detects which bridge generation runs at a URL and caches the answer."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        api_key: Optional[str] = None,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.bridge_detection_ttl_seconds
        self.timeout = timeout if timeout is not None else settings.bridge_probe_timeout_seconds
        self.api_key = api_key if api_key is not None else settings.wwebjs_api_key
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def detect(self, base_url: str) -> str:
        base_url = base_url.rstrip("/")
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(base_url)
            if cached and cached[1] > now:
                return cached[0]

        variant = self._probe(base_url)
        with self._lock:
            self._cache[base_url] = (variant, time.monotonic() + self.ttl_seconds)
        logger.info("Bridge variant detected", extra={"context": {"url": base_url, "variant": variant}})
        return variant

    def clear_cache(self, base_url: Optional[str] = None) -> None:
        with self._lock:
            if base_url is None:
                self._cache.clear()
            else:
                self._cache.pop(base_url.rstrip("/"), None)

    def _probe(self, base_url: str) -> str:
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        with httpx.Client(timeout=self.timeout) as client:
            for path, variant in (("/ping", BRIDGE_NEW), ("/health", BRIDGE_LEGACY)):
                try:
                    response = client.get(f"{base_url}{path}", headers=headers)
                except httpx.HTTPError as e:
                    logger.debug(f"Bridge probe {path} failed: {e}")
                    continue
                if 200 <= response.status_code < 300:
                    return variant
        raise BridgeDetectionError(f"WhatsApp-Web bridge at {base_url} answered neither /ping nor /health")


class WhatsappWebSender(ChannelSender):
    slug = SLUG

    def __init__(self, client: WhatsappWebClient):
        self.client = client

    def send(self, message: Message) -> Optional[str]:
        chatbot_channel = message.conversation.chatbot_channel
        session_id = chatbot_channel.credential("session_id") or session_id_for(chatbot_channel.chatbot_id)
        chat_id = to_chat_id(recipient_identifier(message))
        data = self.client.send_message(session_id, chat_id, message.content)
        sent = data.get("message") or {}
        external_id = ((sent.get("_data") or {}).get("id") or {}).get("_serialized") or _serialized_id(sent)
        logger.info(
            "WhatsApp-Web message sent",
            extra={"context": {"message_id": str(message.id), "chat_id": chat_id, "external_id": external_id}},
        )
        return external_id


class LegacyWhatsappWebSender(ChannelSender):
    slug = SLUG

    def __init__(self, client: WhatsappWebClient):
        self.client = client

    def send(self, message: Message) -> Optional[str]:
        chatbot_channel = message.conversation.chatbot_channel
        session_id = chatbot_channel.credential("session_id") or session_id_for(chatbot_channel.chatbot_id)
        identifier = recipient_identifier(message)
        to = identifier if is_group_identifier(identifier) else normalize_phone_number(identifier)
        data = self.client.send_legacy_message(session_id, to, message.content)
        external_id = data.get("id") or data.get("message_id")
        logger.info(
            "WhatsApp-Web legacy message sent",
            extra={"context": {"message_id": str(message.id), "external_id": external_id}},
        )
        return external_id


class WhatsappWebAdapter:
    """Turns bridge webhooks (both generations) into canonical events."""

    provider = SLUG

    def __init__(self, db: Session):
        self.db = db

    def resolve_channel(self, session_id: str) -> ChatbotChannel:
        chatbot_id = chatbot_id_from_session(session_id)
        chatbot_channel = None
        if chatbot_id is not None:
            chatbot_channel = (
                self.db.query(ChatbotChannel)
                .join(Channel, ChatbotChannel.channel_id == Channel.id)
                .filter(ChatbotChannel.chatbot_id == chatbot_id, Channel.slug == SLUG)
                .first()
            )
        if chatbot_channel is None:
            chatbot_channel = (
                self.db.query(ChatbotChannel)
                .filter(ChatbotChannel.credentials["session_id"].as_string() == session_id)
                .first()
            )
        if chatbot_channel is None:
            raise ChannelNotFound(f"No WhatsApp-Web channel for session {session_id}")
        return chatbot_channel

    def adapt(self, request: WhatsappWebWebhookRequest) -> AdaptedWebhook:
        result = AdaptedWebhook()
        kind = request.event_type or request.dataType

        if kind == "message_ack":
            data = request.data or {}
            result.statuses.append(
                StatusUpdate(
                    external_message_id=data["message"]["id"]["_serialized"],
                    ack=data["ack"],
                    provider=SLUG,
                )
            )
            return result

        if kind in ("message", "media", "message_received"):
            message = self._message_payload(request)
            event = self._incoming_event(request.session, message)
        elif kind in ("message_create", "message_sent"):
            message = self._message_payload(request)
            if message.get("fromMe") is not True:
                logger.info(
                    "Skipping message_create that is not outgoing",
                    extra={"context": {"session_id": request.session, "message_id": _serialized_id(message)}},
                )
                return result
            event = self._echo_event(request.session, message)
        else:
            return result

        if event is not None:
            result.events.append(event)
        return result

    def _message_payload(self, request: WhatsappWebWebhookRequest) -> dict:
        message = request.message if request.is_legacy else (request.data or {}).get("message")
        if not isinstance(message, dict):
            raise MalformedPayload(f"Bridge event {request.event_type or request.dataType} has no message")
        return message

    def _content(self, message: dict) -> tuple[str, str, dict]:
        message_type = message.get("type") or "chat"
        content_type = CONTENT_TYPES.get(message_type, message_type)
        extra: dict[str, Any] = {}
        if message.get("hasMedia"):
            extra["has_media"] = True
            if content_type == "text":
                content_type = "document"
        return message.get("body") or "", content_type, extra

    def _incoming_event(self, session_id: str, message: dict) -> Optional[InboundEvent]:
        external_id = _serialized_id(message)
        if message.get("type") in IGNORED_MESSAGE_TYPES:
            logger.info(
                "Ignoring bridge notification message",
                extra={"context": {"session_id": session_id, "message_id": external_id, "type": message.get("type")}},
            )
            return None
        sender = message.get("from")
        if not sender or not external_id:
            raise MalformedPayload("Bridge message is missing 'from' or 'id'")
        if sender == STATUS_BROADCAST:
            logger.info(
                "Ignoring status broadcast",
                extra={"context": {"session_id": session_id, "message_id": external_id}},
            )
            return None

        chatbot_channel = self.resolve_channel(session_id)
        content, content_type, extra = self._content(message)
        is_group = is_group_identifier(sender)
        if is_group:
            participant = message.get("author")
            if not participant:
                raise MalformedPayload(f"Group message {external_id} has no author")
            conversation_id = sender
            sender_identifier = contact_identifier(participant, "group participant")
        else:
            conversation_id = sender_identifier = contact_identifier(sender)

        return InboundEvent(
            chatbot_channel_id=chatbot_channel.id,
            external_conversation_id=conversation_id,
            sender_identifier=sender_identifier,
            content=content,
            content_type=content_type,
            external_message_id=external_id,
            contact_display_name=_notify_name(message) or ("Unknown Participant" if is_group else "WhatsApp User"),
            is_group=is_group,
            occurred_at=parse_timestamp(message.get("timestamp")),
            metadata={"timestamp": message.get("timestamp"), "from": sender_identifier, **extra},
        )

    def _echo_event(self, session_id: str, message: dict) -> Optional[InboundEvent]:
        external_id = _serialized_id(message)
        recipient = message.get("to")
        if not recipient or not external_id:
            raise MalformedPayload("Bridge echo is missing 'to' or 'id'")
        if message.get("type") in IGNORED_MESSAGE_TYPES or recipient == STATUS_BROADCAST:
            return None

        chatbot_channel = self.resolve_channel(session_id)
        content, content_type, extra = self._content(message)
        is_group = is_group_identifier(recipient)
        conversation_id = recipient if is_group else contact_identifier(recipient, "recipient")
        metadata: dict[str, Any] = {"timestamp": message.get("timestamp"), **extra}
        if is_group:
            metadata["participant_name"] = _notify_name(message) or "You"

        return InboundEvent(
            chatbot_channel_id=chatbot_channel.id,
            external_conversation_id=conversation_id,
            sender_identifier=conversation_id,
            content=content,
            content_type=content_type,
            external_message_id=external_id,
            is_group=is_group,
            occurred_at=parse_timestamp(message.get("timestamp")),
            is_echo_of_own_message=True,
            metadata=metadata,
        )
