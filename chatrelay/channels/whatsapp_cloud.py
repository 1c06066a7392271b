"""WhatsApp Cloud API: webhook adapter and Graph API sender."""

from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatrelay.channels.base import (
    AdaptedWebhook,
    AuthExpired,
    ChannelNotFound,
    ChannelSender,
    InboundEvent,
    MalformedPayload,
    StatusUpdate,
    contact_identifier,
    find_channel_by_credential,
    parse_timestamp,
    post_json,
    recipient_identifier,
)
from chatrelay.config import settings
from chatrelay.logging_config import get_logger
from chatrelay.models import ChatbotChannel, Message
from chatrelay.schemas.webhook import CloudChangeValue, CloudWebhookPayload
from chatrelay.services.phone_service import normalize_phone_number

logger = get_logger("channels.whatsapp_cloud")

SLUG = "whatsapp"


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: Optional[str],
) -> Optional[str]:
    """Return the challenge to echo back, or None when the handshake must be rejected."""
    if not expected_token or token != expected_token:
        return None
    if mode != "subscribe" or challenge is None:
        return None
    return challenge


class CloudApiAdapter:
    """Turns Cloud API webhook payloads into canonical events."""

    provider = SLUG

    def __init__(self, db: Session):
        self.db = db

    def resolve_channel(self, phone_number_id: Optional[str]) -> ChatbotChannel:
        chatbot_channel = find_channel_by_credential(
            self.db, phone_number_id or "", keys=("phone_number_id",), slugs=(SLUG,)
        )
        if chatbot_channel is None:
            raise ChannelNotFound(f"No WhatsApp channel for phone_number_id={phone_number_id}")
        return chatbot_channel

    def adapt(self, payload: dict) -> AdaptedWebhook:
        try:
            parsed = CloudWebhookPayload.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayload(f"Invalid Cloud API payload: {e.error_count()} errors") from e

        result = AdaptedWebhook()
        for entry in parsed.entry:
            for change in entry.changes:
                if change.field == "messages":
                    self._adapt_messages(change.value, result)
                elif change.field == "smb_message_echoes":
                    self._adapt_echoes(change.value, result)
                else:
                    logger.info(
                        "Unhandled WhatsApp webhook field",
                        extra={"context": {"field": change.field}},
                    )
        return result

    def _channel_for(self, value: CloudChangeValue) -> ChatbotChannel:
        phone_number_id = value.metadata.phone_number_id if value.metadata else None
        return self.resolve_channel(phone_number_id)

    def _adapt_messages(self, value: CloudChangeValue, result: AdaptedWebhook) -> None:
        for status in value.statuses:
            result.statuses.append(StatusUpdate(external_message_id=status.id, ack=status.status, provider=SLUG))
            if status.errors:
                logger.warning(
                    "WhatsApp reported delivery errors",
                    extra={"context": {"message_id": status.id, "errors": status.errors}},
                )

        if not value.messages:
            return

        chatbot_channel = self._channel_for(value)
        names = {
            contact.wa_id: contact.profile.name
            for contact in value.contacts
            if contact.wa_id and contact.profile and contact.profile.name
        }
        for message in value.messages:
            if not message.sender:
                raise MalformedPayload(f"Message {message.id} has no sender")
            content, content_type, extra = message.content()
            identifier = contact_identifier(message.sender)
            result.events.append(
                InboundEvent(
                    chatbot_channel_id=chatbot_channel.id,
                    external_conversation_id=identifier,
                    sender_identifier=identifier,
                    content=content,
                    content_type=content_type,
                    external_message_id=message.id,
                    contact_display_name=names.get(message.sender),
                    occurred_at=parse_timestamp(message.timestamp),
                    metadata={"timestamp": message.timestamp, "from": identifier, **extra},
                )
            )

    def _adapt_echoes(self, value: CloudChangeValue, result: AdaptedWebhook) -> None:
        if not value.message_echoes:
            return
        chatbot_channel = self._channel_for(value)
        for echo in value.message_echoes:
            if not echo.to:
                raise MalformedPayload(f"Echo {echo.id} has no recipient")
            content, content_type, extra = echo.content()
            identifier = contact_identifier(echo.to, "recipient")
            result.events.append(
                InboundEvent(
                    chatbot_channel_id=chatbot_channel.id,
                    external_conversation_id=identifier,
                    sender_identifier=identifier,
                    content=content,
                    content_type=content_type,
                    external_message_id=echo.id,
                    occurred_at=parse_timestamp(echo.timestamp),
                    is_echo_of_own_message=True,
                    metadata={"timestamp": echo.timestamp, **extra},
                )
            )


class CloudApiSender(ChannelSender):
    """Sends text messages through the Graph API ``/{phone_number_id}/messages`` endpoint."""

    slug = SLUG

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.whatsapp_graph_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.sender_timeout_seconds

    def send(self, message: Message) -> Optional[str]:
        chatbot_channel = message.conversation.chatbot_channel
        access_token = chatbot_channel.credential("phone_number_access_token", "access_token")
        phone_number_id = chatbot_channel.credential("phone_number_id")
        if not access_token or not phone_number_id:
            raise AuthExpired(f"Chatbot channel {chatbot_channel.id} has no WhatsApp access token")

        base_url = (chatbot_channel.webhook_url or self.base_url).rstrip("/")
        data = post_json(
            f"{base_url}/{phone_number_id}/messages",
            provider="WhatsApp Cloud API",
            payload={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": normalize_phone_number(recipient_identifier(message)),
                "type": "text",
                "text": {"preview_url": False, "body": message.content},
            },
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout,
        )
        messages = data.get("messages") or []
        external_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        logger.info(
            "WhatsApp Cloud API message sent",
            extra={"context": {"message_id": str(message.id), "external_id": external_id}},
        )
        return external_id
