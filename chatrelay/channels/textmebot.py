"""TextMeBot: flat webhook adapter and send.php sender."""

import re
import uuid
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from chatrelay.channels.base import (
    AdaptedWebhook,
    AuthExpired,
    ChannelNotFound,
    ChannelSender,
    InboundEvent,
    ProviderRejected,
    TransportError,
    contact_identifier,
    find_channel_by_credential,
    raise_for_send_status,
    recipient_identifier,
)
from chatrelay.config import settings
from chatrelay.logging_config import get_logger
from chatrelay.models import ChatbotChannel, Message
from chatrelay.schemas.webhook import TextMeBotWebhookRequest
from chatrelay.services.phone_service import normalize_phone_number

logger = get_logger("channels.textmebot")

SLUG = "textmebot"

# send.php answers 200 even on failure; failures lead with one of these words,
# possibly wrapped in markup.
ERROR_BODY = re.compile(r"^(?:\s|<[^>]*>)*(?:error|failed|invalid)\b", re.IGNORECASE)


class TextMeBotAdapter:
    """TextMeBot routes by recipient number, so the channel is found through credentials."""

    provider = SLUG

    def __init__(self, db: Session):
        self.db = db

    def resolve_channel(self, to: str) -> ChatbotChannel:
        chatbot_channel = find_channel_by_credential(self.db, to)
        if chatbot_channel is None:
            normalized = normalize_phone_number(to)
            if normalized and normalized != to:
                chatbot_channel = find_channel_by_credential(self.db, normalized)
        if chatbot_channel is None:
            raise ChannelNotFound(f"No channel registered for TextMeBot number {to}")
        return chatbot_channel

    def adapt(self, request: TextMeBotWebhookRequest, chatbot_channel: ChatbotChannel) -> AdaptedWebhook:
        identifier = contact_identifier(request.sender)
        event = InboundEvent(
            chatbot_channel_id=chatbot_channel.id,
            external_conversation_id=identifier,
            sender_identifier=identifier,
            content=request.message,
            content_type="text",
            external_message_id=f"textmebot-{uuid.uuid4().hex}@c.us",
            contact_display_name=request.from_name,
            metadata={
                "from": identifier,
                "from_lid": request.from_lid,
                "origin": request.origin or "textmebot",
            },
        )
        return AdaptedWebhook(events=[event])


class TextMeBotSender(ChannelSender):
    """Sends through ``send.php?recipient=&apikey=&text=``; the API returns no message id."""

    slug = SLUG

    def __init__(self, api_url: Optional[str] = None, timeout: Optional[float] = None):
        self.api_url = api_url or settings.textmebot_api_url
        self.timeout = timeout if timeout is not None else settings.sender_timeout_seconds

    def send(self, message: Message) -> Optional[str]:
        chatbot_channel = message.conversation.chatbot_channel
        api_key = chatbot_channel.credential("api_key", "apikey")
        if not api_key:
            raise AuthExpired(f"Chatbot channel {chatbot_channel.id} has no TextMeBot api key")

        params = {
            "recipient": f"+{normalize_phone_number(recipient_identifier(message))}",
            "apikey": api_key,
            "text": message.content,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(self.api_url, params=params)
        except httpx.HTTPError as e:
            raise TransportError(f"TextMeBot unreachable: {e}") from e

        raise_for_send_status(response, "TextMeBot")
        body = (response.text or "").strip()
        if ERROR_BODY.match(body):
            raise ProviderRejected(f"TextMeBot rejected message: {body[:300]}")
        logger.info("TextMeBot message sent", extra={"context": {"message_id": str(message.id)}})
        return None
