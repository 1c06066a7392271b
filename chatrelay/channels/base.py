"""Shared types for channel adapters and senders.

Adapters turn provider webhook payloads into ``InboundEvent`` / ``StatusUpdate``
objects; senders push outgoing messages to a provider and either return the
provider-assigned message id or raise a ``SendError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import or_
from sqlalchemy.orm import Session

from chatrelay.models import Channel, ChatbotChannel, Message
from chatrelay.services.phone_service import normalize_phone_number


@dataclass
class InboundEvent:
    chatbot_channel_id: Any
    external_conversation_id: str
    sender_identifier: str
    content: str
    content_type: str = "text"
    external_message_id: Optional[str] = None
    contact_display_name: Optional[str] = None
    is_group: bool = False
    occurred_at: Optional[datetime] = None
    is_echo_of_own_message: bool = False
    metadata: dict = field(default_factory=dict)


@dataclass
class StatusUpdate:
    external_message_id: str
    ack: Any
    provider: str


@dataclass
class AdaptedWebhook:
    """Everything one provider payload carried, in canonical form."""

    events: list[InboundEvent] = field(default_factory=list)
    statuses: list[StatusUpdate] = field(default_factory=list)


class AdapterError(Exception):
    """Payload could not be turned into canonical events."""


class ChannelNotFound(AdapterError):
    pass


class MalformedPayload(AdapterError):
    pass


class SendError(Exception):
    """Provider refused or could not receive an outgoing message."""

    retryable = True

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class AuthExpired(SendError):
    pass


class RecipientInvalid(SendError):
    pass


class TransportError(SendError):
    pass


class ProviderRejected(SendError):
    pass


class UnsupportedChannel(SendError):
    retryable = False

    def __init__(self, slug: Optional[str]):
        self.slug = slug
        super().__init__(f"No sender registered for channel '{slug}'")


class ChannelSender(ABC):
    """Pushes one outgoing message to a provider."""

    slug: str = ""

    @abstractmethod
    def send(self, message: Message) -> Optional[str]:
        """Send ``message``; return the provider message id (may be None).

        Raises SendError for every failure mode.
        """


def raise_for_send_status(response: httpx.Response, provider: str) -> None:
    """Translate a non-2xx provider response into the matching SendError."""
    if 200 <= response.status_code < 300:
        return
    body = (response.text or "")[:300]
    reason = f"{provider} returned HTTP {response.status_code}: {body}"
    if response.status_code in (401, 403):
        raise AuthExpired(reason)
    if response.status_code >= 500:
        raise TransportError(reason)
    raise ProviderRejected(reason)


def post_json(
    url: str,
    *,
    provider: str,
    payload: dict,
    headers: Optional[dict] = None,
    timeout: float = 30.0,
) -> dict:
    """POST ``payload`` and return the decoded JSON body, raising SendError on failure."""
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, json=payload, headers=headers or {})
    except httpx.TimeoutException as e:
        raise TransportError(f"{provider} timed out: {e}") from e
    except httpx.HTTPError as e:
        raise TransportError(f"{provider} unreachable: {e}") from e

    raise_for_send_status(response, provider)
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def find_channel_by_credential(
    db: Session,
    value: str,
    keys: tuple[str, ...] = ("phone_number", "phone_number_id"),
    slugs: Optional[tuple[str, ...]] = None,
) -> Optional[ChatbotChannel]:
    """Find the chatbot channel whose credentials hold ``value`` under one of ``keys``."""
    if not value:
        return None
    query = db.query(ChatbotChannel).filter(
        or_(*[ChatbotChannel.credentials[key].as_string() == value for key in keys]),
        ChatbotChannel.status != "inactive",
    )
    if slugs:
        query = query.join(Channel, ChatbotChannel.channel_id == Channel.id).filter(Channel.slug.in_(slugs))
    return query.first()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Provider epoch seconds (int or numeric string) to an aware datetime."""
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def contact_identifier(raw: str, what: str = "sender") -> str:
    """Normalize a provider address; an address with no digits is unusable."""
    identifier = normalize_phone_number(raw)
    if not identifier:
        raise MalformedPayload(f"Unusable {what} identifier: {raw!r}")
    return identifier


def recipient_identifier(message: Message) -> str:
    """Provider-neutral recipient of an outgoing message.

    Groups are addressed by the conversation's external id; direct chats by
    the contact channel identifier, falling back to the external id.
    """
    conversation = message.conversation
    if conversation is None:
        raise RecipientInvalid("Message has no conversation")
    if conversation.is_group:
        identifier = conversation.external_conversation_id
    elif conversation.contact_channel is not None:
        identifier = conversation.contact_channel.channel_identifier
    else:
        identifier = conversation.external_conversation_id
    if not identifier:
        raise RecipientInvalid(f"Conversation {conversation.id} has no recipient identifier")
    return identifier
