from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from chatrelay.channels.base import InboundEvent
from chatrelay.logging_config import get_logger
from chatrelay.models import ChatbotChannel, Contact, ContactChannel, Conversation
from chatrelay.services import notification_service
from chatrelay.services.phone_service import normalize_phone_number
from chatrelay.services.result import Result
from chatrelay.services.state_machine import (
    ConversationMode,
    ConversationType,
    InvalidTransitionError,
    transition,
)
from chatrelay.services.upsert import first_or_create

logger = get_logger("conversation_service")

PLACEHOLDER_NAMES = {"WhatsApp User", "Unknown Participant", "You"}


def initial_mode(chatbot_channel: ChatbotChannel) -> ConversationMode:
    """Channel setting ``default_mode`` wins; otherwise follow the chatbot's AI switch."""
    configured = (chatbot_channel.settings or {}).get("default_mode")
    if configured in {mode.value for mode in ConversationMode}:
        return ConversationMode(configured)
    chatbot = chatbot_channel.chatbot
    return ConversationMode.AI if chatbot is not None and chatbot.ai_enabled else ConversationMode.HUMAN


def find_or_create_contact(
    db: Session,
    organization_id,
    phone_number: str,
    display_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Tuple[Contact, bool]:
    contact, created = first_or_create(
        db,
        Contact,
        {"organization_id": organization_id, "phone_number": phone_number},
        {"first_name": display_name, "last_name": last_name},
    )
    if not created and display_name and display_name not in PLACEHOLDER_NAMES and contact.first_name != display_name:
        logger.info(
            "Contact display name changed",
            extra={"context": {"contact_id": str(contact.id), "old": contact.first_name, "new": display_name}},
        )
        contact.first_name = display_name
        db.flush()
    return contact, created


def find_or_create_contact_channel(
    db: Session,
    chatbot_channel: ChatbotChannel,
    contact: Contact,
    channel_identifier: str,
) -> ContactChannel:
    contact_channel, _ = first_or_create(
        db,
        ContactChannel,
        {
            "chatbot_id": chatbot_channel.chatbot_id,
            "channel_id": chatbot_channel.channel_id,
            "channel_identifier": channel_identifier,
        },
        {"contact_id": contact.id, "channel_data": {}},
    )
    return contact_channel


def resolve(
    db: Session,
    chatbot_channel: ChatbotChannel,
    event: InboundEvent,
    mode: Optional[ConversationMode] = None,
) -> Conversation:
    """Find or create the conversation an inbound event belongs to.

    Direct chats also get a contact and a contact channel. Existing
    conversations get their recency bumped and, for legacy rows, their
    contact channel backfilled. ``conversation.created`` is published only
    when the conversation row is inserted by this call.
    """
    now = datetime.now(timezone.utc)
    lookup = {
        "chatbot_channel_id": chatbot_channel.id,
        "external_conversation_id": event.external_conversation_id,
    }

    if event.is_group:
        conversation, created = first_or_create(
            db,
            Conversation,
            lookup,
            {
                "type": ConversationType.GROUP.value,
                "name": event.external_conversation_id,
                "mode": ConversationMode.HUMAN.value,
                "status": "active",
                "last_message_at": now,
            },
        )
        contact_channel = None
    else:
        organization_id = chatbot_channel.chatbot.organization_id
        identifier = normalize_phone_number(event.sender_identifier) or event.sender_identifier
        contact, _ = find_or_create_contact(db, organization_id, identifier, event.contact_display_name)
        contact_channel = find_or_create_contact_channel(db, chatbot_channel, contact, identifier)
        conversation, created = first_or_create(
            db,
            Conversation,
            lookup,
            {
                "type": ConversationType.DIRECT.value,
                "name": event.contact_display_name or contact.full_name or identifier,
                "contact_channel_id": contact_channel.id,
                "mode": (mode or initial_mode(chatbot_channel)).value,
                "status": "active",
                "last_message_at": now,
            },
        )

    if created:
        logger.info(
            "Conversation created",
            extra={
                "context": {
                    "conversation_id": str(conversation.id),
                    "chatbot_channel_id": str(chatbot_channel.id),
                    "type": conversation.type,
                    "mode": conversation.mode,
                }
            },
        )
        notification_service.publish(
            notification_service.CONVERSATION_CREATED,
            notification_service.conversation_payload(conversation),
        )
        return conversation

    conversation.last_message_at = now
    if contact_channel is not None and conversation.contact_channel_id is None:
        logger.info(
            "Backfilling contact channel on conversation",
            extra={"context": {"conversation_id": str(conversation.id), "contact_channel_id": str(contact_channel.id)}},
        )
        conversation.contact_channel_id = contact_channel.id
    db.flush()
    return conversation


def resolve_participant(db: Session, chatbot_channel: ChatbotChannel, event: InboundEvent) -> Optional[Contact]:
    """Contact of the person who wrote a group message (None for direct chats and echoes)."""
    if not event.is_group or event.is_echo_of_own_message:
        return None
    identifier = normalize_phone_number(event.sender_identifier)
    if not identifier:
        return None
    contact, _ = find_or_create_contact(
        db, chatbot_channel.chatbot.organization_id, identifier, event.contact_display_name
    )
    return contact


def touch_conversation(db: Session, conversation: Conversation) -> None:
    conversation.last_message_at = datetime.now(timezone.utc)
    db.flush()


def update_group_name(db: Session, chatbot_channel: ChatbotChannel, group_id: str, name: str) -> Optional[Conversation]:
    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.chatbot_channel_id == chatbot_channel.id,
            Conversation.external_conversation_id == group_id,
        )
        .first()
    )
    if conversation is None or not name:
        return None
    conversation.name = name
    db.flush()
    logger.info("Group conversation renamed", extra={"context": {"group_id": group_id, "name": name}})
    return conversation


def set_mode(db: Session, conversation: Conversation, mode: ConversationMode) -> Result[Conversation]:
    current = ConversationMode(conversation.mode)
    if current == mode:
        return Result.success(conversation)
    try:
        new_mode = transition(current, mode, is_group=conversation.is_group)
    except InvalidTransitionError as e:
        return Result.failure(str(e), "invalid_mode")
    conversation.mode = new_mode.value
    db.flush()
    logger.info(
        "Conversation mode changed",
        extra={"context": {"conversation_id": str(conversation.id), "from": current.value, "to": new_mode.value}},
    )
    return Result.success(conversation)


def assign(db: Session, conversation: Conversation, user_id) -> Conversation:
    conversation.assigned_user_id = user_id
    db.flush()
    logger.info(
        "Conversation assigned",
        extra={"context": {"conversation_id": str(conversation.id), "user_id": str(user_id) if user_id else None}},
    )
    return conversation


def start_human_conversation(
    db: Session,
    chatbot_channel: ChatbotChannel,
    phone_number: str,
    user_id,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Conversation:
    """Agent-initiated conversation: always human mode, assigned to the agent."""
    identifier = normalize_phone_number(phone_number)
    event = InboundEvent(
        chatbot_channel_id=chatbot_channel.id,
        external_conversation_id=identifier,
        sender_identifier=identifier,
        content="",
        contact_display_name=first_name,
    )
    contact, _ = find_or_create_contact(
        db, chatbot_channel.chatbot.organization_id, identifier, first_name, last_name=last_name
    )
    if last_name and contact.last_name != last_name:
        contact.last_name = last_name
    conversation = resolve(db, chatbot_channel, event, mode=ConversationMode.HUMAN)
    conversation.mode = ConversationMode.HUMAN.value
    conversation.assigned_user_id = user_id
    db.flush()
    return conversation
