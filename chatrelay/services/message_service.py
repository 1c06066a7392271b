from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from chatrelay.channels.base import InboundEvent
from chatrelay.config import settings
from chatrelay.logging_config import get_logger
from chatrelay.models import Contact, Conversation, Message
from chatrelay.services import notification_service
from chatrelay.services.conversation_service import touch_conversation
from chatrelay.services.upsert import create_or_fetch

logger = get_logger("message_service")


class MessageType(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class SenderType(str, Enum):
    CONTACT = "contact"
    AI = "ai"
    HUMAN = "human"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Provider ack value -> delivery status. wwebjs acks: -1 error, 0 pending,
# 1 server, 2 device, 3 read, 4 played.
ACK_STATUS_TABLES: dict[str, dict[Any, DeliveryStatus]] = {
    "whatsapp-web": {
        -1: DeliveryStatus.FAILED,
        1: DeliveryStatus.SENT,
        2: DeliveryStatus.DELIVERED,
        3: DeliveryStatus.READ,
        4: DeliveryStatus.READ,
    },
    "whatsapp": {
        "sent": DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "read": DeliveryStatus.READ,
        "failed": DeliveryStatus.FAILED,
    },
}

# Timestamps implied by each status; read implies delivered implies sent.
STATUS_FIELDS = {
    DeliveryStatus.SENT: ("sent_at",),
    DeliveryStatus.DELIVERED: ("sent_at", "delivered_at"),
    DeliveryStatus.READ: ("sent_at", "delivered_at", "read_at"),
}


def find_by_external_id(db: Session, conversation_id, external_message_id: Optional[str]) -> Optional[Message]:
    if not external_message_id:
        return None
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.external_message_id == external_message_id)
        .first()
    )


def record_incoming(
    db: Session,
    conversation: Conversation,
    event: InboundEvent,
    sender_contact: Optional[Contact] = None,
) -> Message:
    """Store a message written by a contact and notify listeners.

    Redelivered webhooks (same external id in the same conversation) return
    the stored row without a second notification.
    """
    if sender_contact is not None:
        sender_contact_id = sender_contact.id
    elif conversation.contact_channel is not None:
        sender_contact_id = conversation.contact_channel.contact_id
    else:
        sender_contact_id = None

    fields = {
        "type": MessageType.INCOMING.value,
        "content": event.content or "",
        "content_type": event.content_type,
        "sender_type": SenderType.CONTACT.value,
        "sender_contact_id": sender_contact_id,
        "message_metadata": dict(event.metadata or {}),
    }
    if event.external_message_id:
        message, created = create_or_fetch(
            db,
            Message,
            {"conversation_id": conversation.id, "external_message_id": event.external_message_id},
            fields,
        )
        if not created:
            logger.info(
                "Duplicate incoming message ignored",
                extra={"context": {"conversation_id": str(conversation.id), "external_id": event.external_message_id}},
            )
            return message
    else:
        message = Message(conversation_id=conversation.id, external_message_id=None, **fields)
        db.add(message)
        db.flush()

    logger.info(
        "Incoming message recorded",
        extra={
            "context": {
                "message_id": str(message.id),
                "conversation_id": str(conversation.id),
                "content_type": message.content_type,
            }
        },
    )
    notification_service.publish(notification_service.MESSAGE_RECEIVED, notification_service.message_payload(message))
    return message


def find_pending_echo_match(db: Session, conversation_id, content: str) -> Optional[Message]:
    """Most recent outgoing message with the same content that has no provider id yet.

    Content must match exactly and the message must be younger than
    ``echo_match_window_seconds``.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.echo_match_window_seconds)
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.type == MessageType.OUTGOING.value,
            Message.sender_type != SenderType.CONTACT.value,
            Message.external_message_id.is_(None),
            Message.content == content,
            Message.created_at >= cutoff,
        )
        .order_by(Message.created_at.desc())
        .first()
    )


def record_echo(db: Session, conversation: Conversation, event: InboundEvent) -> Message:
    """Attach a provider echo to the outgoing message it describes.

    If no pending outgoing message matches, the echo is a message typed
    directly on the phone and is stored as a human outgoing message.
    """
    existing = find_by_external_id(db, conversation.id, event.external_message_id)
    if existing is not None:
        logger.info(
            "Echo already recorded",
            extra={"context": {"message_id": str(existing.id), "external_id": event.external_message_id}},
        )
        return existing

    pending = find_pending_echo_match(db, conversation.id, event.content or "")
    if pending is not None:
        metadata = dict(pending.message_metadata or {})
        if event.metadata.get("participant_name"):
            metadata["participant_name"] = event.metadata["participant_name"]
        updated = (
            db.query(Message)
            .filter(Message.id == pending.id, Message.external_message_id.is_(None))
            .update(
                {Message.external_message_id: event.external_message_id, Message.message_metadata: metadata},
                synchronize_session=False,
            )
        )
        db.refresh(pending)
        if updated:
            logger.info(
                "Echo matched pending outgoing message",
                extra={"context": {"message_id": str(pending.id), "external_id": event.external_message_id}},
            )
            notification_service.publish(
                notification_service.MESSAGE_UPDATED, notification_service.message_payload(pending)
            )
        return pending

    metadata = {**(event.metadata or {}), "from_echo": True}
    message, created = create_or_fetch(
        db,
        Message,
        {"conversation_id": conversation.id, "external_message_id": event.external_message_id},
        {
            "type": MessageType.OUTGOING.value,
            "content": event.content or "",
            "content_type": event.content_type,
            "sender_type": SenderType.HUMAN.value,
            "message_metadata": metadata,
            "sent_at": event.occurred_at or datetime.now(timezone.utc),
        },
    )
    if created:
        touch_conversation(db, conversation)
        logger.info(
            "Echo stored as external outgoing message",
            extra={"context": {"message_id": str(message.id), "external_id": event.external_message_id}},
        )
        notification_service.publish(notification_service.MESSAGE_CREATED, notification_service.message_payload(message))
    return message


def create_outgoing(
    db: Session,
    conversation: Conversation,
    content: str,
    sender_type: SenderType,
    content_type: str = "text",
    sender_user_id=None,
    metadata: Optional[dict] = None,
) -> Message:
    message = Message(
        conversation_id=conversation.id,
        type=MessageType.OUTGOING.value,
        content=content,
        content_type=content_type,
        sender_type=sender_type.value,
        sender_user_id=sender_user_id,
        message_metadata=metadata or {},
    )
    db.add(message)
    db.flush()
    touch_conversation(db, conversation)
    notification_service.publish(notification_service.MESSAGE_CREATED, notification_service.message_payload(message))
    return message


def _apply(db: Session, message: Message, values: dict, *conditions) -> int:
    """Targeted field-level UPDATE of one message row."""
    db.flush()
    return (
        db.query(Message)
        .filter(Message.id == message.id, *conditions)
        .update(values, synchronize_session=False)
    )


def mark_sent(db: Session, message: Message, external_message_id: Optional[str]) -> Message:
    now = datetime.now(timezone.utc)
    values = {
        Message.sent_at: func.coalesce(Message.sent_at, now),
        Message.failed_at: None,
        Message.error_message: None,
    }
    if external_message_id:
        values[Message.external_message_id] = external_message_id
    _apply(db, message, values)
    db.refresh(message)
    notification_service.publish(notification_service.MESSAGE_UPDATED, notification_service.message_payload(message))
    return message


def mark_failed(db: Session, message: Message, reason: str) -> Message:
    _apply(db, message, {Message.failed_at: datetime.now(timezone.utc), Message.error_message: reason[:1000]})
    db.refresh(message)
    notification_service.publish(notification_service.MESSAGE_UPDATED, notification_service.message_payload(message))
    return message


def reset_failure(db: Session, message: Message) -> Message:
    _apply(db, message, {Message.failed_at: None, Message.error_message: None})
    db.refresh(message)
    return message


def update_status(
    db: Session,
    external_message_id: str,
    ack: Any,
    provider: str = "whatsapp-web",
) -> Optional[Message]:
    """Advance a message's delivery timestamps from a provider ack.

    Only timestamps that are still empty are written, so acks arriving out
    of order never move a message backwards. A failure ack is applied only
    while the message is not yet delivered. Listeners are notified only when
    something changed.
    """
    message = db.query(Message).filter(Message.external_message_id == external_message_id).first()
    if message is None:
        logger.warning(
            "Received message_ack for an unknown external_message_id",
            extra={"context": {"external_id": external_message_id, "ack": ack, "provider": provider}},
        )
        return None

    status = ACK_STATUS_TABLES.get(provider, {}).get(ack)
    if status is None:
        logger.info(
            "Ack without status mapping ignored",
            extra={"context": {"external_id": external_message_id, "ack": ack, "provider": provider}},
        )
        return message

    now = datetime.now(timezone.utc)
    changed = 0
    if status == DeliveryStatus.FAILED:
        changed += _apply(
            db,
            message,
            {Message.failed_at: now, Message.error_message: f"Provider reported delivery failure (ack {ack})"},
            Message.delivered_at.is_(None),
            Message.failed_at.is_(None),
        )
    else:
        for field in STATUS_FIELDS[status]:
            column = getattr(Message, field)
            changed += _apply(db, message, {column: now}, column.is_(None))
        if status != DeliveryStatus.SENT:
            changed += _apply(
                db, message, {Message.failed_at: None, Message.error_message: None}, Message.failed_at.isnot(None)
            )

    if not changed:
        return message

    db.refresh(message)
    logger.info(
        "Message status updated",
        extra={"context": {"message_id": str(message.id), "status": status.value, "provider": provider}},
    )
    notification_service.publish(notification_service.MESSAGE_UPDATED, notification_service.message_payload(message))
    return message
