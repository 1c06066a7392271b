import uuid
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from chatrelay.channels.base import SendError, UnsupportedChannel
from chatrelay.channels.registry import SenderRegistry, get_sender_registry
from chatrelay.channels.whatsapp_web import BridgeDetectionError
from chatrelay.logging_config import get_logger
from chatrelay.models import Message
from chatrelay.services import job_service, message_service
from chatrelay.services.alert_service import alert_critical, alert_warning
from chatrelay.services.message_service import MessageType
from chatrelay.services.result import Result

logger = get_logger("dispatch_service")

JOB_KIND = "outbound.dispatch"
UNEXPECTED_ERROR = "An unexpected error occurred."


def enqueue_dispatch(db: Session, message: Message):
    # Sends are never retried automatically; failures wait for a manual retry.
    return job_service.enqueue_job(
        db,
        queue=job_service.OUTBOUND_QUEUE,
        kind=JOB_KIND,
        payload={"message_id": str(message.id)},
        max_attempts=1,
    )


def is_dispatchable(message: Message) -> bool:
    return message.type == MessageType.OUTGOING.value and message.content_type == "text"


def dispatch(db: Session, message: Message, registry: Optional[SenderRegistry] = None) -> Result[Message]:
    """Send one outgoing text message through its channel's sender and record the outcome."""
    if not is_dispatchable(message):
        logger.info(
            "Dispatch skipped for non-text or non-outgoing message",
            extra={"context": {"message_id": str(message.id), "type": message.type, "content_type": message.content_type}},
        )
        return Result.success(message)

    chatbot_channel = message.conversation.chatbot_channel
    slug = chatbot_channel.channel_slug
    context = {"message_id": str(message.id), "channel": slug, "chatbot_channel_id": str(chatbot_channel.id)}
    registry = registry or get_sender_registry()

    try:
        sender = registry.get_sender(slug, chatbot_channel)
        external_id = sender.send(message)
    except UnsupportedChannel as e:
        logger.error("No sender for channel", extra={"context": {**context, "error": e.reason}})
        message_service.mark_failed(db, message, e.reason)
        return Result.failure(e.reason, "unsupported_channel")
    except SendError as e:
        logger.warning(
            "Message send failed",
            extra={"context": {**context, "error": e.reason, "error_type": type(e).__name__}},
        )
        if isinstance(e, BridgeDetectionError):
            alert_warning("WhatsApp-Web bridge unreachable", {**context, "error": e.reason})
        message_service.mark_failed(db, message, e.reason)
        return Result.failure(e.reason, "send_failed")
    except Exception as e:
        logger.critical("Unexpected error while sending message", extra={"context": {**context, "error": str(e)}}, exc_info=True)
        alert_critical("Unexpected error while sending message", {**context, "error": str(e)})
        message_service.mark_failed(db, message, UNEXPECTED_ERROR)
        return Result.failure(str(e), "unexpected_error")

    message_service.mark_sent(db, message, external_id)
    logger.info("Message dispatched", extra={"context": {**context, "external_id": external_id}})
    return Result.success(message)


def dispatch_many(
    db: Session, messages: Iterable[Message], registry: Optional[SenderRegistry] = None
) -> list[Result[Message]]:
    return [dispatch(db, message, registry) for message in messages]


def retry(db: Session, message: Message, registry: Optional[SenderRegistry] = None) -> Result[Message]:
    """Re-run dispatch for a failed message, starting from cleared failure fields."""
    if message.failed_at is None:
        return Result.failure("Only failed messages can be retried", "not_failed")
    message_service.reset_failure(db, message)
    logger.info("Retrying failed message", extra={"context": {"message_id": str(message.id)}})
    return dispatch(db, message, registry)


def run_job(db: Session, payload: dict) -> None:
    message = db.get(Message, uuid.UUID(str(payload["message_id"])))
    if message is None:
        logger.warning("Dispatch job for missing message", extra={"context": payload})
        return
    if message.sent_at is not None:
        logger.info("Message already sent", extra={"context": {"message_id": str(message.id)}})
        return
    dispatch(db, message)
