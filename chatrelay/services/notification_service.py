"""In-process notifications for real-time UI and push listeners.

Publishing never raises: a failing listener is logged and the remaining
listeners still run.
"""

from collections import defaultdict
from typing import Any, Callable, DefaultDict

from chatrelay.logging_config import get_logger

logger = get_logger("notifications")

CONVERSATION_CREATED = "conversation.created"
MESSAGE_RECEIVED = "message.received"
MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"
CHANNEL_QR_CODE = "channel.qr_code"
CHANNEL_STATUS = "channel.status"

Listener = Callable[[dict[str, Any]], None]

_listeners: DefaultDict[str, list[Listener]] = defaultdict(list)


def subscribe(event: str, listener: Listener) -> None:
    _listeners[event].append(listener)


def unsubscribe(event: str, listener: Listener) -> None:
    if listener in _listeners.get(event, []):
        _listeners[event].remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def publish(event: str, payload: dict[str, Any]) -> None:
    logger.info(f"Notification: {event}", extra={"context": {"event": event, **_summary(payload)}})
    for listener in list(_listeners.get(event, [])):
        try:
            listener(payload)
        except Exception as e:
            logger.error(
                "Notification listener failed",
                extra={"context": {"event": event, "error": str(e)}},
            )


def _summary(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key.endswith("_id")}


def conversation_payload(conversation) -> dict[str, Any]:
    return {
        "conversation_id": str(conversation.id),
        "chatbot_channel_id": str(conversation.chatbot_channel_id),
        "type": conversation.type,
        "name": conversation.name,
        "mode": conversation.mode,
        "external_conversation_id": conversation.external_conversation_id,
    }


def message_payload(message) -> dict[str, Any]:
    def _iso(value):
        return value.isoformat() if value else None

    return {
        "message_id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "external_message_id": message.external_message_id,
        "type": message.type,
        "content": message.content,
        "content_type": message.content_type,
        "sender_type": message.sender_type,
        "sent_at": _iso(message.sent_at),
        "delivered_at": _iso(message.delivered_at),
        "read_at": _iso(message.read_at),
        "failed_at": _iso(message.failed_at),
        "error_message": message.error_message,
    }
