"""Inbound pipeline: canonical events -> conversation -> stored message -> AI reply job."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from chatrelay.channels.base import AdaptedWebhook, AdapterError, InboundEvent
from chatrelay.channels.textmebot import TextMeBotAdapter
from chatrelay.channels.whatsapp_cloud import CloudApiAdapter
from chatrelay.channels.whatsapp_web import (
    WhatsappWebAdapter,
    WhatsappWebClient,
    bridge_url_for_chatbot,
    chatbot_id_from_session,
    session_id_for,
)
from chatrelay.logging_config import get_logger
from chatrelay.models import ChatbotChannel, Conversation, Message
from chatrelay.schemas.webhook import TextMeBotWebhookRequest, WhatsappWebWebhookRequest
from chatrelay.services import ai_service, conversation_service, message_service, notification_service
from chatrelay.services.alert_service import alert_error, alert_warning

logger = get_logger("webhook_service")

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"

GROUP_SUFFIX = "@g.us"


def handle_inbound_event(db: Session, chatbot_channel: ChatbotChannel, event: InboundEvent) -> Optional[Message]:
    """Run one canonical event through resolver and recorder; queue the AI reply when due."""
    conversation = conversation_service.resolve(db, chatbot_channel, event)
    if conversation.is_group and (conversation.name or "").endswith(GROUP_SUFFIX):
        _fetch_group_name(db, chatbot_channel, conversation)

    if event.is_echo_of_own_message:
        return message_service.record_echo(db, conversation, event)

    if message_service.find_by_external_id(db, conversation.id, event.external_message_id) is not None:
        logger.info(
            "Duplicate webhook delivery ignored",
            extra={"context": {"conversation_id": str(conversation.id), "external_id": event.external_message_id}},
        )
        return None

    participant = conversation_service.resolve_participant(db, chatbot_channel, event)
    message = message_service.record_incoming(db, conversation, event, sender_contact=participant)
    if ai_service.should_respond(conversation, message):
        ai_service.enqueue_reply(db, message)
    return message


def process_adapted(db: Session, adapted: AdaptedWebhook) -> dict[str, int]:
    results = {"messages": 0, "statuses": 0}
    channels: dict = {}
    now = datetime.now(timezone.utc)

    for event in adapted.events:
        chatbot_channel = channels.get(event.chatbot_channel_id)
        if chatbot_channel is None:
            chatbot_channel = db.get(ChatbotChannel, event.chatbot_channel_id)
            chatbot_channel.last_activity_at = now
            channels[event.chatbot_channel_id] = chatbot_channel
        if handle_inbound_event(db, chatbot_channel, event) is not None:
            results["messages"] += 1

    for status in adapted.statuses:
        if message_service.update_status(db, status.external_message_id, status.ack, status.provider) is not None:
            results["statuses"] += 1

    db.commit()
    return results


def process_cloud_webhook(db: Session, payload: dict) -> dict[str, int]:
    adapted = CloudApiAdapter(db).adapt(payload)
    return process_adapted(db, adapted)


def process_textmebot_webhook(
    db: Session, request: TextMeBotWebhookRequest, chatbot_channel: ChatbotChannel
) -> dict[str, int]:
    adapted = TextMeBotAdapter(db).adapt(request, chatbot_channel)
    return process_adapted(db, adapted)


def process_whatsapp_web_webhook(db: Session, request: WhatsappWebWebhookRequest) -> None:
    """Handle one bridge webhook. Failures are logged; the bridge always gets an ack."""
    kind = request.event_type or request.dataType
    session_id = request.session
    try:
        if kind in ("qr", "qr_code_received"):
            _handle_qr(request)
        elif kind in ("ready", "client_ready", "authenticated"):
            _handle_ready(db, request)
        elif kind == "disconnected":
            _set_channel_status(db, session_id, STATUS_DISCONNECTED)
        elif kind == "group_update":
            _handle_group_update(db, request)
        else:
            adapted = WhatsappWebAdapter(db).adapt(request)
            process_adapted(db, adapted)
    except AdapterError as e:
        db.rollback()
        logger.error(
            "WhatsApp-Web webhook rejected",
            extra={"context": {"session_id": session_id, "event": kind, "error": str(e)}},
        )
    except Exception as e:
        db.rollback()
        logger.error(
            "WhatsApp-Web webhook processing failed",
            extra={"context": {"session_id": session_id, "event": kind, "error": str(e)}},
            exc_info=True,
        )
        alert_error("WhatsApp-Web webhook processing failed", {"session_id": session_id, "event": kind, "error": str(e)})


def _handle_qr(request: WhatsappWebWebhookRequest) -> None:
    qr = request.qr_code if request.is_legacy else (request.data or {}).get("qr")
    if not qr:
        logger.warning("QR code event without QR data", extra={"context": {"session_id": request.session}})
        return
    chatbot_id = chatbot_id_from_session(request.session)
    notification_service.publish(
        notification_service.CHANNEL_QR_CODE,
        {"session_id": request.session, "chatbot_id": str(chatbot_id) if chatbot_id else None, "qr": qr},
    )


def _handle_ready(db: Session, request: WhatsappWebWebhookRequest) -> None:
    chatbot_channel = WhatsappWebAdapter(db).resolve_channel(request.session)
    credentials = dict(chatbot_channel.credentials or {})
    credentials["session_id"] = request.session

    if request.is_legacy:
        if request.phone_number_id:
            credentials["phone_number_id"] = request.phone_number_id
    else:
        client = WhatsappWebClient(bridge_url_for_chatbot(chatbot_channel.chatbot_id))
        session_info = client.get_session_info(request.session) or {}
        wid = (session_info.get("wid") or {}).get("user")
        if not wid:
            logger.error(
                "Ready event without WID in session info; channel left unchanged",
                extra={"context": {"session_id": request.session}},
            )
            return
        credentials.update(
            {
                "phone_number": wid,
                "phone_number_id": wid,
                "display_phone_number": wid,
                "phone_number_verified_name": session_info.get("pushname"),
            }
        )

    chatbot_channel.credentials = credentials
    _apply_channel_status(db, chatbot_channel, STATUS_CONNECTED)


def _set_channel_status(db: Session, session_id: str, status: str) -> None:
    chatbot_channel = WhatsappWebAdapter(db).resolve_channel(session_id)
    _apply_channel_status(db, chatbot_channel, status)
    if status == STATUS_DISCONNECTED:
        alert_warning("WhatsApp-Web session disconnected", {"session_id": session_id})


def _apply_channel_status(db: Session, chatbot_channel: ChatbotChannel, status: str) -> None:
    chatbot_channel.status = status
    chatbot_channel.last_activity_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(
        "Chatbot channel status changed",
        extra={"context": {"chatbot_channel_id": str(chatbot_channel.id), "status": status}},
    )
    notification_service.publish(
        notification_service.CHANNEL_STATUS,
        {"chatbot_channel_id": str(chatbot_channel.id), "status": status},
    )


def _handle_group_update(db: Session, request: WhatsappWebWebhookRequest) -> None:
    notification = (request.data or {}).get("notification") or {}
    if notification.get("type") not in ("create", "subject"):
        return
    chatbot_channel = WhatsappWebAdapter(db).resolve_channel(request.session)
    if conversation_service.update_group_name(db, chatbot_channel, notification.get("chatId"), notification.get("body")):
        db.commit()


def _fetch_group_name(db: Session, chatbot_channel: ChatbotChannel, conversation: Conversation) -> None:
    """Groups first seen through a message are named after their id until the bridge tells us the subject."""
    group_id = conversation.external_conversation_id
    session_id = chatbot_channel.credential("session_id") or session_id_for(chatbot_channel.chatbot_id)
    client = WhatsappWebClient(bridge_url_for_chatbot(chatbot_channel.chatbot_id))
    info = client.get_group_info(session_id, group_id) or {}
    if conversation_service.update_group_name(db, chatbot_channel, group_id, info.get("name")):
        notification_service.publish(
            notification_service.CONVERSATION_CREATED,
            notification_service.conversation_payload(conversation),
        )
