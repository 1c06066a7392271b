import json

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from chatrelay.channels.base import AdapterError, ChannelNotFound, MalformedPayload
from chatrelay.channels.textmebot import TextMeBotAdapter
from chatrelay.channels.whatsapp_cloud import verify_subscription
from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.logging_config import get_logger
from chatrelay.schemas.webhook import TextMeBotWebhookRequest, WebhookAck, WhatsappWebWebhookRequest
from chatrelay.services import webhook_service
from chatrelay.services.alert_service import alert_error

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])


def _query_param(request: Request, name: str):
    # Meta sends hub.mode; some proxies rewrite dots to underscores.
    return request.query_params.get(name) or request.query_params.get(name.replace(".", "_"))


@router.get("/whatsapp")
async def verify_whatsapp_webhook(request: Request):
    """Cloud API subscription handshake."""
    challenge = verify_subscription(
        _query_param(request, "hub.mode"),
        _query_param(request, "hub.verify_token"),
        _query_param(request, "hub.challenge"),
        settings.whatsapp_verify_token,
    )
    if challenge is None:
        logger.warning("WhatsApp webhook verification failed")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(challenge)


def _cloud_payload(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise MalformedPayload(f"Cloud webhook body is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedPayload(f"Cloud webhook body must be an object, got {type(payload).__name__}")
    return payload


@router.post("/whatsapp")
async def handle_whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    """Cloud API events. Any body, even an unparseable one, gets a 2xx so Meta does not disable the hook."""
    body = await request.body()
    return await run_in_threadpool(_process_cloud_body, db, body)


def _process_cloud_body(db: Session, body: bytes) -> Response:
    try:
        results = webhook_service.process_cloud_webhook(db, _cloud_payload(body))
    except AdapterError as e:
        db.rollback()
        logger.warning("WhatsApp webhook not processed", extra={"context": {"error": str(e)}})
        return Response(status_code=status.HTTP_202_ACCEPTED)
    except Exception as e:
        db.rollback()
        logger.error("WhatsApp webhook processing failed", extra={"context": {"error": str(e)}}, exc_info=True)
        alert_error("WhatsApp webhook processing failed", {"error": str(e)})
        return Response(status_code=status.HTTP_202_ACCEPTED)

    logger.info("WhatsApp webhook processed", extra={"context": results})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/whatsapp_web", response_model=WebhookAck)
def handle_whatsapp_web_webhook(payload: WhatsappWebWebhookRequest, db: Session = Depends(get_db)) -> WebhookAck:
    logger.info(
        "WhatsApp-Web webhook received",
        extra={"context": {"session_id": payload.session, "event": payload.event_type or payload.dataType}},
    )
    webhook_service.process_whatsapp_web_webhook(db, payload)
    return WebhookAck()


@router.post("/textmebot", response_model=WebhookAck)
def handle_textmebot_webhook(payload: TextMeBotWebhookRequest, db: Session = Depends(get_db)) -> WebhookAck:
    try:
        chatbot_channel = TextMeBotAdapter(db).resolve_channel(payload.to)
    except ChannelNotFound as e:
        logger.warning("TextMeBot webhook for unknown number", extra={"context": {"to": payload.to}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    try:
        webhook_service.process_textmebot_webhook(db, payload, chatbot_channel)
    except AdapterError as e:
        db.rollback()
        logger.warning(
            "TextMeBot webhook not processed",
            extra={"context": {"to": payload.to, "from": payload.sender, "error": str(e)}},
        )
    return WebhookAck()
