import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from chatrelay.config import settings
from chatrelay.logging_config import get_logger
from chatrelay.models import Chatbot, Contact, Conversation, Message
from chatrelay.services import dispatch_service, job_service, message_service
from chatrelay.services.alert_service import alert_critical
from chatrelay.services.llm import AIGenerationFailed, LLMProvider, OpenAIProvider
from chatrelay.services.message_service import MessageType, SenderType
from chatrelay.services.result import Result
from chatrelay.services.state_machine import ConversationMode

logger = get_logger("ai_service")

JOB_KIND = "ai.generate_reply"

_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> LLMProvider:
    """Get or create the LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            default_timeout=settings.ai_timeout_seconds,
        )
    return _llm_provider


def retry_backoff_seconds() -> float:
    return settings.ai_retry_backoff_seconds


def should_respond(conversation: Conversation, message: Message) -> bool:
    """Only text written by a contact in an AI-mode conversation gets an automatic reply."""
    return (
        conversation.mode == ConversationMode.AI.value
        and message.type == MessageType.INCOMING.value
        and message.content_type == "text"
        and bool((message.content or "").strip())
    )


def enqueue_reply(db: Session, message: Message):
    return job_service.enqueue_job(
        db,
        queue=job_service.AI_QUEUE,
        kind=JOB_KIND,
        payload={"message_id": str(message.id)},
        max_attempts=settings.ai_max_attempts,
    )


def build_system_prompt(chatbot: Optional[Chatbot], contact: Optional[Contact] = None) -> str:
    prompt = (chatbot.system_prompt or "").strip() if chatbot else ""
    prompt = prompt or settings.default_system_prompt
    if contact is not None and contact.language_code:
        prompt += f"\n\nAlways answer in the language with ISO code '{contact.language_code}'."
    elif contact is not None and contact.country_code:
        prompt += (
            f"\n\nThe user is most likely in the country with code '{contact.country_code}'. "
            "Answer in that country's main language unless the user writes in another one."
        )
    return prompt


def get_conversation_history(db: Session, conversation_id, limit: Optional[int] = None) -> List[dict]:
    """Last ``limit`` messages as chat turns, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit or settings.ai_history_limit)
        .all()
    )
    history = [
        {
            "role": "user" if row.sender_type == SenderType.CONTACT.value else "assistant",
            "content": row.content,
        }
        for row in rows
        if row.content
    ]
    history.reverse()
    return history


def generate_reply(db: Session, conversation: Conversation) -> Result[str]:
    chatbot = conversation.chatbot_channel.chatbot if conversation.chatbot_channel else None
    contact = conversation.contact_channel.contact if conversation.contact_channel else None
    messages = [{"role": "system", "content": build_system_prompt(chatbot, contact)}]
    messages.extend(get_conversation_history(db, conversation.id))

    try:
        response = get_llm_provider().generate(messages, timeout_seconds=settings.ai_timeout_seconds)
    except AIGenerationFailed as e:
        logger.error(
            "AI generation failed",
            extra={"context": {"conversation_id": str(conversation.id), "error": e.reason}},
        )
        return Result.failure(e.reason, "ai_error")
    return Result.success(response.content)


def _reply_exists(db: Session, message: Message) -> bool:
    return (
        db.query(Message.id)
        .filter(
            Message.conversation_id == message.conversation_id,
            Message.sender_type == SenderType.AI.value,
            Message.message_metadata["reply_to_message_id"].as_string() == str(message.id),
        )
        .first()
        is not None
    )


def generate_and_send(db: Session, message_id) -> Optional[Message]:
    """Generate the AI reply to one incoming message and queue it for sending.

    Raises AIGenerationFailed so the job queue retries the attempt.
    """
    message = db.get(Message, uuid.UUID(str(message_id)))
    if message is None:
        logger.warning("AI job for missing message", extra={"context": {"message_id": str(message_id)}})
        return None

    conversation = message.conversation
    if not should_respond(conversation, message):
        logger.info(
            "AI reply skipped",
            extra={"context": {"message_id": str(message.id), "mode": conversation.mode}},
        )
        return None
    if _reply_exists(db, message):
        logger.info("AI reply already stored", extra={"context": {"message_id": str(message.id)}})
        return None

    result = generate_reply(db, conversation)
    if not result.ok:
        raise AIGenerationFailed(result.error)

    reply = message_service.create_outgoing(
        db,
        conversation,
        result.value,
        SenderType.AI,
        metadata={"reply_to_message_id": str(message.id)},
    )
    dispatch_service.enqueue_dispatch(db, reply)
    logger.info(
        "AI reply stored",
        extra={"context": {"message_id": str(reply.id), "conversation_id": str(conversation.id)}},
    )
    return reply


def run_job(db: Session, payload: dict) -> None:
    generate_and_send(db, payload["message_id"])


def on_job_failed(db: Session, payload: dict, error: str) -> None:
    context = {"message_id": payload.get("message_id"), "attempts": settings.ai_max_attempts, "error": error}
    logger.critical("AI reply failed after all attempts", extra={"context": context})
    alert_critical("AI reply failed after all attempts", context)
