"""Agent-facing API: manual send, retry, mode switch, assignment, new conversations.

Callers identify themselves with ``X-User-Id``; every resource must belong to
the caller's organization.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from chatrelay.database import get_db
from chatrelay.logging_config import get_logger
from chatrelay.models import ChatbotChannel, Conversation, Message, User
from chatrelay.schemas.message import (
    AssignmentRequest,
    ConversationData,
    MessageData,
    MessageResponse,
    ModeUpdateRequest,
    SendMessageRequest,
    StartConversationRequest,
)
from chatrelay.services import conversation_service, dispatch_service, message_service
from chatrelay.services.message_service import SenderType
from chatrelay.services.state_machine import ConversationMode

logger = get_logger("chat")

router = APIRouter(tags=["chat"])


def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


def _check_organization(user: User, chatbot_channel: ChatbotChannel) -> None:
    if chatbot_channel.chatbot.organization_id != user.organization_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this organization")


def _get_conversation(db: Session, conversation_id: uuid.UUID, user: User) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    _check_organization(user, conversation.chatbot_channel)
    return conversation


def _send_manual_message(db: Session, conversation: Conversation, content: str, user: User) -> Message:
    message = message_service.create_outgoing(
        db,
        conversation,
        content,
        SenderType.HUMAN,
        sender_user_id=user.id,
    )
    dispatch_service.enqueue_dispatch(db, message)
    return message


@router.post("/conversations/{conversation_id}/messages", response_model=MessageResponse)
def send_message(
    conversation_id: uuid.UUID,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Store an agent's message and queue it for the channel sender."""
    conversation = _get_conversation(db, conversation_id, user)
    message = _send_manual_message(db, conversation, request.content, user)
    db.commit()
    db.refresh(message)
    logger.info(
        "Manual message queued",
        extra={"context": {"message_id": str(message.id), "conversation_id": str(conversation.id), "user_id": str(user.id)}},
    )
    return MessageResponse(success=True, message=MessageData.model_validate(message))


@router.post("/messages/{message_id}/retry", response_model=MessageResponse)
def retry_message(
    message_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    message = db.get(Message, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    _check_organization(user, message.conversation.chatbot_channel)

    result = dispatch_service.retry(db, message)
    if result.error_code == "not_failed":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    db.commit()
    db.refresh(message)
    return MessageResponse(success=result.ok, message=MessageData.model_validate(message), error=result.error)


@router.put("/conversations/{conversation_id}/mode", response_model=ConversationData)
def update_mode(
    conversation_id: uuid.UUID,
    request: ModeUpdateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conversation = _get_conversation(db, conversation_id, user)
    result = conversation_service.set_mode(db, conversation, ConversationMode(request.mode))
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    db.commit()
    db.refresh(conversation)
    return ConversationData.model_validate(conversation)


@router.put("/conversations/{conversation_id}/assignment", response_model=ConversationData)
def update_assignment(
    conversation_id: uuid.UUID,
    request: AssignmentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    conversation = _get_conversation(db, conversation_id, user)
    if request.assigned_user_id is not None:
        assignee = db.get(User, request.assigned_user_id)
        if assignee is None or assignee.organization_id != user.organization_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Assignee not found in organization")
    conversation_service.assign(db, conversation, request.assigned_user_id)
    db.commit()
    db.refresh(conversation)
    return ConversationData.model_validate(conversation)


@router.post(
    "/chatbot-channels/{chatbot_channel_id}/conversations",
    response_model=ConversationData,
    status_code=status.HTTP_201_CREATED,
)
def start_conversation(
    chatbot_channel_id: uuid.UUID,
    request: StartConversationRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Open (or reopen) a human-mode conversation with a phone number."""
    chatbot_channel = db.get(ChatbotChannel, chatbot_channel_id)
    if chatbot_channel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chatbot channel not found")
    _check_organization(user, chatbot_channel)

    conversation = conversation_service.start_human_conversation(
        db,
        chatbot_channel,
        request.phone_number,
        user.id,
        first_name=request.first_name,
        last_name=request.last_name,
    )
    if request.message and request.message.strip():
        _send_manual_message(db, conversation, request.message.strip(), user)
    db.commit()
    db.refresh(conversation)
    return ConversationData.model_validate(conversation)
