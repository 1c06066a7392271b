from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4096)
    content_type: Literal["text"] = "text"


class MessageData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    external_message_id: Optional[str] = None
    type: str
    content: str
    content_type: str
    sender_type: str
    sender_user_id: Optional[UUID] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    success: bool
    message: MessageData
    error: Optional[str] = None


class ModeUpdateRequest(BaseModel):
    mode: Literal["ai", "human"]


class AssignmentRequest(BaseModel):
    assigned_user_id: Optional[UUID] = None


class StartConversationRequest(BaseModel):
    phone_number: str = Field(min_length=3)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    message: Optional[str] = None


class ConversationData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    chatbot_channel_id: UUID
    type: str
    name: Optional[str] = None
    external_conversation_id: str
    contact_channel_id: Optional[UUID] = None
    status: str
    mode: str
    assigned_user_id: Optional[UUID] = None
    last_message_at: Optional[datetime] = None
