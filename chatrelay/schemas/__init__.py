from chatrelay.schemas.message import (
    AssignmentRequest,
    ConversationData,
    MessageData,
    MessageResponse,
    ModeUpdateRequest,
    SendMessageRequest,
    StartConversationRequest,
)
from chatrelay.schemas.webhook import TextMeBotWebhookRequest, WebhookAck, WhatsappWebWebhookRequest

__all__ = [
    "AssignmentRequest",
    "ConversationData",
    "MessageData",
    "MessageResponse",
    "ModeUpdateRequest",
    "SendMessageRequest",
    "StartConversationRequest",
    "TextMeBotWebhookRequest",
    "WebhookAck",
    "WhatsappWebWebhookRequest",
]
