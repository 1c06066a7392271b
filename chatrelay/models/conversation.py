import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "chatbot_channel_id", "external_conversation_id", name="uq_conversations_channel_external"
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    chatbot_channel_id = Column(Uuid, ForeignKey("chatbot_channels.id"), nullable=False)
    type = Column(Text, nullable=False, default="direct")  # direct, group
    name = Column(Text)
    external_conversation_id = Column(Text, nullable=False)
    contact_channel_id = Column(Uuid, ForeignKey("contact_channels.id"))
    status = Column(Text, nullable=False, default="active")  # active, closed
    mode = Column(Text, nullable=False, default="ai")  # ai, human
    assigned_user_id = Column(Uuid, ForeignKey("users.id"))
    last_message_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    chatbot_channel = relationship("ChatbotChannel")
    contact_channel = relationship("ContactChannel")
    assigned_user = relationship("User")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")

    @property
    def is_group(self) -> bool:
        return self.type == "group"
