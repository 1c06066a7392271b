import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from chatrelay.database import Base, JSONType


class ChatbotChannel(Base):
    """A chatbot's configured instance of a provider channel."""

    __tablename__ = "chatbot_channels"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    chatbot_id = Column(Uuid, ForeignKey("chatbots.id"), nullable=False)
    channel_id = Column(Uuid, ForeignKey("channels.id"), nullable=False)
    name = Column(Text)
    webhook_url = Column(Text)
    credentials = Column(JSONType, nullable=False, default=dict)
    settings = Column(JSONType, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="active")  # active, connected, disconnected, inactive
    last_activity_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    chatbot = relationship("Chatbot", back_populates="chatbot_channels")
    channel = relationship("Channel")

    @property
    def channel_slug(self) -> str | None:
        return self.channel.slug if self.channel else None

    def credential(self, *keys: str) -> str | None:
        """First non-empty credential value among ``keys``."""
        credentials = self.credentials or {}
        for key in keys:
            value = credentials.get(key)
            if value:
                return str(value)
        return None
