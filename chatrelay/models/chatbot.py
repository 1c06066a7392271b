import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class Chatbot(Base):
    __tablename__ = "chatbots"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    name = Column(Text, nullable=False)
    system_prompt = Column(Text)
    ai_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    organization = relationship("Organization", back_populates="chatbots")
    chatbot_channels = relationship("ChatbotChannel", back_populates="chatbot")
