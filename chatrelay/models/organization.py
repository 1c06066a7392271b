import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    users = relationship("User", back_populates="organization")
    chatbots = relationship("Chatbot", back_populates="organization")
