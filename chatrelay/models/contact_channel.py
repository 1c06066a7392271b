import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from chatrelay.database import Base, JSONType


class ContactChannel(Base):
    __tablename__ = "contact_channels"
    __table_args__ = (
        UniqueConstraint(
            "chatbot_id", "channel_id", "channel_identifier", name="uq_contact_channels_identifier"
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    chatbot_id = Column(Uuid, ForeignKey("chatbots.id"), nullable=False)
    channel_id = Column(Uuid, ForeignKey("channels.id"), nullable=False)
    channel_identifier = Column(Text, nullable=False)
    channel_data = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    contact = relationship("Contact", back_populates="contact_channels")
