import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from chatrelay.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "external_message_id", name="uq_messages_conversation_external"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    external_message_id = Column(Text)
    type = Column(Text, nullable=False)  # incoming, outgoing
    content = Column(Text, nullable=False, default="")
    content_type = Column(Text, nullable=False, default="text")  # text, image, audio, video, document
    sender_type = Column(Text, nullable=False)  # contact, ai, human
    sender_user_id = Column(Uuid, ForeignKey("users.id"))
    sender_contact_id = Column(Uuid, ForeignKey("contacts.id"))
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    sent_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    conversation = relationship("Conversation", back_populates="messages")
    sender_contact = relationship("Contact")
