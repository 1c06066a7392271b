import uuid

from sqlalchemy import Column, Text, Uuid

from chatrelay.database import Base


class Channel(Base):
    __tablename__ = "channels"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    slug = Column(Text, nullable=False, unique=True)  # whatsapp, whatsapp-web, textmebot
    name = Column(Text, nullable=False)
