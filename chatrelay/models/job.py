import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Text, Uuid

from chatrelay.database import Base, JSONType


class Job(Base):
    """Queued background task (AI responses, outbound sends)."""

    __tablename__ = "jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    queue = Column(Text, nullable=False, index=True)  # ai-responses, outbound
    kind = Column(Text, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, DONE, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    next_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
