"""
QueuedMessage model: the delivery outbox consumed by the transport workers.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


class QueuedMessage(Base):
    __tablename__ = "queued_messages"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(String(36), nullable=False, index=True)
    batch_id = Column(String(36), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)  # order within the batch
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String(20), default="queued", index=True)  # queued, sending, sent, failed
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    recipient = relationship("Recipient", back_populates="queued_messages")
