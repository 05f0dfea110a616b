"""
Delivery queue hand-off.

A publish either commits the whole batch or raises PublishFailure, leaving
nothing behind, so a failed send can be retried safely. Delivery is
at-least-once; nothing here deduplicates on the consumer side.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Callable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..engine.drafts import OutboundMessage
from ..errors import PublishFailure
from ..logging_config import delivery_logger as logger, timed
from ..models.queued_message import QueuedMessage


class DeliveryQueuePublisher(ABC):
    """Accepts an approved batch for delivery."""

    @abstractmethod
    async def publish(self, campaign_id: str, messages: List[OutboundMessage]) -> str:
        """Queue the batch and return a batch id, or raise PublishFailure."""


class OutboxPublisher(DeliveryQueuePublisher):
    """Writes the batch to the ``queued_messages`` outbox in one transaction."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @timed(logger)
    async def publish(self, campaign_id: str, messages: List[OutboundMessage]) -> str:
        batch_id = str(uuid.uuid4())
        # Session work is blocking; keep it off the event loop
        await asyncio.to_thread(self._write_batch, campaign_id, batch_id, messages)

        logger.info("Queued campaign batch", campaign_id=campaign_id, batch_id=batch_id, count=len(messages))
        return batch_id

    def _write_batch(self, campaign_id: str, batch_id: str, messages: List[OutboundMessage]):
        db = self.session_factory()
        try:
            db.add_all([
                QueuedMessage(
                    campaign_id=campaign_id,
                    batch_id=batch_id,
                    recipient_id=message.recipient_id,
                    position=position,
                    subject=message.subject,
                    body=message.body,
                )
                for position, message in enumerate(messages)
            ])
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to queue campaign batch", error=e, campaign_id=campaign_id)
            raise PublishFailure("Failed to queue messages for delivery", {"campaign_id": campaign_id})
        finally:
            db.close()
