"""
Read-only recipient profile lookup for personalization.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import PermanentGenerationFailure
from ..models.recipient import Recipient


class RecipientProfileSource(ABC):
    """Supplies the fields the generation service personalizes with."""

    @abstractmethod
    async def get_profile(self, recipient_id: int) -> Dict[str, Any]:
        """Return the profile or raise PermanentGenerationFailure."""


class DatabaseRecipientSource(RecipientProfileSource):
    """Profiles backed by the ``recipients`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def get_profile(self, recipient_id: int) -> Dict[str, Any]:
        return await asyncio.to_thread(self._load_profile, recipient_id)

    def _load_profile(self, recipient_id: int) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            recipient = db.query(Recipient).filter(Recipient.id == recipient_id).first()
            if recipient is None:
                raise PermanentGenerationFailure(f"Recipient {recipient_id} not found", kind="profile_missing")
            return recipient.to_profile()
        except SQLAlchemyError as e:
            raise PermanentGenerationFailure(f"Recipient lookup failed: {e}", kind="profile_unavailable")
        finally:
            db.close()
