"""
Template model for reusable campaign instructions.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from datetime import datetime, timezone
from ..database import Base


class Template(Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)  # instruction text prepended to generation context
    category = Column(String(50), nullable=False, default="general")  # thank_you, appeal, update, event
    use_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def to_reference(self) -> dict:
        """Snapshot stored on a campaign when the template is selected."""
        return {"id": self.id, "name": self.name, "content": self.content}
