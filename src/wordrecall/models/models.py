"""Database models for the progress store."""
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, String

from wordrecall.models.base import Base


class Document(Base):
    """One JSON document in a named collection.

    The progress store is a key-value store; every collection shares this
    table and is addressed by ``(collection, key)``.
    """

    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
