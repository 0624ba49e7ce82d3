from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from talent_chat.db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    # Parent conversation row
    conversation_id = Column(String(36), ForeignKey("conversations.id"), index=True, nullable=False)
    sender_id = Column(String(64), nullable=False)
    # Null for media-only messages
    content = Column(Text, nullable=True)
    media_url = Column(String, nullable=True)
    # image | video | file
    media_type = Column(String(16), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    # Assigned here rather than server_default so ordering keeps sub-second precision
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
