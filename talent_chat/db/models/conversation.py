import uuid

from sqlalchemy import Column, DateTime, String, UniqueConstraint
from sqlalchemy.sql import func

from talent_chat.db.session import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    __tablename__ = "conversations"
    # Pair is stored in canonical order (participant_a < participant_b)
    __table_args__ = (UniqueConstraint("participant_a", "participant_b", name="uq_conversations_pair"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    participant_a = Column(String(64), index=True, nullable=False)
    participant_b = Column(String(64), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    # Bumped to the latest message's created_at on insert
    updated_at = Column(DateTime(timezone=True), nullable=True)
