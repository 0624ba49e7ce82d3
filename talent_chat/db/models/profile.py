from sqlalchemy import Column, String

from talent_chat.db.session import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(64), primary_key=True)
    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)
    avatar_url = Column(String, nullable=True)
