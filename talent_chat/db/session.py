from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import talent_chat.config.config as configs

DATABASE_URL = configs.DATABASE_URL

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()
