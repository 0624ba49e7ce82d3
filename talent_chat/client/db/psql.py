from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import Session, sessionmaker

from talent_chat.db.session import SessionLocal


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
