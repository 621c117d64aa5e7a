from sqlalchemy.orm import Session

from blindbid.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
