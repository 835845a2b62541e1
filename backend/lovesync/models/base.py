from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Base = declarative_base()


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


def create_store_engine(url: str) -> Engine:
    """Build an engine for the local snapshot database."""
    connect_args = {}
    if url.startswith("sqlite"):
        # The API test client and the event loop may touch the store from different threads
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
