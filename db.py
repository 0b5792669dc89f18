import os
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    DATABASE_URL = "sqlite:///./local.db"

Base = declarative_base()


def utcnow():
    # datetime UTC with tzinfo
    return datetime.now(timezone.utc)


def make_engine(url: str = DATABASE_URL):
    kwargs = {"pool_pre_ping": True, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def make_session_factory(bind):
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


class DocumentRow(Base):
    """
    One row per document. `data` holds the JSON body; `version` mirrors
    data["version"] and is what conditional UPDATEs compare against.
    """
    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    store_id = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    version = Column(Integer, nullable=False, default=1)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UniqueKeyRow(Base):
    """
    Server-side unique index for insert-if-absent (discount codes, customer emails).
    """
    __tablename__ = "unique_keys"
    __table_args__ = (UniqueConstraint("collection", "store_id", "field", "value", name="uq_unique_keys"),)

    collection = Column(String, primary_key=True)
    store_id = Column(String, primary_key=True)
    field = Column(String, primary_key=True)
    value = Column(String, primary_key=True)
    doc_id = Column(String, nullable=False, index=True)


def init_db(bind) -> None:
    Base.metadata.create_all(bind=bind)
