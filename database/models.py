"""
ParkWise – Database Models (SQLAlchemy)

Every record lives in a single ``documents`` table keyed by its full
document path (``parkingLands/land1/slots/A1``); the JSON payload holds the
camelCase fields the dashboards read.
"""
from __future__ import annotations
from datetime import datetime
from sqlalchemy import (
    create_engine, Column, String, DateTime, JSON,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import enum, os
from dotenv import load_dotenv

load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./parkwise.db")

Base = declarative_base()


class UserRole(str, enum.Enum):
    OWNER    = "owner"
    GUARD    = "guard"
    CUSTOMER = "customer"

class SlotStatus(str, enum.Enum):
    AVAILABLE = "available"
    BOOKED    = "booked"
    OCCUPIED  = "occupied"

class BookingStatus(str, enum.Enum):
    PENDING   = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Document(Base):
    __tablename__ = "documents"
    path       = Column(String(512), primary_key=True)
    parent     = Column(String(512), index=True, nullable=False)
    doc_id     = Column(String(128), nullable=False)
    data       = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def make_engine(url: str):
    if url.startswith("sqlite"):
        # an in-memory database only lives as long as its one connection
        in_memory = url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url
        extra = {"poolclass": StaticPool} if in_memory else {}
        return create_engine(url, connect_args={"check_same_thread": False}, **extra)
    return create_engine(url, pool_pre_ping=True)


def create_session_factory(url: str):
    """Fresh engine + sessionmaker for ``url`` with the schema created."""
    eng = make_engine(url)
    Base.metadata.create_all(bind=eng)
    return sessionmaker(autocommit=False, autoflush=False, bind=eng)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    Base.metadata.create_all(bind=engine)
