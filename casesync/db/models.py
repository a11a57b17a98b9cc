"""
SQLAlchemy Models for the Local Store
=====================================

The local store is a key-value table: one JSON document per owner id.
The whole document is replaced in a single transaction, so a sync either
swaps in the merged state or leaves the previous state untouched.

Supports both SQLite (default) and PostgreSQL via SQLAlchemy.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, JSON, Integer
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class AppDataRecord(Base):
    """Hierarchical document for one owner"""
    __tablename__ = "app_data"

    owner_id = Column(String(64), primary_key=True)
    payload = Column(JSON, nullable=False)
    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<AppDataRecord owner={self.owner_id} rev={self.revision}>"
