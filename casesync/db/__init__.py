"""
Database Package - Local Store with SQLAlchemy
==============================================

Embedded persistence for the offline copy of the office's data.
"""

from .models import Base, AppDataRecord
from .session import get_engine, init_db, reset_engine
from .store import LocalStore

__all__ = [
    "Base", "AppDataRecord",
    "get_engine", "init_db", "reset_engine",
    "LocalStore",
]
