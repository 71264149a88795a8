"""
Database Module
===============

Provides database session management and base model.
"""

from app.db.base import Base
from app.db.session import close_db, get_db, get_session_factory, init_db, session_scope

__all__ = ["Base", "close_db", "get_db", "get_session_factory", "init_db", "session_scope"]
