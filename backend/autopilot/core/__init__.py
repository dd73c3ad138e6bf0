"""
Autopilot - Core Package
========================

Configuration, persistence, events and the cycle engine.
"""

from autopilot.core.config import settings
from autopilot.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
