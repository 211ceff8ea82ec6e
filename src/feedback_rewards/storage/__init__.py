"""Persistence layer."""

from feedback_rewards.storage.db import Base, Database, db, dialect_insert

__all__ = ["Base", "Database", "db", "dialect_insert"]
