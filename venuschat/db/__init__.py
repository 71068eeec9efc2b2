"""Relational storage: conversations, messages, billing and provider tables."""

from venuschat.db.base import Base
from venuschat.db.session import Database

__all__ = ["Base", "Database"]
