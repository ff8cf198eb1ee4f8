"""Persistent storage."""

from conductor.storage.database import Database

__all__ = ["Database"]
