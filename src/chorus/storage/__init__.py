"""Persistence for chats, messages, facts and cached replies."""

from .database import ChatDatabase
from .kv import InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore

__all__ = [
    "ChatDatabase",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "SQLiteKeyValueStore",
]
