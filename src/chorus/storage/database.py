"""Chat database: namespaced JSON collections on top of a key-value store."""

import json
import logging
from typing import Any, Callable, TypeVar

from ..models import CacheEntry, Chat, Fact, Message, MessageFeedback, User, new_id
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

CHATS_KEY = "chorus-chats"
MESSAGES_KEY = "chorus-messages"
MEMORY_KEY = "chorus-memory"
CACHE_KEY = "chorus-cache"
FEEDBACK_KEY = "chorus-feedback"

DEFAULT_CHAT_TITLE = "General"

T = TypeVar("T")


class ChatDatabase:
    """Persists chats, messages, facts, cache entries and feedback.

    Each collection lives under its own key and is loaded independently the
    first time it is needed. A collection that cannot be decoded is logged,
    cleared in the store and treated as empty; the others are unaffected.
    Every mutation rewrites the whole collection.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._chats: list[Chat] | None = None
        self._messages: list[Message] | None = None
        self._facts: list[Fact] | None = None
        self._cache: dict[str, CacheEntry] | None = None
        self._feedback: dict[str, MessageFeedback] | None = None

    # --- loading -----------------------------------------------------------

    def _read_json(self, key: str, expected: type) -> Any:
        raw = self.store.get(key)
        if raw is None:
            return expected()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt collection {key}, resetting: {e}")
            self.store.delete(key)
            return expected()
        if not isinstance(data, expected):
            logger.warning(f"Collection {key} has unexpected type {type(data).__name__}, resetting")
            self.store.delete(key)
            return expected()
        return data

    def _load_list(self, key: str, parse: Callable[[dict[str, Any]], T]) -> list[T]:
        items: list[T] = []
        for raw in self._read_json(key, list):
            try:
                items.append(parse(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Skipping invalid record in {key}: {e}")
        return items

    def _write(self, key: str, data: Any) -> None:
        self.store.set(key, json.dumps(data, ensure_ascii=False))

    def reload(self) -> None:
        """Drop in-memory copies so the next access re-reads the store."""
        self._chats = None
        self._messages = None
        self._facts = None
        self._cache = None
        self._feedback = None

    # --- chats -------------------------------------------------------------

    def _all_chats(self) -> list[Chat]:
        if self._chats is None:
            self._chats = self._load_list(CHATS_KEY, Chat.from_dict)
        return self._chats

    def _save_chats(self) -> None:
        self._write(CHATS_KEY, [c.to_dict() for c in self._all_chats()])

    def list_chats(self) -> list[Chat]:
        return sorted(self._all_chats(), key=lambda c: c.created_at)

    def get_chat(self, chat_id: str) -> Chat | None:
        for chat in self._all_chats():
            if chat.id == chat_id:
                return chat
        return None

    def create_chat(self, title: str, participants: list[User] | None = None) -> Chat:
        chat = Chat(id=new_id("chat-"), title=title, participants=list(participants or []))
        self._all_chats().append(chat)
        self._save_chats()
        return chat

    def ensure_default_chat(self, user: User) -> Chat:
        """Return the oldest chat, creating one if none exist."""
        chats = self.list_chats()
        if chats:
            return chats[0]
        return self.create_chat(DEFAULT_CHAT_TITLE, participants=[user])

    def delete_chat(self, chat_id: str) -> bool:
        chats = self._all_chats()
        remaining = [c for c in chats if c.id != chat_id]
        if len(remaining) == len(chats):
            return False
        self._chats = remaining
        self._save_chats()
        self.clear_chat(chat_id)
        return True

    # --- messages ----------------------------------------------------------

    def _all_messages(self) -> list[Message]:
        if self._messages is None:
            self._messages = self._load_list(MESSAGES_KEY, Message.from_dict)
        return self._messages

    def _save_messages(self) -> None:
        self._write(MESSAGES_KEY, [m.to_dict() for m in self._all_messages()])

    def add_message(self, message: Message) -> Message:
        self._all_messages().append(message)
        self._save_messages()
        return message

    def get_message(self, message_id: str) -> Message | None:
        for message in self._all_messages():
            if message.id == message_id:
                return message
        return None

    def update_message(self, message_id: str, content: str) -> Message | None:
        """Replace a committed message's content. Returns None if unknown."""
        message = self.get_message(message_id)
        if message is None:
            return None
        message.content = content
        self._save_messages()
        return message

    def get_messages(self, chat_id: str, limit: int | None = None) -> list[Message]:
        """Messages of one chat in creation order.

        Args:
            chat_id: The chat to read.
            limit: If set, only the most recent ``limit`` messages.
        """
        messages = [m for m in self._all_messages() if m.chat_id == chat_id]
        messages.sort(key=lambda m: m.created_at)
        if limit is not None:
            if limit <= 0:
                return []
            messages = messages[-limit:]
        return messages

    def clear_chat(self, chat_id: str) -> int:
        """Delete every message in a chat. Returns the number removed."""
        messages = self._all_messages()
        remaining = [m for m in messages if m.chat_id != chat_id]
        removed = len(messages) - len(remaining)
        if removed:
            self._messages = remaining
            self._save_messages()
        return removed

    # --- facts -------------------------------------------------------------

    def load_facts(self) -> list[Fact]:
        if self._facts is None:
            self._facts = self._load_list(MEMORY_KEY, Fact.from_dict)
        return list(self._facts)

    def save_facts(self, facts: list[Fact]) -> None:
        self._facts = list(facts)
        self._write(MEMORY_KEY, [f.to_dict() for f in self._facts])

    # --- cache -------------------------------------------------------------

    def load_cache(self) -> dict[str, CacheEntry]:
        if self._cache is None:
            entries: dict[str, CacheEntry] = {}
            for key, raw in self._read_json(CACHE_KEY, dict).items():
                try:
                    entries[key] = CacheEntry.from_dict(raw)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Skipping invalid cache entry {key}: {e}")
            self._cache = entries
        return dict(self._cache)

    def save_cache(self, entries: dict[str, CacheEntry]) -> None:
        self._cache = dict(entries)
        self._write(CACHE_KEY, {k: v.to_dict() for k, v in self._cache.items()})

    # --- feedback ----------------------------------------------------------

    def _all_feedback(self) -> dict[str, MessageFeedback]:
        if self._feedback is None:
            items = self._load_list(FEEDBACK_KEY, MessageFeedback.from_dict)
            self._feedback = {f.message_id: f for f in items}
        return self._feedback

    def add_feedback(self, feedback: MessageFeedback) -> None:
        """Store feedback, replacing any earlier rating of the same message."""
        self._all_feedback()[feedback.message_id] = feedback
        self._write(FEEDBACK_KEY, [f.to_dict() for f in self._all_feedback().values()])

    def get_feedback(self, message_id: str) -> MessageFeedback | None:
        return self._all_feedback().get(message_id)

    def stats(self) -> dict[str, int]:
        return {
            "chats": len(self._all_chats()),
            "messages": len(self._all_messages()),
            "facts": len(self.load_facts()),
            "cache_entries": len(self.load_cache()),
            "feedback": len(self._all_feedback()),
        }
