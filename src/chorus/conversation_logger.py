"""Conversation logger for detailed analysis.

Writes one JSONL file per chat per day. Each line records a single event of a
turn: the user message, scheduling, cache hits, requests, retries, commits
and failures.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class ConversationLogger:
    """Logs complete multi-agent conversations for analysis."""

    def __init__(self, log_dir: Path | str | None = None) -> None:
        """Initialize the conversation logger.

        Args:
            log_dir: Directory to store logs. Defaults to ./logs in cwd.
        """
        if log_dir is None:
            log_dir = Path.cwd() / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _get_log_file(self, chat_id: str) -> Path:
        """Get log file path for a chat."""
        date_str = datetime.now().strftime("%Y-%m-%d")
        return self.log_dir / f"{date_str}_{chat_id}.jsonl"

    def _write(self, chat_id: str, entry: dict[str, Any]) -> None:
        """Write an entry to the log file."""
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
        entry["chat_id"] = chat_id

        log_file = self._get_log_file(chat_id)
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def log_session_start(self, chat_id: str) -> None:
        self._write(chat_id, {"event": "session_start"})

    def log_session_end(self, chat_id: str, reason: str = "normal") -> None:
        self._write(chat_id, {"event": "session_end", "reason": reason})

    def log_user_message(self, chat_id: str, message_id: str, content: str) -> None:
        self._write(chat_id, {
            "event": "user_message",
            "role": "user",
            "message_id": message_id,
            "content": content,
        })

    def log_turn_scheduled(self, chat_id: str, turn_id: str, agent_ids: list[str]) -> None:
        """Log which agents were routed to answer a message."""
        self._write(chat_id, {
            "event": "turn_scheduled",
            "turn_id": turn_id,
            "agents": agent_ids,
        })

    def log_cache_hit(self, chat_id: str, agent_id: str, key_hash: str) -> None:
        self._write(chat_id, {
            "event": "cache_hit",
            "agent_id": agent_id,
            "key_hash": key_hash,
        })

    def log_llm_request(
        self,
        chat_id: str,
        agent_id: str,
        model: str,
        messages_count: int,
        attempt: int,
    ) -> None:
        """Log a completion request."""
        self._write(chat_id, {
            "event": "llm_request",
            "agent_id": agent_id,
            "model": model,
            "messages_count": messages_count,
            "attempt": attempt,
        })

    def log_stream_complete(
        self,
        chat_id: str,
        agent_id: str,
        length: int,
        duration_ms: float | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "event": "stream_complete",
            "agent_id": agent_id,
            "length": length,
        }
        if duration_ms is not None:
            entry["duration_ms"] = duration_ms
        self._write(chat_id, entry)

    def log_identity_retry(self, chat_id: str, agent_id: str, preview: str) -> None:
        """Log a reply that failed the identity check and triggered a retry."""
        self._write(chat_id, {
            "event": "identity_retry",
            "agent_id": agent_id,
            "preview": preview[:200],
        })

    def log_assistant_message(
        self,
        chat_id: str,
        agent_id: str,
        message_id: str,
        content: str,
        cached: bool = False,
    ) -> None:
        """Log a committed assistant reply."""
        self._write(chat_id, {
            "event": "assistant_message",
            "role": "assistant",
            "agent_id": agent_id,
            "message_id": message_id,
            "content": content[:2000],
            "cached": cached,
        })

    def log_turn_failed(self, chat_id: str, agent_id: str, reason: str, error: str) -> None:
        self._write(chat_id, {
            "event": "turn_failed",
            "agent_id": agent_id,
            "reason": reason,
            "error": error,
        })

    def log_facts_extracted(self, chat_id: str, facts: list[str]) -> None:
        self._write(chat_id, {
            "event": "facts_extracted",
            "facts": facts,
        })

    def log_agent_crash(self, chat_id: str, agent_id: str, exc: BaseException) -> None:
        """Log an exception that escaped an agent's reply task."""
        self._write(chat_id, {
            "event": "agent_crash",
            "agent_id": agent_id,
            "error_type": type(exc).__name__,
            "error": str(exc),
        })
